from __future__ import annotations

import hmac
import hashlib
import time
from typing import Mapping
from urllib.parse import urlencode

from fastapi import HTTPException
from loguru import logger

from app.config import PROXY_AUTH, PROXY_SECRET, PROXY_TOKEN_TTL_SECONDS


def _canonical_params(params: Mapping[str, str]) -> str:
    """
    Create a deterministic query string from provided parameters for signing.

    Parameters:
        params (Mapping[str, str]): Mapping of parameter names to values. Keys are sorted alphabetically for determinism.

    Returns:
        canonical (str): A string of `key=value` pairs joined by `&`, with pairs ordered by key.
    """
    return urlencode(sorted(params.items()), doseq=False)


def sign_params(params: Mapping[str, str], secret: str) -> str:
    """
    Generate an HMAC-SHA256 signature for the given parameters using the provided secret key.

    Returns:
        sig (str): Hexadecimal HMAC-SHA256 digest of the canonicalized parameters.
    """
    canonical = _canonical_params(params)
    digest = hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()


def _require_secret() -> str:
    if not PROXY_SECRET:
        logger.error("Proxy auth enabled but PROXY_SECRET is unset.")
        raise HTTPException(status_code=500, detail="proxy auth misconfigured")
    return PROXY_SECRET


def build_auth_params(params: Mapping[str, str]) -> dict[str, str]:
    """
    Build authentication parameters for a proxied URL based on the configured auth mode.

    Parameters:
        params (Mapping[str, str]): Query parameters of the URL being built; signed in token mode.

    Returns:
        dict[str, str]: Parameters to append:
            - {} when mode is "none",
            - {"apikey": secret} when mode is "apikey",
            - {"sig": signature, "exp": expiry} when mode is "token".

    Raises:
        HTTPException: If the configured secret is missing (500).
    """
    mode = PROXY_AUTH
    if mode == "none":
        return {}
    secret = _require_secret()
    if mode == "apikey":
        return {"apikey": secret}
    if mode == "token":
        payload = dict(params)
        exp = int(time.time()) + PROXY_TOKEN_TTL_SECONDS
        payload["exp"] = str(exp)
        sig = sign_params(payload, secret)
        return {"sig": sig, "exp": str(exp)}
    raise ValueError(f"Unknown PROXY_AUTH mode: {mode}")


def require_auth(params: Mapping[str, str]) -> None:
    """
    Validate request parameters against the configured proxy authentication mode.

    - "none": no validation.
    - "apikey": ``params["apikey"]`` must equal the configured secret.
    - "token": ``sig`` must match the HMAC of every other parameter and the
      optional ``exp`` must not be in the past.

    Raises:
        HTTPException: 401 for a missing or invalid credential, 500 if the
            secret is not configured.
    """
    mode = PROXY_AUTH
    logger.trace("Validating proxy auth mode={}", mode)
    if mode == "none":
        return
    secret = _require_secret()
    if mode == "apikey":
        if params.get("apikey") != secret:
            logger.warning("Proxy apikey missing or invalid.")
            raise HTTPException(status_code=401, detail="invalid apikey")
        return
    if mode == "token":
        sig = params.get("sig")
        if not sig:
            logger.warning("Proxy signature missing.")
            raise HTTPException(status_code=401, detail="missing signature")
        payload = {k: v for k, v in params.items() if k != "sig"}
        exp_raw = payload.get("exp")
        if exp_raw:
            try:
                exp = int(exp_raw)
            except ValueError as exc:
                raise HTTPException(
                    status_code=401, detail="invalid token expiry"
                ) from exc
            if int(time.time()) > exp:
                raise HTTPException(status_code=401, detail="token expired")
        expected = sign_params(payload, secret)
        if not hmac.compare_digest(sig, expected):
            logger.warning("Proxy signature mismatch.")
            raise HTTPException(status_code=401, detail="invalid signature")
        return
    raise ValueError(f"Unknown proxy auth mode: {mode}")
