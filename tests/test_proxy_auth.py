import importlib
import sys
import time
from urllib.parse import parse_qsl, urlsplit

import pytest
from fastapi import HTTPException


_MODULES = ("app.config", "app.core.stream_proxy.auth", "app.core.stream_proxy.urls")


def _load(monkeypatch, *, mode: str, secret: str, name: str = "app.core.stream_proxy.auth"):
    """
    Import a fresh copy of ``name`` with PROXY_AUTH/PROXY_SECRET set.

    The cached modules are removed through monkeypatch so the originals are
    restored once the test finishes.
    """
    monkeypatch.setenv("PROXY_AUTH", mode)
    monkeypatch.setenv("PROXY_SECRET", secret)
    monkeypatch.setenv("PUBLIC_BASE_URL", "")
    for mod in _MODULES:
        if mod in sys.modules:
            monkeypatch.delitem(sys.modules, mod)
    return importlib.import_module(name)


def test_token_auth_valid(monkeypatch):
    auth = _load(monkeypatch, mode="token", secret="secret")
    params = {"url": "https://cdn.example/seg1.ts", "ref": "https://cdn.example/"}
    params["sig"] = auth.sign_params(params, "secret")
    auth.require_auth(params)


def test_token_auth_invalid(monkeypatch):
    auth = _load(monkeypatch, mode="token", secret="secret")
    with pytest.raises(HTTPException) as excinfo:
        auth.require_auth({"url": "https://cdn.example/seg1.ts", "sig": "bad"})
    assert excinfo.value.status_code == 401


def test_token_missing_signature(monkeypatch):
    auth = _load(monkeypatch, mode="token", secret="secret")
    with pytest.raises(HTTPException) as excinfo:
        auth.require_auth({"url": "https://cdn.example/seg1.ts"})
    assert excinfo.value.status_code == 401


def test_token_expired(monkeypatch):
    auth = _load(monkeypatch, mode="token", secret="secret")
    params = {"sid": "abc", "exp": str(int(time.time()) - 10)}
    params["sig"] = auth.sign_params(params, "secret")
    with pytest.raises(HTTPException) as excinfo:
        auth.require_auth(params)
    assert excinfo.value.detail == "token expired"


def test_apikey_auth(monkeypatch):
    auth = _load(monkeypatch, mode="apikey", secret="key123")
    auth.require_auth({"apikey": "key123"})
    with pytest.raises(HTTPException):
        auth.require_auth({"apikey": "nope"})


def test_missing_secret_is_server_error(monkeypatch):
    auth = _load(monkeypatch, mode="apikey", secret="")
    with pytest.raises(HTTPException) as excinfo:
        auth.require_auth({"apikey": ""})
    assert excinfo.value.status_code == 500


def test_none_mode_accepts_anything(monkeypatch):
    auth = _load(monkeypatch, mode="none", secret="")
    auth.require_auth({})
    assert auth.build_auth_params({"url": "x"}) == {}


def test_built_segment_urls_carry_a_valid_signature(monkeypatch):
    urls = _load(monkeypatch, mode="token", secret="secret", name="app.core.stream_proxy.urls")
    auth = sys.modules["app.core.stream_proxy.auth"]

    proxied = urls.build_segment_url("https://cdn.example/a/seg1.ts", "https://cdn.example/", force=True)

    params = dict(parse_qsl(urlsplit(proxied).query))
    assert params["force"] == "1"
    assert "exp" in params and "sig" in params
    auth.require_auth(params)


def test_built_manifest_urls_carry_the_apikey(monkeypatch):
    urls = _load(monkeypatch, mode="apikey", secret="key123", name="app.core.stream_proxy.urls")

    proxied = urls.build_manifest_url("session-id")

    assert dict(parse_qsl(urlsplit(proxied).query)) == {"sid": "session-id", "apikey": "key123"}
