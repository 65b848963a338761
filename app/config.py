import os
from pathlib import Path
from dotenv import load_dotenv
from loguru import logger
from app.utils.logger import config as configure_logger

# Load .env as early as possible so all downstream imports see the intended env
load_dotenv()

# Configure logger after env is loaded (LOG_LEVEL honored)
configure_logger()

logger.debug("Checking if running in Docker...")
IN_DOCKER = Path("/.dockerenv").exists()
logger.debug(f"IN_DOCKER={IN_DOCKER}")


def _as_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    v = val.strip().lower()
    return v in ("1", "true", "yes", "on")


def _as_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}; defaulting to {default}.")
        return default


def _as_list(raw: str) -> list[str]:
    # split, trim, drop empties, keep first occurrence
    return list(dict.fromkeys(p.strip().lower() for p in raw.split(",") if p.strip()))


def _str_to_path(val: str | os.PathLike[str] | None) -> Path | None:
    if not val:
        return None
    try:
        return Path(val).expanduser()
    except Exception:
        return None


def _ensure_dir(candidates: list[Path], label: str) -> Path:
    """Return first usable path from candidates, creating it if needed.

    Logs fallbacks and exits with a clear error if none are writable.
    """
    for p in candidates:
        try:
            p.mkdir(parents=True, exist_ok=True)
            resolved = p.resolve()
            logger.info(f"{label} using: {resolved}")
            return resolved
        except PermissionError as e:
            logger.warning(f"No permission to create {label} at {p}: {e}")
        except OSError as e:
            logger.warning(f"Cannot create {label} at {p}: {e}")

    logger.error(f"No writable candidate found for {label}. Tried: {candidates}")
    raise SystemExit(
        f"Fatal: {label} is not writable. Please fix your volume mounts or set"
        f" a writable {label} via environment variables. Tried:"
        f" {', '.join(str(c) for c in candidates)}"
    )


# ---- Data directory (SQLite cache lives here) ----
env_data = os.getenv("DATA_DIR")
env_data_path = _str_to_path(env_data.strip() if env_data else None)
default_data = Path("/data") if IN_DOCKER else (Path.cwd() / "data")

data_candidates: list[Path] = []
if env_data_path:
    data_candidates.append(env_data_path)
data_candidates.extend(
    [
        default_data,
        Path("/app/data"),
        Path.cwd() / "data",
        Path("/tmp/streamrelay"),
    ]
)
DATA_DIR = _ensure_dir(data_candidates, "DATA_DIR")

# Run Alembic on startup; when disabled the schema is created from metadata.
DB_MIGRATE_ON_STARTUP = _as_bool(os.getenv("DB_MIGRATE_ON_STARTUP", None), True)
logger.debug(f"DB_MIGRATE_ON_STARTUP={DB_MIGRATE_ON_STARTUP}")

# ---- Provider cascade ----
# Order = priority. The last entry is the universal last resort.
_default_order = "vidlink,videasy,vidking,111movies"
_raw = os.getenv("PROVIDER_ORDER", _default_order)
logger.debug(f"PROVIDER_ORDER raw string: {_raw}")
PROVIDER_ORDER = _as_list(_raw)
logger.debug(f"PROVIDER_ORDER normalized: {PROVIDER_ORDER}")

# Providers serving a dubbed variant, resolved next to the original track.
SECONDARY_PROVIDERS = _as_list(os.getenv("SECONDARY_PROVIDERS", "cuevana"))
logger.debug(f"SECONDARY_PROVIDERS={SECONDARY_PROVIDERS}")

# ---- Manifest cache ----
_DAY = 24 * 60 * 60

CACHE_TTL_DAYS = _as_float("CACHE_TTL_DAYS", 90.0)
CACHE_TTL_SECONDS = max(1, int(CACHE_TTL_DAYS * _DAY))


def _parse_provider_ttls(raw: str) -> dict[str, int]:
    """Parse ``name=days`` pairs into a provider -> TTL seconds mapping."""
    out: dict[str, int] = {}
    for item in raw.split(","):
        if not item.strip():
            continue
        name, sep, days = item.partition("=")
        if not sep or not name.strip():
            logger.warning(f"Ignoring malformed PROVIDER_TTL_DAYS entry {item!r}")
            continue
        try:
            out[name.strip().lower()] = max(1, int(float(days) * _DAY))
        except ValueError:
            logger.warning(f"Ignoring malformed PROVIDER_TTL_DAYS entry {item!r}")
    return out


PROVIDER_TTL_SECONDS = _parse_provider_ttls(os.getenv("PROVIDER_TTL_DAYS", ""))
logger.debug(
    f"CACHE_TTL_SECONDS={CACHE_TTL_SECONDS}, PROVIDER_TTL_SECONDS={PROVIDER_TTL_SECONDS}"
)

# How long a failed secondary provider is skipped before extraction is retried.
UNAVAILABLE_RETRY_DAYS = _as_float("UNAVAILABLE_RETRY_DAYS", 7.0)
UNAVAILABLE_RETRY_SECONDS = max(0, int(UNAVAILABLE_RETRY_DAYS * _DAY))

# HEAD-probe cached manifests before serving them (off: captured URLs are long-lived)
CACHE_VALIDATE_ON_READ = _as_bool(os.getenv("CACHE_VALIDATE_ON_READ", None), False)
CACHE_PROBE_TIMEOUT_SECONDS = _as_float("CACHE_PROBE_TIMEOUT_SECONDS", 3.0)

# Periodic sweep of expired entries (minutes). 0 disables.
CACHE_SWEEP_INTERVAL_MIN = int(os.getenv("CACHE_SWEEP_INTERVAL_MIN", "60") or 0)
logger.debug(
    f"CACHE_VALIDATE_ON_READ={CACHE_VALIDATE_ON_READ}, CACHE_PROBE_TIMEOUT_SECONDS={CACHE_PROBE_TIMEOUT_SECONDS}, CACHE_SWEEP_INTERVAL_MIN={CACHE_SWEEP_INTERVAL_MIN}"
)

# ---- Sessions ----
# Idle timeout in minutes; 0 keeps sessions for the process lifetime.
SESSION_IDLE_TIMEOUT_MIN = _as_float("SESSION_IDLE_TIMEOUT_MIN", 15.0)
logger.debug(f"SESSION_IDLE_TIMEOUT_MIN={SESSION_IDLE_TIMEOUT_MIN}")

# ---- Collaborators ----
EXTRACTOR_URL = os.getenv("EXTRACTOR_URL", "").strip().rstrip("/")
EXTRACTOR_TIMEOUT_SECONDS = _as_float("EXTRACTOR_TIMEOUT_SECONDS", 45.0)
logger.debug(
    f"EXTRACTOR_URL={EXTRACTOR_URL or '<none>'}, EXTRACTOR_TIMEOUT_SECONDS={EXTRACTOR_TIMEOUT_SECONDS}"
)

TMDB_API_KEY = os.getenv("TMDB_API_KEY", "").strip()
TMDB_BASE_URL = (
    os.getenv("TMDB_BASE_URL", "https://api.themoviedb.org/3").strip().rstrip("/")
)
METADATA_TIMEOUT_SECONDS = _as_float("METADATA_TIMEOUT_SECONDS", 10.0)
logger.debug(f"TMDB_BASE_URL={TMDB_BASE_URL}, TMDB_API_KEY set={bool(TMDB_API_KEY)}")

# ---- Segment/manifest proxy ----
# Absolute prefix for proxied URLs. Empty yields root-relative URLs.
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")
logger.debug(f"PUBLIC_BASE_URL={PUBLIC_BASE_URL or '<relative>'}")

PROXY_ALLOW_PRIVATE = _as_bool(os.getenv("PROXY_ALLOW_PRIVATE", None), False)
PROXY_RESOLVE_DNS = _as_bool(os.getenv("PROXY_RESOLVE_DNS", None), False)
logger.debug(
    f"PROXY_ALLOW_PRIVATE={PROXY_ALLOW_PRIVATE}, PROXY_RESOLVE_DNS={PROXY_RESOLVE_DNS}"
)

PROXY_AUTH = os.getenv("PROXY_AUTH", "none").strip().lower()
if PROXY_AUTH not in ("none", "apikey", "token"):
    logger.warning(f"Invalid PROXY_AUTH={PROXY_AUTH!r}; defaulting to 'none'.")
    PROXY_AUTH = "none"
PROXY_SECRET = os.getenv("PROXY_SECRET", "").strip()
PROXY_TOKEN_TTL_SECONDS = int(os.getenv("PROXY_TOKEN_TTL_SECONDS", "86400") or 86400)
logger.debug(f"PROXY_AUTH={PROXY_AUTH}")

ORIGIN_USER_AGENT = os.getenv(
    "ORIGIN_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36",
).strip()

# ---- CORS ----
CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
]
CORS_ALLOW_CREDENTIALS = _as_bool(os.getenv("CORS_ALLOW_CREDENTIALS", None), False)
logger.debug(
    f"CORS_ORIGINS={CORS_ORIGINS}, CORS_ALLOW_CREDENTIALS={CORS_ALLOW_CREDENTIALS}"
)

# ---- Server ----
RELOAD = _as_bool(os.getenv("RELOAD", None), False)
HOST = os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0"
PORT = int(os.getenv("PORT", "8000") or 8000)
