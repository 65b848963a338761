from importlib.metadata import PackageNotFoundError, version as _dist_version
from pathlib import Path

_VERSION_FILE = Path(__file__).resolve().parents[1] / "VERSION"


def get_version() -> str:
    """VERSION file at the repo root, else installed package metadata."""
    if _VERSION_FILE.exists():
        return _VERSION_FILE.read_text().strip()
    try:
        return _dist_version("streamrelay")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
