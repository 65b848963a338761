import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# app.config creates DATA_DIR on import; keep module-level imports in tests
# away from the working tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="streamrelay-tests-"))
os.environ.setdefault("CACHE_SWEEP_INTERVAL_MIN", "0")

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _load_app(tmp_path, monkeypatch, **env):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("DATA_DIR", str(data_dir))
    monkeypatch.setenv("CACHE_SWEEP_INTERVAL_MIN", "0")
    monkeypatch.setenv("PROXY_AUTH", "none")
    monkeypatch.setenv("PUBLIC_BASE_URL", "")
    monkeypatch.delenv("EXTRACTOR_URL", raising=False)
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    for m in [name for name in sys.modules if name.startswith("app.")]:
        del sys.modules[m]

    from app.main import app

    return app


@pytest.fixture
def client(tmp_path, monkeypatch):
    with TestClient(_load_app(tmp_path, monkeypatch)) as c:
        yield c


@pytest.fixture
def apikey_client(tmp_path, monkeypatch):
    app = _load_app(tmp_path, monkeypatch, PROXY_AUTH="apikey", PROXY_SECRET="s3cret")
    with TestClient(app) as c:
        yield c
