from __future__ import annotations

import sys
from loguru import logger

from app.config import HOST, PORT, RELOAD


def run_server(app_obj):
    """Run the Uvicorn server.

    - Reload follows the RELOAD setting and is never used in frozen builds
    - Reload needs an import string; otherwise the app object is passed directly
    """
    import uvicorn

    is_frozen = getattr(sys, "frozen", False) or hasattr(sys, "_MEIPASS")
    reload_flag = RELOAD and not is_frozen

    if reload_flag:
        logger.info("Uvicorn reload enabled (development mode).")
        uvicorn.run("app.main:app", host=HOST, port=PORT, reload=True)
    else:
        logger.info("Uvicorn reload disabled.")
        uvicorn.run(app_obj, host=HOST, port=PORT, reload=False)


def main() -> None:
    from app.main import app

    run_server(app)
