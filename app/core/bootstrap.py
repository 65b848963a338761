from __future__ import annotations

from dotenv import load_dotenv
from loguru import logger

from app.utils.logger import config as configure_logger
from app.config import DATA_DIR, PROVIDER_ORDER, SECONDARY_PROVIDERS


def init() -> None:
    """Initialize environment and logging early.

    - Loads .env
    - Configures loguru
    - Logs the configured provider cascade
    """
    load_dotenv()
    configure_logger()
    logger.info(f"Data directory: {DATA_DIR}")
    logger.info(
        f"Provider cascade: {', '.join(PROVIDER_ORDER) or '<none>'}"
        f" | secondary: {', '.join(SECONDARY_PROVIDERS) or '<none>'}"
    )
