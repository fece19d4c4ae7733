"""
Logging bootstrap for BarSync processes
"""

import logging
from typing import Optional

from config.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger from settings (or an explicit level)"""
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)

    # aiohttp access logging is noisy at INFO
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
