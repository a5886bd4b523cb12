import logging
from typing import Optional, Union

from config import config
from config.settings import get_config_section

# Per-frame and per-request chatter from the I/O libraries
NOISY_LOGGERS = ('websockets', 'aiohttp.access', 'asyncio')


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging for the bot.

    ``level`` accepts a number or a name such as ``"DEBUG"``; when omitted it
    comes from ``monitoring.log_level`` in the config. Calling it again once
    handlers exist does nothing.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        level = get_config_section(config, 'monitoring').get('log_level', 'INFO')
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
