"""Loguru setup for modelcache.

modelcache logs through the shared loguru logger and never installs a
handler on import. Every record carries ``extra["module"]``, so host
applications can filter cache logs with ``record["extra"]["module"]``.
"""

import sys
from typing import Any, Optional, TextIO

from loguru import logger

CACHE_LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> "
    "<level>{level: <8}</level> "
    "<magenta>[{extra[module]}]</magenta> {message}"
)

_handler_id: Optional[int] = None


def configure_logging(level: Optional[str] = None, sink: TextIO = sys.stderr) -> int:
    """Send modelcache records at ``level`` or above to ``sink``.

    Calling it again replaces the handler added by the previous call.
    Handlers installed by the host application are left alone.

    Returns:
        The loguru handler id.
    """
    from modelcache.config.settings import get_settings

    global _handler_id
    if _handler_id is not None:
        try:
            logger.remove(_handler_id)
        except ValueError:
            pass  # already removed by the host
    logger.configure(extra={"module": "modelcache"})
    _handler_id = logger.add(
        sink,
        level=level or get_settings().log_level,
        format=CACHE_LOG_FORMAT,
        filter=lambda record: str(record["extra"].get("module", "")).startswith("modelcache"),
        backtrace=False,
        diagnose=False,
    )
    return _handler_id


def get_logger(name: Optional[str] = None, **extra: Any):
    """Loguru logger bound to ``name`` (the calling module) plus ``extra``."""
    return logger.bind(module=name or "modelcache", **extra)
