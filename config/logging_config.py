import logging
import sys
from typing import Optional

import structlog

from config.settings import settings

# Chatty third-party loggers and the level they are capped at
_LIBRARY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.WARNING,
    "apscheduler": logging.WARNING,
    "slack_sdk.socket_mode": logging.WARNING,
}


def _level(name: str, default: int = logging.INFO) -> int:
    return getattr(logging, name.upper(), default)


def configure_logging(level: Optional[str] = None) -> None:
    """
    JSON logs on stderr for the bot process.

    structlog renders ActivityLogger events; stdlib logging carries the
    Slack Bolt / slack_sdk / httpx / APScheduler output in the same stream.
    """
    log_level = _level(level or settings.log_level)

    logging.basicConfig(format="%(levelname)s %(name)s %(message)s", stream=sys.stderr, level=log_level)
    logging.getLogger("slack_bolt").setLevel(_level(settings.slack_log_level))
    for name, cap in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(cap, log_level))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
