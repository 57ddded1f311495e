"""structlog setup shared by every reconpipe module.

The level is read from ``LOG_LEVEL`` at import time, before ``Settings``
exists.  ``ReconApp()`` builds Settings on first use, so a malformed
config.toml or a non-numeric ``SERVER__PORT`` surfaces as a pydantic
ValidationError that the excepthook below reports through this logger.
Once settings load, ``ReconApp`` calls :func:`set_level` with
``logging.level``.

docker-py and urllib3 log every engine round trip at DEBUG.  They are held at
WARNING or above so a debug run shows scan progress, not socket chatter.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_QUIET_LOGGERS = ("docker", "urllib3")


def _quiet_chatty_loggers(level: int) -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # Configure stdlib root logger first so structlog's filter_by_level works
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    _quiet_chatty_loggers(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Apply the configured level once settings have loaded."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.getLogger().setLevel(level)
    _quiet_chatty_loggers(level)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
