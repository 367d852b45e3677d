"""
Centralized logging manager for the application.

Every module obtains its logger through get_logger(), optionally with a component prefix such as
"[FamilyManager]". Records always go to the console (stdout). When LOKI_ENABLED is set, a Loki
handler is attached as well, provided the Loki ready endpoint answers at setup time.

Loki Downtime Handling:
----------------------
- If Loki is unavailable when the handler would be attached, logs go to the console only.
- Records emitted while Loki is down at runtime are handled by the Loki handler's own
  buffering and may be dropped. Use a log shipper if every line must reach Loki.

Usage:
    logger = get_logger(prefix="[ExpenseManager]")
"""

import logging
import sys
import threading
from typing import Dict

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler
import requests

from expense_tracker.config import settings

LOKI_URL: str = settings.LOKI_URL
LOKI_TAGS: Dict[str, str] = {"app": settings.APP_NAME, "env": settings.ENV}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
LOKI_COMPRESS: bool = settings.LOKI_COMPRESS
LOKI_HEALTH_URL: str = LOKI_URL.replace("/loki/api/v1/push", "/ready")
DEFAULT_LOGGER_NAME: str = "Expense_Tracker"

_loki_state_lock = threading.Lock()
_loki_reachable: Dict[str, bool] = {}


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def ping_loki() -> bool:
    """
    Ping Loki's ready endpoint once per process and cache the answer.

    Returns:
        bool: True if Loki answered with 200
    """
    with _loki_state_lock:
        if LOKI_HEALTH_URL in _loki_reachable:
            return _loki_reachable[LOKI_HEALTH_URL]
        try:
            resp = requests.get(LOKI_HEALTH_URL, timeout=(2, 3), headers={"Connection": "close"})
            reachable = resp.status_code == 200
        except requests.exceptions.RequestException as e:
            logging.getLogger(DEFAULT_LOGGER_NAME).warning("[LoggingManager] Loki health check failed: %s", e)
            reachable = False
        _loki_reachable[LOKI_HEALTH_URL] = reachable
        return reachable


class PrefixFilter(logging.Filter):
    """Prepend a component prefix to each record message exactly once."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def get_logger(name: str = DEFAULT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Args:
        name: Logger name. Modules share the default name and differ by prefix.
        add_loki: Attach the Loki handler when Loki is enabled and reachable.
        prefix: Component tag prepended to every message.
    """
    # Prefixed loggers get their own child so each prefix filter applies to its own records only
    logger_name = f"{name}.{prefix.strip('[]')}" if prefix else name
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.propagate = False

    formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")
    _ensure_console_handler(logger, formatter)

    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))

    if add_loki and settings.LOKI_ENABLED and not any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        if ping_loki():
            try:
                loki_handler = LokiLoggerHandler(
                    url=LOKI_URL,
                    labels=LOKI_TAGS,
                    auth=None,
                    compressed=LOKI_COMPRESS,
                )
                logger.addHandler(loki_handler)
            except OSError as e:
                logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)
        else:
            logger.warning("[LoggingManager] Loki not reachable at %s, console logging only", LOKI_HEALTH_URL)
    return logger
