"""
Centralized logging configuration for the storefront fulfillment pipeline.

Every line carries the thread that produced it and, when set, the request
context (user, idempotency key, payment). Carrier calls, polling loops and
webhook handlers all run on different threads, so a single payment's story
can be followed with one grep.

Features:
    - Thread name in all log messages
    - Request context fields via log_context()
    - Console output (always enabled)
    - Rotating file logs (optional, for production)
    - Separate error log for ERROR/CRITICAL messages

Log Format:
    2026-10-18 10:15:30 [INFO    ] [MainThread] storefront.app - Starting application
    2026-10-18 10:15:31 [WARNING ] [Carrier_0] storefront.services.shipping_service - SEDEX timed out
    2026-10-18 10:15:31 [INFO    ] [Thread-7] [user=alice key=abc123] storefront.services.checkout_service - Order ... created
    2026-10-18 10:15:32 [INFO    ] [Poll-a1b2c3d4] [intent=a1b2c3d4] storefront.payment.a1b2c3d4 - Payment approved

Usage:
    # At application startup
    from logging_config import setup_logging, get_logger

    setup_logging(log_level=logging.INFO, enable_file_logging=True)

    # In modules
    logger = get_logger(__name__)

    # Around one request or one background job
    with log_context(user=user_id, key=idempotency_key[:12]):
        ...
"""

import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, Optional


APP_LOGGER_NAME = "storefront"

_context: ContextVar[Dict[str, str]] = ContextVar("storefront_log_context", default={})


# =============================================================================
# CONTEXT
# =============================================================================

@contextmanager
def log_context(**fields: object) -> Iterator[None]:
    """
    Attach fields to every log line emitted inside the block.

    Nested blocks add to (and may override) the outer fields. Empty values
    are skipped. Context does not follow work handed to other threads; the
    polling thread sets its own.
    """
    merged = dict(_context.get())
    merged.update({key: str(value) for key, value in fields.items() if value not in (None, "")})
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> Dict[str, str]:
    return dict(_context.get())


class ThreadContextFilter(logging.Filter):
    """
    Adds ``thread_name`` and ``context`` to each record.

    ``context`` is " [key=value ...]" inside a log_context() block and ""
    outside one.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.thread_name = threading.current_thread().name
        fields = _context.get()
        record.context = (
            " [" + " ".join(f"{key}={value}" for key, value in fields.items()) + "]"
            if fields else ""
        )
        return True


# =============================================================================
# LOGGING SETUP
# =============================================================================

def _file_handler(path: Path, level: int, formatter: logging.Formatter,
                  thread_filter: logging.Filter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=path,
        maxBytes=10 * 1024 * 1024,  # 10 MB per file
        backupCount=5,
        encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(thread_filter)
    return handler


def setup_logging(
    app_name: str = APP_LOGGER_NAME,
    log_level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
) -> logging.Logger:
    """
    Configure the ``storefront`` logger.

    Console always; ``<app>.log`` and ``<app>_error.log`` (ERROR and up)
    under ``log_dir`` when file logging is on. Safe to call again, the app
    factory runs once per test app.

    Returns:
        The configured application logger
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(log_level)
    logger.propagate = False
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)-8s] [%(thread_name)s]%(context)s %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    thread_filter = ThreadContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(thread_filter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        log_dir = log_dir or Path(__file__).parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        app_log_file = log_dir / f"{app_name}.log"
        logger.addHandler(_file_handler(app_log_file, log_level, formatter, thread_filter))
        logger.addHandler(
            _file_handler(log_dir / f"{app_name}_error.log", logging.ERROR, formatter, thread_filter)
        )
        logger.info(f"File logging enabled: {app_log_file}")

    logger.info(f"Logging configured at level {logging.getLevelName(log_level)}")
    return logger


# =============================================================================
# LOGGER FACTORY FUNCTIONS
# =============================================================================

def get_logger(name: str) -> logging.Logger:
    """
    Child logger under the application namespace.

    Example:
        # In services/reconciler.py
        logger = get_logger(__name__)
        # Logger name: "storefront.services.reconciler"
    """
    if not name.startswith(APP_LOGGER_NAME):
        name = f"{APP_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


def get_payment_logger(intent_id: str) -> logging.Logger:
    """Logger for one payment intent, named after its first 8 id characters."""
    return logging.getLogger(f"{APP_LOGGER_NAME}.payment.{intent_id[:8]}")


def set_thread_name(name: str) -> None:
    """Rename the current thread (shown in the [thread_name] field)."""
    threading.current_thread().name = name
