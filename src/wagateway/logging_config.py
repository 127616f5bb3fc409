"""
Centralized logging configuration for the WhatsApp pairing gateway.

Separates logs into multiple files by component:

    logs/
    ├── server.log          # HTTP API requests, lifespan, sweeps
    ├── session.log         # Session lifecycle (start, open, close, reconnect)
    ├── pairing.log         # Pairing code scheduling, generation, waits
    ├── transport.log       # Bridge sidecar calls and inbound events
    ├── storage.log         # Credential directories and status files
    ├── notifications.log   # Webhooks, newsletter follows
    ├── config.log          # Configuration loading
    └── errors.log          # ALL errors from ALL components (ERROR+)

Usage:
    from wagateway.logging_config import setup_logging
    setup_logging(level="INFO", logs_dir="logs")
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

LOGS_DIR = Path("logs")

LOG_CATEGORIES = {
    "server": "server.log",
    "session": "session.log",
    "pairing": "pairing.log",
    "transport": "transport.log",
    "storage": "storage.log",
    "notifications": "notifications.log",
    "config": "config.log",
}

_initialized = False


def setup_logging(level: str = "INFO", logs_dir: Optional[str] = None) -> None:
    """Configure stdlib handlers per category and bridge structlog onto them.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        logs_dir: Directory for log files. Defaults to ``logs/`` in the
                  working directory.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    target_dir = Path(logs_dir) if logs_dir else LOGS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_h = logging.StreamHandler(sys.stdout)
    console_h.setLevel(log_level)
    console_h.setFormatter(fmt)
    root.addHandler(console_h)

    # errors.log catches ERROR+ from every logger via propagation
    errors_h = logging.FileHandler(str(target_dir / "errors.log"), encoding="utf-8")
    errors_h.setLevel(logging.ERROR)
    errors_h.setFormatter(fmt)
    root.addHandler(errors_h)

    for category, log_file in LOG_CATEGORIES.items():
        cat_logger = logging.getLogger(category)
        cat_logger.setLevel(log_level)
        if not cat_logger.handlers:
            file_h = logging.FileHandler(str(target_dir / log_file), encoding="utf-8")
            file_h.setLevel(log_level)
            file_h.setFormatter(fmt)
            cat_logger.addHandler(file_h)
        cat_logger.propagate = True

    # uvicorn access lines go to server.log as well
    logging.getLogger("uvicorn.access").propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    init_logger = structlog.get_logger("server")
    init_logger.info(
        "logging_initialized",
        categories=list(LOG_CATEGORIES),
        level=level,
        logs_dir=str(target_dir),
    )
