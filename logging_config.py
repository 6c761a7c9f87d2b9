from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Libraries that log every statement / connection at INFO or DEBUG.
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg", "httpx")


def setup_logging(process_name: str | None = None, *, log_file: str | None = None) -> logging.Logger:
    """Configure the root logger once per process and return the process logger.

    Module loggers (``logging.getLogger(__name__)``) propagate to the root, so
    every proposal, guard adjustment and alert ends up in the same stream and
    rotating file.  ``LOG_LEVEL`` / ``LOG_FILE`` override the defaults.
    """
    level_name = str(os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_path = Path(log_file or os.getenv("LOG_FILE", "logs/bits_trader.log"))
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    if not getattr(root, "_bits_configured", False):
        fmt = "%(asctime)s %(levelname)s %(name)s"
        if process_name:
            fmt += f" [{process_name}]"
        formatter = logging.Formatter(fmt + ": %(message)s")

        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(level)
        stream_handler.setFormatter(formatter)

        file_handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=5)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)

        root.addHandler(stream_handler)
        root.addHandler(file_handler)
        root._bits_configured = True  # type: ignore[attr-defined]

        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return logging.getLogger(process_name or "bits")
