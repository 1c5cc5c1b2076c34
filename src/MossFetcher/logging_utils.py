"""Structured logging helpers shared across fetcher components."""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import IO, Any, Optional

__all__ = ["JSONFormatter", "setup_logging", "mask_credentials"]

_ROOT_LOGGER = "MossFetcher"
_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


def mask_credentials(text: str) -> str:
    """Replace ``user:password@`` in any URL inside ``text`` with ``***@``."""

    return _URL_USERINFO.sub(r"\g<scheme>***@", text)


class JSONFormatter(logging.Formatter):
    """Formatter emitting one masked JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": mask_credentials(record.getMessage()),
        }
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(
    *,
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[Path] = None,
    max_log_size_mb: int = 100,
    stream: Optional[IO[str]] = None,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the ``MossFetcher`` logger with a console and optional file handler.

    Handlers installed by a previous call are replaced, so calling this twice
    does not duplicate output.
    """

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_moss_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler):
                handler_stream = getattr(handler, "stream", None)
                if handler_stream in (sys.stdout, sys.stderr):
                    continue
            handler.close()

    console_formatter: logging.Formatter
    if json_format:
        console_formatter = JSONFormatter()
    else:
        console_formatter = logging.Formatter("%(levelname)s [%(threadName)s] %(message)s")
    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.setFormatter(console_formatter)
    stream_handler._moss_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._moss_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
