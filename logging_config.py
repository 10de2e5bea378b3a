"""Centralized logging configuration.

This module provides:
- JSONFormatter for structured one-line logs
- PlainFormatter for local debugging
- setup_logging() to install a single stderr handler on the root logger

stdout is left alone because the stdio transport owns it.
"""

import json
import logging
import re
import sys


TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service_name: str = None):
        super().__init__()
        self.service_name = service_name or "youtube-mcp"

    def format(self, record: logging.LogRecord) -> str:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = TAG_PATTERN.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "timestamp": self.formatTime(record),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "tag": tag,
            "message": message,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(level: str = "INFO", fmt: str = "plain") -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, ...).
        fmt: "plain" for human-readable lines, "json" for structured lines.

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(JSONFormatter() if fmt == "json" else PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Suppress noisy HTTP client and access logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return root_logger
