from __future__ import annotations

import json
import logging
import sys
import time
from typing import Any, TextIO


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_data.update(extra_fields)
        return json.dumps(log_data)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Install a console handler (stderr by default) and an optional file handler on the root logger.

    Command output goes to stdout, so log records stay off it unless a stream is given.
    """
    root_logger = logging.getLogger()
    try:
        root_logger.setLevel(getattr(logging, level.upper()))
    except AttributeError as exc:
        raise ValueError(f"Unknown log level: {level}") from exc

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
