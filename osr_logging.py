"""
Logging configuration for the OpenStack inventory report

Call sites attach run context with `extra=context(domain, project, ...)`.
The console formatter turns it into a `[domain] [project]` prefix, the
JSON formatter emits it as separate keys.
"""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Extra attributes copied into JSON records when a call site provides them
CONTEXT_FIELDS = ("domain", "project", "endpoint", "kind", "status_code", "duration_ms")


def context(domain: Optional[str] = None, project: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
    """`extra=` mapping for one log call; empty values are left out."""
    out: Dict[str, Any] = {}
    if domain:
        out["domain"] = domain
    if project:
        out["project"] = project
    for key, value in fields.items():
        if key not in CONTEXT_FIELDS:
            raise ValueError(f"unknown log context field: {key}")
        if value is not None:
            out[key] = value
    return out


def prefix(domain: str, project: str = None) -> str:
    """`[domain] [project]` text, also used in error ledger messages."""
    if project:
        return f"[{domain}] [{project}]"
    return f"[{domain}]"


def record_prefix(record: logging.LogRecord) -> str:
    domain = getattr(record, "domain", None)
    if not domain:
        return ""
    return prefix(domain, getattr(record, "project", None))


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context fields as top-level keys"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level, context prefix before the message"""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        message = record.getMessage()
        pfx = record_prefix(record)
        if pfx:
            message = f"{pfx} {message}"

        line = f"{color}{timestamp} {record.levelname:8}{self.RESET} {message}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(log_level: str = "INFO", json_logs: bool = False, log_file: str = None):
    """
    Configure the root logger for one report run

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: JSON lines on the console instead of colored text
        log_file: optional path; the file always gets JSON lines
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_logs else ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Retry chatter from the transport layer
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger = logging.getLogger("osr")
    logger.debug("Logging initialized (level=%s, json=%s, file=%s)", log_level, json_logs, log_file)
    return logger
