"""Structured logging for SkyProxy.

Records are written as JSON lines. Structured fields are passed through
``extra={"fields": {...}}`` and redacted before they are formatted.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": TRACE,
}

REDACTED = "***REDACTED***"
SENSITIVE_KEY_PARTS = ("key", "token", "secret", "authorization")


def redact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of data with credentials masked.

    Keys that look like credential names are masked, as are string values
    that look like API keys or bearer tokens. Nested dicts are walked.
    """
    redacted: Dict[str, Any] = {}
    for key, value in data.items():
        lower_key = str(key).lower()
        if isinstance(value, dict):
            redacted[key] = redact(value)
        elif isinstance(value, str) and (
            any(part in lower_key for part in SENSITIVE_KEY_PARTS)
            or value.lower().startswith(("sk-", "bearer "))
        ):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


class JSONLineFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": "WARN" if record.levelno == logging.WARNING else record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update(redact(fields))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def resolve_level(level_name: Optional[str]) -> int:
    """Map a configured level name to a logging level (INFO if unknown)."""
    return LOG_LEVELS.get((level_name or "INFO").upper(), logging.INFO)


def setup_logging(level_name: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the ``skyproxy`` logger hierarchy.

    Args:
        level_name: ERROR, WARN, INFO, DEBUG or TRACE
        log_file: Optional path of a JSON-lines log file (directory is created)
    """
    root = logging.getLogger("skyproxy")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = JSONLineFormatter()
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(resolve_level(level_name))

    if level_name and level_name.upper() not in LOG_LEVELS:
        root.warning(f"Invalid log level '{level_name}', using INFO")


class StructuredLogger:
    """Thin wrapper over a stdlib logger taking structured fields as kwargs."""

    def __init__(self, name: str = "skyproxy"):
        self.logger = logging.getLogger(name)

    def is_enabled_for(self, level: int) -> bool:
        """Return True if records at level would be emitted."""
        return self.logger.isEnabledFor(level)

    def _log(self, level: int, message: str, fields: Dict[str, Any]):
        if not self.is_enabled_for(level):
            return
        self.logger.log(level, message, extra={"fields": fields})

    def error(self, message: str, **fields: Any):
        self._log(logging.ERROR, message, fields)

    def warn(self, message: str, **fields: Any):
        self._log(logging.WARNING, message, fields)

    def info(self, message: str, **fields: Any):
        self._log(logging.INFO, message, fields)

    def debug(self, message: str, **fields: Any):
        self._log(logging.DEBUG, message, fields)

    def trace(self, message: str, **fields: Any):
        self._log(TRACE, message, fields)

    def log_request(
        self,
        request_id: str,
        model: Optional[str],
        provider: Optional[str],
        upstream_model: Optional[str],
        stream: bool,
        outcome: str = "success",
        status_code: Optional[int] = None,
        latency_ms: int = 0,
        error_type: Optional[str] = None,
    ):
        """Log a one-line request summary.

        Args:
            request_id: Unique request identifier
            model: Model alias requested by the client
            provider: Resolved provider identifier
            upstream_model: Model name sent upstream
            stream: Whether this was a streaming request
            outcome: "success" or "error"
            status_code: HTTP status returned to the client
            latency_ms: Request latency in milliseconds
            error_type: Error type if outcome is "error"
        """
        fields: Dict[str, Any] = {
            "request_id": request_id,
            "model": model,
            "provider": provider,
            "upstream_model": upstream_model,
            "stream": stream,
            "outcome": outcome,
            "status_code": status_code,
            "latency_ms": latency_ms,
        }
        if outcome == "error":
            fields["error_type"] = error_type
            self.warn("Request failed", **fields)
        else:
            self.info("Request completed", **fields)


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger under the ``skyproxy`` hierarchy."""
    if not name.startswith("skyproxy"):
        name = f"skyproxy.{name}"
    return StructuredLogger(name)
