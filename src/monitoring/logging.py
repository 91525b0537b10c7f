"""
Structured logging for RiftSettle.

JSON output for log aggregation in production, coloured console output
for development.

Features:
- JSON output format (LOG_FORMAT=json) for easy parsing
- Request context (request_id, wallet, ...) carried per thread
- Redaction of secrets before anything is written: keypairs, bearer
  tokens, gateway and cron secrets, connection-string passwords
- Wallet addresses shortened to first/last four characters
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

_BASE58 = "1-9A-HJ-NP-Za-km-z"

SENSITIVE_PATTERNS = [
    # key=value style secrets
    (
        re.compile(
            r"(private[_-]?key|secret[_-]?key|secret|api[_-]?key|token|password|cron[_-]?secret)"
            r"([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
            re.IGNORECASE,
        ),
        r"\1\2[REDACTED]",
    ),
    # Bearer tokens
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    # Passwords in connection strings
    (re.compile(r"(\w+://[^:/\s]+:)([^@\s]+)(@)"), r"\1[REDACTED]\3"),
    # Keypair byte arrays (64 comma separated numbers)
    (re.compile(r"\[\s*(?:\d{1,3}\s*,\s*){63}\d{1,3}\s*\]"), "[REDACTED_KEYPAIR]"),
    # Base58 encoded secret keys
    (re.compile(rf"\b[{_BASE58}]{{80,90}}\b"), "[REDACTED_PRIVATE_KEY]"),
    # Wallet addresses (show first/last 4 chars)
    (re.compile(rf"\b([{_BASE58}]{{4}})[{_BASE58}]{{24,36}}([{_BASE58}]{{4}})\b"), r"\1...\2"),
]

# Fields that are always redacted wholesale
REDACTED_FIELDS = {
    "password",
    "secret",
    "api_key",
    "token",
    "confirmation_token",
    "private_key",
    "secret_key",
    "treasury_private_key",
    "gateway_secret",
    "cron_secret",
    "authorization",
    "x_rift_signature",
    "database_url",
}

# LogRecord attributes that are not user supplied extras
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "taskName"}
)


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive data from log payloads.

    Dict keys are matched case-insensitively with dashes folded to
    underscores, so ``X-Rift-Signature`` is caught as a header name.
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS
            else redact_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# ============================================================
# Request Context
# ============================================================

_request_context = threading.local()


def set_request_context(**kwargs) -> None:
    """Set context values for the current request."""
    if not hasattr(_request_context, "data"):
        _request_context.data = {}
    _request_context.data.update(kwargs)


def clear_request_context() -> None:
    _request_context.data = {}


def get_request_context() -> dict[str, Any]:
    return getattr(_request_context, "data", {})


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter.

    Output format:
    {
        "timestamp": "2025-01-15T10:30:00+00:00",
        "level": "INFO",
        "logger": "claims",
        "message": "Claim settled for 7xKX...AsU",
        "context": {"request_id": "abc123"},
        ...
    }
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def _clean(self, value: Any) -> Any:
        return redact_sensitive_data(value) if self.redact_sensitive else value

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            log_entry["exception"] = self._clean(self.formatException(record.exc_info))

        context = get_request_context()
        if context:
            log_entry["context"] = self._clean(context)

        for key, value in _extras(record).items():
            log_entry[key] = self._clean(value)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable coloured output for development. Also redacts."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        msg = (
            f"{color}{timestamp} {record.levelname[0]} [{record.name}]{reset} "
            f"{redact_string(record.getMessage())}"
        )

        context = get_request_context()
        if context:
            ctx_str = " ".join(f"{k}={v}" for k, v in redact_sensitive_data(context).items())
            msg += f" {color}({ctx_str}){reset}"

        extras = redact_sensitive_data(_extras(record))
        if extras:
            msg += f" [{', '.join(f'{k}={v}' for k, v in extras.items())}]"

        if record.exc_info:
            msg += "\n" + redact_string(self.formatException(record.exc_info))

        return msg


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level name
        json_output: Use JSON format (LOG_FORMAT=json when None)
        log_file: Optional file path; file output is always JSON
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    for name in ("urllib3", "werkzeug", "requests"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggingContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LoggingContext(claim_key=key, wallet=wallet):
            logger.info("Reserving funds")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context = {}

    def __enter__(self):
        self.previous_context = get_request_context().copy()
        set_request_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_request_context()
        if self.previous_context:
            set_request_context(**self.previous_context)
        return False
