"""
Logging setup for samlflow.

Two named loggers carry the login flow's own reporting:

- ``samlflow.operator``: full diagnostics of failed logins, for the people
  running the service. Nothing logged here is ever shown to a user.
- ``samlflow.security``: replays, phase mismatches, forged markers and
  duplicate state rows.

Every record gets the current request id, tracked session id and provider
id from context variables, and SAML payloads, keys and marker signatures
are scrubbed before formatting. Output is one JSON object per line in
production and a compact coloured line during development.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

OPERATOR_LOGGER_NAME = "samlflow.operator"
SECURITY_LOGGER_NAME = "samlflow.security"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tracked_session_var: ContextVar[Optional[str]] = ContextVar("tracked_session", default=None)
idp_id_var: ContextVar[Optional[str]] = ContextVar("idp_id", default=None)

# Record attribute -> context variable
CONTEXT_FIELDS = {
    "request_id": request_id_var,
    "tracked_session": tracked_session_var,
    "idp_id": idp_id_var,
}
UNSET = "-"

REDACTED = "[REDACTED]"

SENSITIVE_PATTERNS = [
    # Base64 SAML messages, posted or in a query string
    re.compile(r'SAML(?:Response|Request)["\']?\s*[:=]\s*["\']?[\w+/=%-]+', re.IGNORECASE),
    re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL),
    re.compile(r"__PSML=[^;\s]+"),
    re.compile(r'(?:password|secret|audit[_-]?key)["\']?\s*[:=]\s*["\']?[^\s,;}]+', re.IGNORECASE),
    re.compile(r'token["\']?\s*[:=]\s*["\']?[\w.-]+', re.IGNORECASE),
    re.compile(r"bearer\s+[\w.-]+", re.IGNORECASE),
]

# Attributes every LogRecord has; anything else was passed through extra=
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"} | frozenset(CONTEXT_FIELDS)

# Libraries that are chatty at INFO
NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "asyncio": logging.WARNING,
    "xmlsec": logging.WARNING,
}


def redact_sensitive_data(message: str) -> str:
    """Replace SAML payloads, private keys, markers and credentials with ``[REDACTED]``."""
    if not message:
        return message
    for pattern in SENSITIVE_PATTERNS:
        message = pattern.sub(REDACTED, message)
    return message


def get_operator_logger() -> logging.Logger:
    return logging.getLogger(OPERATOR_LOGGER_NAME)


def get_security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER_NAME)


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class RequestContextFilter(logging.Filter):
    """Copies the context variables onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, var in CONTEXT_FIELDS.items():
            setattr(record, attr, var.get() or UNSET)
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrubs the message template and any string arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_sensitive_data(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_sensitive_data(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context ids at the top level and ``extra=`` values under ``extra``."""

    def __init__(self, service_name: str = "samlflow"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
        }
        for attr in CONTEXT_FIELDS:
            entry[attr] = getattr(record, attr, UNSET)

        if record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno} in {record.funcName}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra = extra_fields(record)
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, default=str, ensure_ascii=False)


class DevelopmentFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [request session] logger: message {extra}``"""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        request_id = getattr(record, "request_id", UNSET)[:8]
        tracked = getattr(record, "tracked_session", UNSET)[:8]
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        line = (
            f"{when} {color}{record.levelname:<8}{self.RESET if color else ''} "
            f"[{request_id} {tracked}] {record.name}: {record.getMessage()}"
        )
        extra = extra_fields(record)
        if extra:
            line = f"{line} {extra}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _wants_json() -> bool:
    if _env_flag("LOG_FORMAT_JSON"):
        return True
    environment = os.environ.get("ENVIRONMENT") or os.environ.get("SENTRY_ENVIRONMENT") or ""
    return environment.lower() in ("production", "prod")


def setup_logging(
    service_name: str = "samlflow",
    log_level: Optional[int] = None,
    force_json: bool = False,
) -> logging.Logger:
    """
    Install the samlflow handler on the root logger.

    Call once at startup, before the modules that log are imported. The
    level comes from ``LOG_LEVEL`` unless given. Security events are kept
    at INFO whatever the global level is.
    """
    if log_level is None:
        log_level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO
    use_json = force_json or _wants_json()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JSONFormatter(service_name) if use_json else DevelopmentFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    get_security_logger().setLevel(logging.INFO)
    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    root.info(
        "Logging configured",
        extra={"log_level": logging.getLevelName(log_level), "log_format": "json" if use_json else "text"},
    )
    return root


def set_request_context(
    request_id: Optional[str] = None,
    tracked_session_id: Optional[str] = None,
    idp_id: Optional[int] = None,
) -> None:
    """Attach ids to the records logged from the current task. ``None`` leaves a value as it is."""
    if request_id is not None:
        request_id_var.set(request_id)
    if tracked_session_id is not None:
        tracked_session_var.set(tracked_session_id)
    if idp_id is not None:
        idp_id_var.set(str(idp_id))


def clear_request_context() -> None:
    for var in CONTEXT_FIELDS.values():
        var.set(None)
