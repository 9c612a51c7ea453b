"""
Structured logging for the entitlement engine.

Everything goes through the "entitlements" logger:
- production: one JSON object per line
- anything else: a readable single line with the event type in brackets

Records carry the current request id (set by RequestIdMiddleware) so a
license activation or a verification pass can be traced through the logs.
License keys and transaction hashes are masked before they are logged.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "entitlements"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes promoted into the JSON payload when present.
STRUCTURED_FIELDS = ("request_id", "event_type", "error_code", "plan", "chain_id", "status", "duration_ms")

# extra keys whose values are license keys; masked by log_event.
_LICENSE_FIELDS = {"key", "license_key"}

TRUNCATE_AT = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def mask_license_key(key: Optional[str]) -> str:
    """Keep the HA-TIER prefix, hide the random parts."""
    if not key:
        return "<none>"
    parts = key.strip().upper().split("-")
    if len(parts) >= 2:
        return f"{parts[0]}-{parts[1]}-****"
    return "****"


def mask_hash(value: Optional[str], keep: int = 10) -> str:
    if not value:
        return "<none>"
    if len(value) <= keep:
        return value
    return value[:keep] + "..."


def _utc_iso(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _utc_iso(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_iso(record), record.levelname]
        event_type = getattr(record, "event_type", None)
        if event_type:
            parts.append(f"[{event_type}]")
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> logging.Logger:
    """Install a single stdout handler on the entitlements logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # httpx logs every explorer request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger


def _safe_truncate(value, limit: int = TRUNCATE_AT) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """
    Log msg on the entitlements logger with structured context.

    extra values are stringified and truncated; values under license key
    fields are masked.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {"request_id": request_id or get_request_id()}
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for name, value in (extra or {}).items():
        if name in _LICENSE_FIELDS and isinstance(value, str) and "****" not in value:
            value = mask_license_key(value)
        fields[name] = value if isinstance(value, (int, float, bool)) else _safe_truncate(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
