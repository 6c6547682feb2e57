"""
Structured logging for tutorgate.

- JSON lines in production, one-line pretty output everywhere else
- request_id bound per inbound call through a contextvar
- gate fields (identity, tier, stage, kind) lifted out of ``extra=`` so a
  denial can be traced back to the caller and the stage that decided it
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

LOGGER_NAME = "tutorgate"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# extra= keys promoted into JSON output, grouped by who emits them
GATE_FIELDS: Tuple[str, ...] = ("identity", "tier", "stage", "kind", "remaining", "cooldown_expiry")
EVENT_FIELDS: Tuple[str, ...] = ("code", "purchase_id", "event_id", "event_type", "action", "error_code")
HTTP_FIELDS: Tuple[str, ...] = ("path", "method", "status", "latency_bucket")

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))
_TRUNCATE_AT = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _present(record: logging.LogRecord, names: Tuple[str, ...]) -> Dict[str, Any]:
    values = {}
    for name in names:
        value = getattr(record, name, None)
        if value is not None:
            values[name] = value
    return values


class RequestIdFilter(logging.Filter):
    """Fill record.request_id from the current request when the caller did not pass one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for group in (GATE_FIELDS, EVENT_FIELDS, HTTP_FIELDS):
            payload.update(_present(record, group))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        gate = " ".join(f"{key}={value}" for key, value in _present(record, GATE_FIELDS).items())
        if gate:
            parts.append(f"[{gate}]")
        parts.append(record.getMessage())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """Install one stdout handler on the tutorgate logger. Safe to call repeatedly."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = True

    # Uvicorn keeps its own handlers; stop it double-printing through root
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _truncate(text: str, limit: int = _TRUNCATE_AT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    identity: Optional[str] = None,
    stage: Optional[str] = None,
    error_code: Optional[str] = None,
    **fields: Any,
) -> None:
    """Log msg on the tutorgate logger with request correlation; long string fields are truncated."""
    payload: Dict[str, Any] = {"request_id": request_id or get_request_id()}
    for key, value in (("identity", identity), ("stage", stage), ("error_code", error_code)):
        if value is not None:
            payload[key] = value
    for key, value in fields.items():
        payload[key] = _truncate(value) if isinstance(value, str) else value

    logging.getLogger(LOGGER_NAME).log(getattr(logging, level.upper(), logging.INFO), msg, extra=payload)
