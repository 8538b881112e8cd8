"""
Structured logging for Billwatch.

Module loggers (``billwatch.*``) hand their records to the ``billwatch``
namespace logger configured here. Set ``USE_JSON_LOGS=true`` in production to
get one JSON object per line; alert lifecycle, scope proof transitions and
errors carry their fields as top-level keys so they can be queried.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

logger = logging.getLogger("billwatch")


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return repr(value)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra_fields`` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.pathname:
            payload["where"] = f"{record.module}.{record.funcName}:{record.lineno}"
        payload.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)install the single stdout handler on the namespace logger."""
    level_name = (level or LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    use_json = USE_JSON_LOGS if json_logs is None else json_logs

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(numeric_level)
    logger.propagate = False
    return logger


configure_logging()


def _emit(level: int, message: str, fields: Dict[str, Any]) -> None:
    if not logger.isEnabledFor(level):
        return
    record = logger.makeRecord(logger.name, level, "", 0, message, (), None)
    record.extra_fields = fields
    logger.handle(record)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    account_id: Optional[str] = None,
    **kwargs
):
    """Log one HTTP request."""
    fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if account_id:
        fields["account_id"] = account_id
    fields.update(kwargs)
    _emit(logging.INFO, f"{method} {path} {status_code}", fields)


def log_alert_event(action: str, alert: Any, trigger: str, reason: Optional[str] = None) -> None:
    """Log an alert being created or closed."""
    fields = {
        "type": "alert",
        "action": action,
        "alert_id": alert.id,
        "account_id": alert.account_id,
        "kind": alert.kind,
        "source_id": alert.source_id,
        "confidence": alert.confidence,
        "estimated_amount": alert.estimated_amount,
        "trigger": trigger,
    }
    if reason:
        fields["reason"] = reason
    kind = getattr(alert.kind, "value", alert.kind)
    suffix = f" ({reason})" if reason else ""
    _emit(logging.INFO, f"Alert {alert.id} {kind} {action.lower()}{suffix}", fields)


def log_transition(scope_proof: Any, from_state: Any, to_state: Any, **kwargs) -> None:
    """Log a committed scope proof state change."""
    fields = {
        "type": "scope_proof_transition",
        "scope_proof_id": scope_proof.id,
        "account_id": scope_proof.account_id,
        "from_state": from_state,
        "to_state": to_state,
    }
    fields.update(kwargs)
    _emit(
        logging.INFO,
        f"Scope proof {scope_proof.id}: {getattr(from_state, 'value', from_state)} -> {getattr(to_state, 'value', to_state)}",
        fields,
    )


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[BaseException] = None
):
    """Log an error with its context, and the traceback when there is one."""
    fields: Dict[str, Any] = {"type": "error", "error_type": error_type}
    if context:
        fields.update(context)
    if exception is not None:
        fields["exception_type"] = type(exception).__name__
        logger.error(message, exc_info=exception, extra={"extra_fields": fields})
    else:
        _emit(logging.ERROR, message, fields)
