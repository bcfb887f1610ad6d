"""
Structured Logging Infrastructure

Provides JSON-formatted logging with correlation IDs for request tracing,
plus an allow-listed metadata sanitizer for payment events.
"""
import logging
import json
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import Any
from contextvars import ContextVar

# Context variable for correlation ID
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger with an ``extra_data=`` keyword for structured fields"""

    def _log_with_extra(
        self,
        level: int,
        msg: str,
        args: tuple,
        extra_data: dict[str, Any] | None = None,
        **kwargs
    ) -> None:
        if extra_data:
            extra = kwargs.get("extra", {})
            extra["extra_data"] = extra_data
            kwargs["extra"] = extra
        super()._log(level, msg, args, **kwargs)

    def debug(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.DEBUG):
            self._log_with_extra(logging.DEBUG, msg, args, extra_data, **kwargs)

    def info(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.INFO):
            self._log_with_extra(logging.INFO, msg, args, extra_data, **kwargs)

    def warning(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.WARNING):
            self._log_with_extra(logging.WARNING, msg, args, extra_data, **kwargs)

    def error(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.ERROR):
            self._log_with_extra(logging.ERROR, msg, args, extra_data, **kwargs)


logging.setLoggerClass(StructuredLogger)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for production
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        handler.addFilter(CorrelationIdFilter())

    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


class CorrelationIdFilter(logging.Filter):
    """Filter that adds correlation_id to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set correlation ID for current context"""
    cid = correlation_id or str(uuid.uuid4())[:8]
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Get current correlation ID, generating and persisting one if not set"""
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    return logging.getLogger(name)  # type: ignore


# ──────────────────────────────────────────────
#  לוגים של תשלומים — allow-list בלבד
# ──────────────────────────────────────────────

class PaymentLogCode:
    """קודי אירוע קבועים ללוגי תשלומים (ניתנים לחיפוש)"""

    SIG_INVALID = "PAY_SIG_INVALID"
    SIG_MISSING = "PAY_SIG_MISSING"
    PUBKEY_REFRESHED = "PAY_PUBKEY_REFRESHED"
    RATE_LIMITED = "PAY_RATE_LIMITED"
    INVALID_PAYLOAD = "PAY_INVALID_PAYLOAD"
    DEDUP = "PAY_DEDUP"
    OLD_EVENT = "PAY_OLD_EVENT"
    MISMATCH = "PAY_MISMATCH"
    PAID_APPLIED = "PAY_PAID_APPLIED"
    REFUND_APPLIED = "PAY_REFUND_APPLIED"
    FAILURE_APPLIED = "PAY_FAILURE_APPLIED"
    UNMATCHED = "PAY_UNMATCHED"
    UNKNOWN_STATUS = "PAY_UNKNOWN_STATUS"
    DB_WRITE_FAILED = "PAY_DB_WRITE_FAILED"
    STORE_MODE = "PAY_STORE_MODE"
    DROP_MODE = "PAY_DROP_MODE"
    CREATE_INVOICE_FAILED = "PAY_CREATE_INVOICE_FAILED"
    INVOICE_PERSIST_FAILED = "PAY_INVOICE_PERSIST_FAILED"
    INVOICE_CANCEL_FAILED = "PAY_INVOICE_CANCEL_FAILED"
    TRANSITION_REJECTED = "payment_transition_rejected"
    RESTOCK_FAILED = "PAY_RESTOCK_FAILED"
    JANITOR_RUN = "PAY_JANITOR_RUN"
    REFUND_REQUESTED = "PAY_REFUND_REQUESTED"
    REFUND_FAILED = "PAY_REFUND_FAILED"
    CANCEL_APPLIED = "PAY_CANCEL_APPLIED"
    CANCEL_FAILED = "PAY_CANCEL_FAILED"


ALLOWED_META_KEYS = frozenset({
    "requestId",
    "route",
    "method",
    "provider",
    "mode",
    "eventId",
    "eventKey",
    "rawSha256",
    "rawBytesLen",
    "hasSignature",
    "invoiceId",
    "orderId",
    "attemptId",
    "appliedResult",
    "deduped",
    "status",
    "fromStatus",
    "toStatus",
    "source",
    "reason",
    "note",
    "errorCode",
    "endpoint",
    "httpStatus",
    "durationMs",
    "runId",
    "workerId",
    "job",
    "dryRun",
    "limit",
    "graceSeconds",
    "leaseSeconds",
    "ttlSeconds",
    "processed",
    "applied",
    "noop",
    "failed",
    "candidates",
    "claimed",
    "retryAfter",
    "count",
    "oldestAgeMinutes",
    "restockReason",
    "extRef",
    "operationId",
})

_BLOCKED_META_KEY_RE = re.compile(
    r"(payload|body|header|authorization|cookie|token|email|phone|card|basket)",
    re.IGNORECASE,
)
_HEX_64_RE = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)
_MAX_STRING_LEN = 180


def _sanitize_meta_value(key: str, value: Any) -> Any:
    if value is None:
        return None
    # bool לפני int — bool הוא תת-מחלקה של int
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return value
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        if key in ("eventKey", "rawSha256") and not _HEX_64_RE.match(trimmed):
            return None
        return trimmed[:_MAX_STRING_LEN]
    # enum / uuid וכו'
    if hasattr(value, "value") and isinstance(value.value, str):
        return value.value[:_MAX_STRING_LEN]
    return None


def sanitize_payment_meta(meta: dict[str, Any] | None) -> dict[str, Any]:
    """סינון metadata ללוג — רק מפתחות מאושרים, בלי payload/headers/PII."""
    if not meta:
        return {}

    out: dict[str, Any] = {}
    for key, raw_value in meta.items():
        if key not in ALLOWED_META_KEYS:
            continue
        if _BLOCKED_META_KEY_RE.search(key):
            continue
        value = _sanitize_meta_value(key, raw_value)
        if value is not None:
            out[key] = value
    return out


def log_payment_event(
    logger: StructuredLogger,
    level: int,
    code: str,
    meta: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """רישום אירוע תשלום דרך ה-allow-list."""
    logger.log(
        level,
        code,
        extra={"extra_data": {"code": code, **sanitize_payment_meta(meta)}},
        exc_info=exc_info,
    )
