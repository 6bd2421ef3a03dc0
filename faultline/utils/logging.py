"""
JSON log lines for the alert worker and ingestion paths.

Each line carries the UTC time, level, logger name, message and the
correlation id of the current tick or ingest call. Domain ids passed through
`extra=` (alert, channel, issue...) are copied onto the line when present.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys lifted from LogRecord extras onto the JSON line
EXTRA_FIELDS = (
    "alert_id",
    "channel_id",
    "notification_id",
    "instance_id",
    "project_id",
    "issue_id",
    "error_code",
)

QUIET_LOGGERS = ("sqlalchemy.engine", "httpcore", "httpx", "asyncio")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """32-char hex id, one per worker tick or ingest call."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of a block, then restore the previous one."""
    cid = cid or generate_correlation_id()
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """One compact JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            line["exception"] = self.formatException(record.exc_info)

        line.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        return json.dumps(line, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install a single JSON stream handler on the root logger. Call once at startup."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
