"""
Error taxonomy shared by stores, services and the alert worker.

Domain errors are returned to callers and never logged as system failures.
Delivery errors end up on AlertNotification rows instead of propagating.
"""
import asyncio
import socket
from typing import Optional


class FaultlineError(Exception):
    """Base class for all errors raised by this package."""


# --- Domain errors ---

class NotFoundError(FaultlineError):
    pass


class DuplicateKeyError(FaultlineError):
    pass


class NoAccessError(FaultlineError):
    pass


class ValidationError(FaultlineError):
    pass


class InvalidQueryError(ValidationError):
    pass


# --- Infrastructure errors ---

class AnalyticsStoreError(FaultlineError):
    """A query or write against the analytics store failed. The driver error is __cause__."""

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"analytics store {operation}: {message}" if message else f"analytics store {operation}")


class RegistryError(FaultlineError):
    """A relational registry operation failed. The driver error is __cause__."""

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"registry {operation}: {message}" if message else f"registry {operation}")


class ConnectionFailedError(FaultlineError):
    pass


# --- Delivery errors ---

class NotificationError(FaultlineError):
    pass


class WebhookNotVerifiedError(NotificationError):
    pass


class UnsupportedChannelError(NotificationError):
    pass


class WebhookDeliveryError(NotificationError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class DecryptionError(NotificationError):
    pass


# Markers for errors that will not go away by retrying (bad credentials,
# missing database or table, missing privileges).
_PERMANENT_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "access denied",
    "permission denied",
    "invalidpassworderror",
    "invalidcatalognameerror",
    "does not exist",
    "unknown database",
    "no such table",
    "undefinedtableerror",
    "insufficientprivilegeerror",
)

_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "connection was closed",
    "timed out",
    "timeout",
    "could not connect",
    "cannot connect",
    "temporarily unavailable",
    "the database system is starting up",
    "too many connections",
)


def _iter_chain(exc: BaseException):
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify a connection-time failure as transient (retry) or permanent (raise).
    Walks the __cause__/__context__ chain; any permanent marker wins.
    """
    chain = list(_iter_chain(exc))

    for err in chain:
        text = f"{type(err).__name__} {err}".lower()
        if any(marker in text for marker in _PERMANENT_MARKERS):
            return False

    for err in chain:
        if isinstance(err, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.timeout)):
            return True
        text = f"{type(err).__name__} {err}".lower()
        if any(marker in text for marker in _TRANSIENT_MARKERS):
            return True

    return False
