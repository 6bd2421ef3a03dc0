"""
Message normalization and event fingerprinting.

Events that differ only in volatile substrings (timestamps, ids, addresses,
paths, versions) must land in the same issue. normalize_message() replaces
those substrings with fixed placeholders; fingerprint() hashes either the
stack shape or the normalized message into the grouping key.
"""
import hashlib
import re

from faultline.schemas.event_body import EventBody, ExceptionInfo

DEFAULT_MESSAGE = "(No error message)"
DEFAULT_EXCEPTION_TYPE = "Error"

# Frames from these modules never make a useful location hint
IGNORED_MODULES = frozenset({
    "logging",
    "sentry_sdk",
    "sentry_sdk.integrations.logging",
    "asyncio.events",
})

LINE_BUCKET = 10

# Rounds of normalize_message before giving up on a fixed point
MAX_NORMALIZE_ROUNDS = 16

_WHITESPACE = re.compile(r"\s+")

_TIMESTAMP_PATTERNS = (
    # ISO 8601 / RFC 3339
    re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})"),
    re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z"),
    # Unix seconds
    re.compile(r"\b\d{10}\b"),
    # Dates
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\d{2}/\d{2}/\d{4}"),
    re.compile(r"\d{2}-\d{2}-\d{4}"),
    # Times
    re.compile(r"\d{2}:\d{2}:\d{2}"),
    re.compile(r"\d{1,2}:\d{2}\s*(?:AM|PM)"),
)

_UUID_PATTERN = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)

_PATH_PATTERNS = (
    re.compile(r"https?://\S+"),
    re.compile(r"(?:/[^/\s]+)+/[^/\s]*"),
    re.compile(r"[A-Za-z]:\\(?:[^\\/:*?\"<>|\r\n]+\\)*[^\\/:*?\"<>|\r\n]*"),
)

_IP_PATTERNS = (
    re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
    re.compile(r"\b(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}\b"),
)

_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_VERSION_PATTERN = re.compile(r"\bv?\d+\.\d+(?:\.\d+)?(?:-[a-zA-Z0-9]+)?\b")

# (key, pattern) - matches collapse to "key=<id>"
_ID_PATTERNS = (
    ("id", re.compile(r"\bid[=:]\s*\d+\b")),
    ("userid", re.compile(r"\buserid[=:]\s*\d+\b")),
    ("user_id", re.compile(r"\buser_id[=:]\s*\d+\b")),
    ("session", re.compile(r"\bsession[=:]\s*[a-zA-Z0-9]+\b")),
    ("token", re.compile(r"\btoken[=:]\s*[a-zA-Z0-9]+\b")),
)

_NUMERIC_PATTERNS = (
    re.compile(r"\b\d{6,}\b"),
    re.compile(r"\b\d+\.\d+\b"),
    re.compile(r"\b0x[a-fA-F0-9]+\b"),
    re.compile(r"\b[a-fA-F0-9]{8,}\b"),
)


def normalize_message(message: str) -> str:
    """
    Replace volatile substrings with placeholders and collapse whitespace.

    Passes run in a fixed order: timestamps, UUIDs and paths go before the
    generic numeric pass, which would otherwise eat parts of them. A single
    round can leave new matches behind (a doubled slash around a path turns
    into "/<path>/"), so rounds repeat until the text stops changing.
    """
    if not message:
        return ""

    normalized = _normalize_round(message)
    for _ in range(MAX_NORMALIZE_ROUNDS - 1):
        again = _normalize_round(normalized)
        if again == normalized:
            break
        normalized = again
    return normalized


def _normalize_round(normalized: str) -> str:
    for pattern in _TIMESTAMP_PATTERNS:
        normalized = pattern.sub("<timestamp>", normalized)

    normalized = _UUID_PATTERN.sub("<uuid>", normalized)

    for pattern in _PATH_PATTERNS:
        normalized = pattern.sub("<path>", normalized)

    for pattern in _IP_PATTERNS:
        normalized = pattern.sub("<ip>", normalized)

    normalized = _EMAIL_PATTERN.sub("<email>", normalized)
    normalized = _VERSION_PATTERN.sub("<version>", normalized)

    for key, pattern in _ID_PATTERNS:
        normalized = pattern.sub(f"{key}=<id>", normalized)

    for pattern in _NUMERIC_PATTERNS:
        normalized = pattern.sub("<number>", normalized)

    normalized = _WHITESPACE.sub(" ", normalized)
    return normalized.strip()


def normalize_stack_trace(exceptions: list[ExceptionInfo]) -> list[ExceptionInfo]:
    """Return a deep copy with exception values and frame source lines normalized."""
    normalized = []
    for exc in exceptions:
        copy = exc.model_copy(deep=True)
        copy.value = normalize_message(copy.value)
        for frame in copy.stacktrace.frames:
            frame.context_line = normalize_message(frame.context_line)
            frame.pre_context = [normalize_message(line) for line in frame.pre_context]
            frame.post_context = [normalize_message(line) for line in frame.post_context]
        normalized.append(copy)
    return normalized


def fingerprint(event: EventBody) -> str:
    """
    Compute the issue grouping key for an event (32 hex chars).

    Stack-based when the first exception carries frames, message-based
    otherwise. MD5 is used for speed and fixed width, not for security.
    """
    exceptions = event.exception
    if exceptions and exceptions[0].stacktrace.frames:
        return _hash_stack_trace(exceptions)
    return _hash_message(event)


def _hash_stack_trace(exceptions: list[ExceptionInfo]) -> str:
    digest = hashlib.md5(usedforsecurity=False)

    for exc in exceptions:
        digest.update(exc.type.encode("utf-8"))

        frames = exc.stacktrace.frames
        selected = [frame for frame in frames if frame.in_app] or frames

        for frame in selected:
            digest.update(frame.module.encode("utf-8"))
            digest.update(frame.function.encode("utf-8"))
            # Line shifts within a bucket keep the same key
            digest.update(str(frame.lineno // LINE_BUCKET * LINE_BUCKET).encode("utf-8"))

        digest.update(normalize_message(exc.value).encode("utf-8"))

    return digest.hexdigest()


def _hash_message(event: EventBody) -> str:
    digest = hashlib.md5(usedforsecurity=False)
    digest.update(normalize_message(event.message).encode("utf-8"))
    digest.update(event.level.encode("utf-8"))
    digest.update(event.platform.encode("utf-8"))
    return digest.hexdigest()


def exception_value(exceptions: list[ExceptionInfo], default: str = DEFAULT_MESSAGE) -> str:
    """Value of the outermost (last) exception."""
    if not exceptions:
        return default
    return exceptions[-1].value


def exception_type(exceptions: list[ExceptionInfo], default: str = "") -> str:
    """Type of the outermost exception, falling back to a generic type when only a value exists."""
    if not exceptions:
        return default
    exc = exceptions[-1]
    if exc.type:
        return exc.type
    if exc.value:
        return DEFAULT_EXCEPTION_TYPE
    return default


def culprit(exceptions: list[ExceptionInfo]) -> str:
    """Location hint "module in function" from the innermost non-library frame."""
    if not exceptions:
        return ""
    frames = exceptions[-1].stacktrace.frames
    if not frames:
        return ""

    for frame in reversed(frames):
        if frame.module in IGNORED_MODULES:
            continue
        return f"{frame.module} in {frame.function}"

    return f"{frames[0].module} in {frames[0].function}"
