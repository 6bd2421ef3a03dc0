"""
Search query compiler.

Turns the end-user filter syntax into free text plus tag predicates:

    release:1.0.0 !server_name:host-a "disk full"

    -> free text "disk full"
       has tag release=1.0.0
       not has tag server_name=host-a

Tag predicates are checked against the per-event tag hash set, so each
predicate carries the same 64-bit hash the analytics store writes at ingest.
"""
import hashlib
from typing import Optional

from pydantic import BaseModel, Field

from faultline.errors import InvalidQueryError

OPERATOR_IS = "is"
OPERATOR_IS_NOT = "is not"

_QUOTES = ("'", '"')


def escape_tag_key(key: str) -> str:
    """Backslash-escape '\\' and '=' so "key=value" splits unambiguously."""
    return key.replace("\\", "\\\\").replace("=", "\\=")


def tag_string(key: str, value: str) -> str:
    return f"{escape_tag_key(key)}={value}"


def tag_hash(key: str, value: str) -> int:
    """Signed 64-bit hash of the escaped "key=value" string."""
    digest = hashlib.blake2b(tag_string(key, value).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class QueryToken(BaseModel):
    """One token of a search query: either raw text or a key/value tag filter."""
    key: str = ""
    value: str = ""
    operator: str = OPERATOR_IS
    is_raw_text: bool = False

    @property
    def negated(self) -> bool:
        return self.operator == OPERATOR_IS_NOT


class TagPredicate(BaseModel):
    key: str
    value: str
    negated: bool = False

    @property
    def tag_string(self) -> str:
        return tag_string(self.key, self.value)

    @property
    def tag_hash(self) -> int:
        return tag_hash(self.key, self.value)


class CompiledQuery(BaseModel):
    free_text: str = ""
    predicates: list[TagPredicate] = Field(default_factory=list)

    @property
    def required(self) -> list[TagPredicate]:
        return [p for p in self.predicates if not p.negated]

    @property
    def forbidden(self) -> list[TagPredicate]:
        return [p for p in self.predicates if p.negated]


class QueryValue(BaseModel):
    value: str
    is_not: bool = False


def _split(query: str) -> list[str]:
    """Split on whitespace that is not inside single or double quotes."""
    parts: list[str] = []
    current: list[str] = []
    quote: Optional[str] = None

    for ch in query:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
            current.append(ch)
        elif ch.isspace():
            if current:
                parts.append("".join(current))
                current = []
        else:
            current.append(ch)

    if current:
        parts.append("".join(current))
    return parts


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] in _QUOTES and text[-1] == text[0]:
        return text[1:-1]
    # Unterminated quote: drop the opening mark only
    if text and text[0] in _QUOTES and text.count(text[0]) == 1:
        return text[1:]
    return text


def tokenize(query: str) -> list[QueryToken]:
    """
    Tokenize a search query, keeping every bare token and quoted phrase.
    A token is a tag filter when it contains ':' outside of a leading quote
    and has a non-empty key.
    """
    tokens: list[QueryToken] = []

    for part in _split(query or ""):
        if part[0] not in _QUOTES and ":" in part:
            key, _, value = part.partition(":")
            operator = OPERATOR_IS
            if key.startswith("!"):
                operator = OPERATOR_IS_NOT
                key = key[1:]
            if key:
                tokens.append(QueryToken(key=key, value=_unquote(value), operator=operator))
                continue

        text = _unquote(part)
        if text:
            tokens.append(QueryToken(value=text, is_raw_text=True))

    return tokens


def compile_query(query: str) -> CompiledQuery:
    """Compile a search query into free text and tag predicates."""
    free_text: list[str] = []
    predicates: list[TagPredicate] = []

    for token in tokenize(query):
        if token.is_raw_text:
            free_text.append(token.value)
        else:
            predicates.append(TagPredicate(key=token.key, value=token.value, negated=token.negated))

    return CompiledQuery(free_text=" ".join(free_text), predicates=predicates)


def parse_search_query(query: str) -> tuple[str, dict[str, QueryValue]]:
    """
    Single-field search parser used by the per-issue event list.

    Splits on single spaces. Every "key:value" token becomes a structured
    filter (later duplicates of a key win); of the bare tokens only the last
    one is kept as the raw search text.
    """
    raw = ""
    structured: dict[str, QueryValue] = {}

    if not query:
        return raw, structured

    for part in query.split(" "):
        if not part:
            continue
        if ":" in part:
            kv = part.split(":")
            if len(kv) != 2:
                raise InvalidQueryError(f"invalid query: {query}")
            key, value = kv
            is_not = key.startswith("!")
            if is_not:
                key = key[1:]
            structured[key] = QueryValue(value=value, is_not=is_not)
        else:
            raw = part

    return raw, structured
