"""
Parsed error event - the input format for fingerprinting and ingestion.
Client SDK envelopes are decoded upstream; by the time an event reaches the
core it is one of these.
"""
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, Field


class Frame(BaseModel):
    """One stack frame. Frames are ordered oldest call first."""
    function: str = ""
    module: str = ""
    filename: str = ""
    abs_path: str = ""
    lineno: int = 0
    colno: int = 0
    in_app: bool = False
    context_line: str = ""
    pre_context: list[str] = Field(default_factory=list)
    post_context: list[str] = Field(default_factory=list)


class StackTrace(BaseModel):
    frames: list[Frame] = Field(default_factory=list)


class ExceptionInfo(BaseModel):
    type: str = ""
    value: str = ""
    module: str = ""
    stacktrace: StackTrace = Field(default_factory=StackTrace)


class EventUser(BaseModel):
    id: str = ""
    email: str = ""
    username: str = ""
    name: str = ""
    ip_address: str = ""


class SdkInfo(BaseModel):
    name: str = ""
    version: str = ""


class EventBody(BaseModel):
    """A single error event as submitted by an SDK."""
    event_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: str = ""
    level: str = "error"
    platform: str = ""
    release: str = ""
    environment: str = ""
    server_name: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    user: EventUser = Field(default_factory=EventUser)
    sdk: SdkInfo = Field(default_factory=SdkInfo)
    exception: list[ExceptionInfo] = Field(default_factory=list)
    os_name: Optional[str] = None
