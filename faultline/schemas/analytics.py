"""
Criteria and result types for the analytics store.

Every query is scoped by project id(s) and a [start, end] time window;
criteria objects carry those explicitly instead of positional arguments.
"""
from datetime import date, datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from faultline.query import TagPredicate


# --- Criteria ---

class IssueMetricsCriteria(BaseModel):
    project_ids: list[int]
    group_ids: list[int]
    start: datetime
    end: datetime


class EventDefCriteria(BaseModel):
    """One issue in one project over a window. event_id narrows to a single event."""
    project_id: int
    group_id: int
    start: datetime
    end: datetime
    event_id: str = ""


class EventCriteria(BaseModel):
    project_ids: list[int]
    group_id: int
    start: datetime
    end: datetime
    message: str = ""
    predicates: list[TagPredicate] = Field(default_factory=list)
    limit: int = 50
    offset: int = 0


class ProjectWindowCriteria(BaseModel):
    project_ids: list[int]
    start: datetime
    end: datetime
    limit: int = 1000


class TagValuesCriteria(ProjectWindowCriteria):
    tag: str


class ErrorsCriteria(BaseModel):
    last_error_time: datetime


# --- Results ---

class IssueMetrics(BaseModel):
    gid: int
    times_seen: int
    user_count: int
    first_seen: datetime
    last_seen: datetime


class TagCount(BaseModel):
    tag: str
    count: int


class FieldValueNum(BaseModel):
    tag: str
    value: str
    count: int
    first_seen: datetime
    last_seen: datetime
    percent_of_total: float = 0.0


class TagValueCount(BaseModel):
    value: str
    count: int


class Filter(BaseModel):
    key: str
    value: str


class EventEntry(BaseModel):
    event_id: str
    created_at: datetime
    title: str
    message: str
    release: str
    env: str
    user: str
    user_email: str
    user_username: str
    user_name: str
    os: str = ""


class IssueEvent(BaseModel):
    event_id: str
    created_at: datetime
    env: str
    release: str
    user: str
    user_username: str
    user_name: str
    user_email: str
    message: str
    title: str
    tags: list[tuple[str, str]] = Field(default_factory=list)
    exception: list[dict[str, Any]] = Field(default_factory=list)


class EventsPerHour(BaseModel):
    ts: datetime
    project_id: int
    count: int


class EventPerDay(BaseModel):
    time: date
    gid: int
    count: int


class Schema(BaseModel):
    name: str
    readable_bytes: str
    total_bytes: int
    total_rows: int
    engine: str = ""
    partition_key: str = ""


class SQLQuery(BaseModel):
    normalized_query: str
    avg_duration: float
    avg_result_rows: float
    total_calls: int
    read_bytes: int
    total_read_bytes: str
    percentage_runtime: float
    normalized_query_hash: str
    percent: float = 0.0


class AnalyticsStoreErr(BaseModel):
    name: str
    count: int
    max_last_error_time: Optional[datetime] = None


# --- Writes ---

class EventRecord(BaseModel):
    """A fully derived event row, ready to append."""
    event_id: str
    project_id: int
    group_id: int
    created_at: datetime
    retention_days: int = 90
    platform: str = ""
    level: str = "error"
    env: str = ""
    release: str = ""
    user: str = ""
    user_email: str = ""
    user_name: str = ""
    user_username: str = ""
    message: str = ""
    title: str = ""
    primary_hash: str = ""
    sdk_name: str = ""
    sdk_version: str = ""
    exception: list[dict[str, Any]] = Field(default_factory=list)
    tags: list[tuple[str, str]] = Field(default_factory=list)
