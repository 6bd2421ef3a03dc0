"""
Issue - the aggregate identity of all events sharing a fingerprint within a project.
Created by ingestion on the first event with a novel fingerprint.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, UniqueConstraint
from faultline.database import Base


class IssuePriority:
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    LABELS = {LOW: "Low", MEDIUM: "Med", HIGH: "High"}


class Issue(Base):
    __tablename__ = "issues"
    __table_args__ = (
        UniqueConstraint("project_id", "hash", name="uq_issues_project_hash"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(32), nullable=False, unique=True, default=lambda: uuid.uuid4().hex)
    project_id = Column(Integer, nullable=False, index=True)
    hash = Column(String(32), nullable=False, index=True)
    first_seen = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    last_seen = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    message = Column(String(255), nullable=True)
    error_type = Column(String(512), nullable=True)
    view = Column(String(255), nullable=True)  # "module in function"
    priority = Column(Integer, nullable=False, default=IssuePriority.HIGH)
    num_comments = Column(Integer, nullable=False, default=0)
