"""
Project - the tenant boundary for events, issues and alerts.
Projects are owned by teams; project and team CRUD live outside this package.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime
from faultline.database import Base


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    team_id = Column(Integer, nullable=False, index=True)
    platform = Column(String(50), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
