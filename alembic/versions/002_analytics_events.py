"""Analytics store - events and their tag hash set.

Runs against ANALYTICS_DATABASE_URL. The analytics store has no foreign
keys into the registry; group_id and project_id are plain integers.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(32), nullable=False),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retention_days", sa.SmallInteger, nullable=False, server_default="90"),
        sa.Column("platform", sa.String(50), nullable=False, server_default=""),
        sa.Column("level", sa.String(20), nullable=False, server_default="error"),
        sa.Column("env", sa.String(255), nullable=False, server_default=""),
        sa.Column("release", sa.String(255), nullable=False, server_default=""),
        sa.Column("user", sa.String(255), nullable=False, server_default=""),
        sa.Column("user_email", sa.String(255), nullable=False, server_default=""),
        sa.Column("user_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("user_username", sa.String(255), nullable=False, server_default=""),
        sa.Column("message", sa.Text, nullable=False, server_default=""),
        sa.Column("title", sa.Text, nullable=False, server_default=""),
        sa.Column("primary_hash", sa.String(32), nullable=False, server_default=""),
        sa.Column("sdk_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("sdk_version", sa.String(50), nullable=False, server_default=""),
        sa.Column("exception", postgresql.JSONB),
    )
    op.create_index("ix_events_event_id", "events", ["event_id"])
    op.create_index("ix_events_project_created", "events", ["project_id", "created_at"])
    op.create_index("ix_events_group_created", "events", ["group_id", "created_at"])

    op.create_table(
        "event_tags",
        sa.Column(
            "event_pk", sa.BigInteger,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("position", sa.SmallInteger, primary_key=True, autoincrement=False),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("value", sa.String(1024), nullable=False),
        sa.Column("tag_hash", sa.BigInteger, nullable=False),
    )
    op.create_index("ix_event_tags_hash_event", "event_tags", ["tag_hash", "event_pk"])
    op.create_index("ix_event_tags_key_value", "event_tags", ["key", "value"])


def downgrade() -> None:
    op.drop_table("event_tags")
    op.drop_table("events")
