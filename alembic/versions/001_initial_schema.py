"""Initial schema - relational registry tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Projects
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("team_id", sa.Integer, nullable=False),
        sa.Column("platform", sa.String(50), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_projects_name", "projects", ["name"])
    op.create_index("ix_projects_team_id", "projects", ["team_id"])

    # Issues
    op.create_table(
        "issues",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("uuid", sa.String(32), nullable=False, unique=True),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("hash", sa.String(32), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("message", sa.String(255)),
        sa.Column("error_type", sa.String(512)),
        sa.Column("view", sa.String(255)),
        sa.Column("priority", sa.Integer, nullable=False, server_default="3"),
        sa.Column("num_comments", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("project_id", "hash", name="uq_issues_project_hash"),
    )
    op.create_index("ix_issues_project_id", "issues", ["project_id"])
    op.create_index("ix_issues_hash", "issues", ["hash"])
    op.create_index("ix_issues_last_seen", "issues", ["last_seen"])

    # Alerts
    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("team_id", sa.Integer, nullable=False),
        sa.Column("rule_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("threshold", sa.Integer, nullable=False),
        sa.Column("condition", sa.Integer, nullable=False, server_default="1"),
        sa.Column("timeframe", sa.Integer, nullable=False, server_default="4"),
        sa.Column("high_priority", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_alerts_project_id", "alerts", ["project_id"])
    op.create_index("ix_alerts_team_id", "alerts", ["team_id"])
    op.create_index("ix_alerts_status", "alerts", ["status"])

    # Alert lock ledger - at most one live lease per alert
    op.create_table(
        "alert_locks",
        sa.Column("alert_id", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("instance_id", sa.String(255), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_alert_locks_expires_at", "alert_locks", ["expires_at"])

    # Notification channels
    op.create_table(
        "notification_channels",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("team_id", sa.Integer, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("channel_type", sa.String(20), nullable=False, server_default="webhook"),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notification_channels_team_id", "notification_channels", ["team_id"])

    # Webhook configs (one per channel)
    op.create_table(
        "webhook_configs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "channel_id", sa.Integer,
            sa.ForeignKey("notification_channels.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("secret_encrypted", sa.Text),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Delivery records
    op.create_table(
        "alert_notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("alert_id", sa.Integer, nullable=False),
        sa.Column("channel_id", sa.Integer, nullable=False),
        sa.Column("notification_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_alert_notifications_alert_id", "alert_notifications", ["alert_id"])
    op.create_index("ix_alert_notifications_channel_id", "alert_notifications", ["channel_id"])
    op.create_index("ix_alert_notifications_status", "alert_notifications", ["status"])


def downgrade() -> None:
    op.drop_table("alert_notifications")
    op.drop_table("webhook_configs")
    op.drop_table("notification_channels")
    op.drop_table("alert_locks")
    op.drop_table("alerts")
    op.drop_table("issues")
    op.drop_table("projects")
