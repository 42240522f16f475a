from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)


metadata = MetaData()


channel_enum = Enum(
    "email",
    "sms",
    "push",
    name="channel_enum",
)

status_enum = Enum(
    "pending",
    "sent",
    "delivered",
    "failed",
    "read",
    name="status_enum",
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("owner_id", String(128)),
    Column("channel", channel_enum, nullable=False),
    Column("title", String(512), nullable=False, default=""),
    Column("body", Text, nullable=False),
    Column("status", status_enum, nullable=False, default="pending"),
    Column("created_at", DateTime, default=datetime.utcnow, nullable=False),
    Column("delivered_at", DateTime),
    Column("read_at", DateTime),
    Column("failure_reason", Text),
    Column("provider_message_id", String(255)),
    Column("provider_metadata", JSON, default={}),
    UniqueConstraint("channel", "provider_message_id", name="uq_notifications_channel_message_id"),
)

Index("ix_notifications_owner_created", notifications.c.owner_id, notifications.c.created_at)
Index("ix_notifications_status", notifications.c.status)

push_targets = Table(
    "push_targets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False),
    Column("token", String(512), nullable=False),
    Column("created_at", DateTime, default=datetime.utcnow, nullable=False),
    UniqueConstraint("user_id", "token", name="uq_push_targets_user_token"),
)

Index("ix_push_targets_user_id", push_targets.c.user_id)


TABLES = {
    "notifications": notifications,
    "push_targets": push_targets,
}
