"""SQLAlchemy Core table definitions for the notification pipeline."""
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import functions as func
from sqlalchemy.types import JSON

metadata = MetaData()

JSONType = JSON().with_variant(JSONB, "postgresql")


users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=True, index=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_login", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

user_preferences = Table(
    "user_preferences",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("default_notification_method", String(8), nullable=False, default="email"),
    Column("hot_alerts_enabled", Boolean, nullable=False, default=True),
    Column("proactive_notifications_enabled", Boolean, nullable=False, default=True),
    Column("weekly_digest_enabled", Boolean, nullable=False, default=True),
    Column("expiry_reminders_enabled", Boolean, nullable=False, default=True),
    Column("inactivity_alerts_enabled", Boolean, nullable=False, default=True),
    Column("max_notifications_per_day", Integer, nullable=False, default=0),  # 0 = unlimited
    Column("notification_cooldown_minutes", Integer, nullable=False, default=0),
    Column("proactive_cooldown_hours", Integer, nullable=False, default=4),
    Column("quiet_hours_start", String(5), nullable=True),  # "HH:MM"
    Column("quiet_hours_end", String(5), nullable=True),
    Column("last_proactive_notification_at", DateTime, nullable=True),
    Column("last_app_open", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=True),
)

notification_subscriptions = Table(
    "notification_subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("subscription_date", Date, nullable=True),
    Column("date_range_start", Date, nullable=True),
    Column("date_range_end", Date, nullable=True),
    Column("subscription_status", String(16), nullable=False, default="active"),
    Column("notification_method", String(8), nullable=False, default="email"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("completed_at", DateTime, nullable=True),
    CheckConstraint(
        "(subscription_date IS NOT NULL AND date_range_start IS NULL AND date_range_end IS NULL) OR "
        "(subscription_date IS NULL AND date_range_start IS NOT NULL AND date_range_end IS NOT NULL)",
        name="ck_subscription_single_or_range",
    ),
)

push_subscriptions = Table(
    "push_subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True),
    Column("endpoint", Text, nullable=False, unique=True),
    Column("p256dh", String(255), nullable=False),
    Column("auth", String(255), nullable=False),
    Column("device_type", String(16), nullable=False, default="desktop"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("consecutive_failures", Integer, nullable=False, default=0),
    Column("last_delivery_status", String(16), nullable=False, default="pending"),
    Column("last_failure_reason", Text, nullable=True),
    Column("last_used", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

notified_appointments = Table(
    "notified_appointments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subscription_id", Integer, ForeignKey("notification_subscriptions.id", ondelete="CASCADE"), nullable=False),
    Column("appointment_date", Date, nullable=False),
    Column("notified_times", JSONType, nullable=False),
    Column("notified_times_key", String(512), nullable=False),  # canonical "09:00,10:00"
    Column("notification_sent_at", DateTime, nullable=False),
    UniqueConstraint("subscription_id", "appointment_date", "notified_times_key", name="uq_notified_appointment"),
)

notification_queue = Table(
    "notification_queue",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subscription_id", Integer, ForeignKey("notification_subscriptions.id", ondelete="CASCADE"), nullable=False),
    Column("appointment_date", Date, nullable=True),
    Column("new_times", JSONType, nullable=True),
    Column("booking_url", Text, nullable=True),
    Column("appointments", JSONType, nullable=True),
    Column("fingerprint", String(1024), nullable=False),
    Column("status", String(16), nullable=False, default="pending"),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("processed_at", DateTime, nullable=True),
    Index("ix_notification_queue_status_created", "status", "created_at"),
)

in_app_notifications = Table(
    "in_app_notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("title", String(256), nullable=False),
    Column("body", Text, nullable=True),
    Column("notification_type", String(32), nullable=False),
    Column("data", JSONType, nullable=True),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Index("ix_in_app_notifications_user_created", "user_id", "created_at"),
)

proactive_notification_log = Table(
    "proactive_notification_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("notification_type", String(32), nullable=False),
    Column("related_dates", JSONType, nullable=True),
    Column("dedup_key", String(255), nullable=False),
    Column("data", JSONType, nullable=True),
    Column("push_sent", Boolean, nullable=False, default=False),
    Column("email_sent", Boolean, nullable=False, default=False),
    Column("in_app_created", Boolean, nullable=False, default=False),
    Column("sent_at", DateTime, nullable=False),
    Index("ix_proactive_log_user_type_sent", "user_id", "notification_type", "sent_at"),
)

appointment_checks = Table(
    "appointment_checks",
    metadata,
    Column("check_date", Date, primary_key=True),
    Column("available", Boolean, nullable=False, default=False),
    Column("times", JSONType, nullable=False),
    Column("day_name", String(16), nullable=True),
    Column("booking_url", Text, nullable=True),
    Column("checked_at", DateTime, nullable=False),
)

ignored_appointment_times = Table(
    "ignored_appointment_times",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("appointment_date", Date, nullable=False),
    Column("ignored_times", JSONType, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

notification_logs = Table(
    "notification_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("push_subscription_id", Integer, nullable=True),  # NULL for email
    Column("notification_type", String(16), nullable=False),  # 'push' or 'email'
    Column("title", String(256), nullable=False),
    Column("status", String(16), nullable=False, index=True),  # 'sent' or 'failed'
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
)
