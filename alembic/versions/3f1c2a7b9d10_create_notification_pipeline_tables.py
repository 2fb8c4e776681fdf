"""create_notification_pipeline_tables

Revision ID: 3f1c2a7b9d10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c2a7b9d10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    """Create users, subscriptions, push endpoints, ledger, queue and log tables."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'user_preferences',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('default_notification_method', sa.String(8), nullable=False, server_default='email'),
        sa.Column('hot_alerts_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('proactive_notifications_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('weekly_digest_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expiry_reminders_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('inactivity_alerts_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('max_notifications_per_day', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notification_cooldown_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('proactive_cooldown_hours', sa.Integer(), nullable=False, server_default='4'),
        sa.Column('quiet_hours_start', sa.String(5), nullable=True),
        sa.Column('quiet_hours_end', sa.String(5), nullable=True),
        sa.Column('last_proactive_notification_at', sa.DateTime(), nullable=True),
        sa.Column('last_app_open', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'notification_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subscription_date', sa.Date(), nullable=True),
        sa.Column('date_range_start', sa.Date(), nullable=True),
        sa.Column('date_range_end', sa.Date(), nullable=True),
        sa.Column('subscription_status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('notification_method', sa.String(8), nullable=False, server_default='email'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "(subscription_date IS NOT NULL AND date_range_start IS NULL AND date_range_end IS NULL) OR "
            "(subscription_date IS NULL AND date_range_start IS NOT NULL AND date_range_end IS NOT NULL)",
            name='ck_subscription_single_or_range',
        ),
    )
    op.create_index('ix_notification_subscriptions_user_id', 'notification_subscriptions', ['user_id'])

    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=True),
        sa.Column('endpoint', sa.Text(), nullable=False, unique=True),
        sa.Column('p256dh', sa.String(255), nullable=False),
        sa.Column('auth', sa.String(255), nullable=False),
        sa.Column('device_type', sa.String(16), nullable=False, server_default='desktop'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_delivery_status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('last_failure_reason', sa.Text(), nullable=True),
        sa.Column('last_used', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])

    op.create_table(
        'notified_appointments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('notification_subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('appointment_date', sa.Date(), nullable=False),
        sa.Column('notified_times', JSONType, nullable=False),
        sa.Column('notified_times_key', sa.String(512), nullable=False),
        sa.Column('notification_sent_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('subscription_id', 'appointment_date', 'notified_times_key',
                            name='uq_notified_appointment'),
    )

    op.create_table(
        'notification_queue',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('notification_subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('appointment_date', sa.Date(), nullable=True),
        sa.Column('new_times', JSONType, nullable=True),
        sa.Column('booking_url', sa.Text(), nullable=True),
        sa.Column('appointments', JSONType, nullable=True),
        sa.Column('fingerprint', sa.String(1024), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_notification_queue_status_created', 'notification_queue', ['status', 'created_at'])

    op.create_table(
        'in_app_notifications',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(256), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('notification_type', sa.String(32), nullable=False),
        sa.Column('data', JSONType, nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_in_app_notifications_user_created', 'in_app_notifications', ['user_id', 'created_at'])

    op.create_table(
        'proactive_notification_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('notification_type', sa.String(32), nullable=False),
        sa.Column('related_dates', JSONType, nullable=True),
        sa.Column('dedup_key', sa.String(255), nullable=False),
        sa.Column('data', JSONType, nullable=True),
        sa.Column('push_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('email_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('in_app_created', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_proactive_log_user_type_sent', 'proactive_notification_log',
                    ['user_id', 'notification_type', 'sent_at'])

    op.create_table(
        'appointment_checks',
        sa.Column('check_date', sa.Date(), primary_key=True),
        sa.Column('available', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('times', JSONType, nullable=False),
        sa.Column('day_name', sa.String(16), nullable=True),
        sa.Column('booking_url', sa.Text(), nullable=True),
        sa.Column('checked_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'ignored_appointment_times',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('appointment_date', sa.Date(), nullable=False),
        sa.Column('ignored_times', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'notification_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('push_subscription_id', sa.Integer(), nullable=True),
        sa.Column('notification_type', sa.String(16), nullable=False),
        sa.Column('title', sa.String(256), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notification_logs_user_id', 'notification_logs', ['user_id'])
    op.create_index('ix_notification_logs_status', 'notification_logs', ['status'])


def downgrade() -> None:
    """Drop every pipeline table."""
    op.drop_table('notification_logs')
    op.drop_table('ignored_appointment_times')
    op.drop_table('appointment_checks')
    op.drop_table('proactive_notification_log')
    op.drop_table('in_app_notifications')
    op.drop_table('notification_queue')
    op.drop_table('notified_appointments')
    op.drop_table('push_subscriptions')
    op.drop_table('notification_subscriptions')
    op.drop_table('user_preferences')
    op.drop_table('users')
