"""create_queue_core_tables

Revision ID: 7c1e4a9d2b30
Revises:
Create Date: 2026-10-19 09:12:44.318205

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7c1e4a9d2b30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


employee_role = postgresql.ENUM('employee', 'admin', name='employee_role', create_type=False)
queue_entry_status = postgresql.ENUM(
    'waiting', 'serving', 'completed', 'cancelled', 'no_show',
    name='queue_entry_status', create_type=False,
)
customer_type = postgresql.ENUM('paying', 'priority_pass', name='customer_type', create_type=False)
outbox_message_type = postgresql.ENUM(
    'confirm', 'next', 'serving', 'cancel_ack', 'staff',
    name='outbox_message_type', create_type=False,
)
outbox_status = postgresql.ENUM('queued', 'sent', 'failed', 'dead', name='outbox_status', create_type=False)

ENUMS = (employee_role, queue_entry_status, customer_type, outbox_message_type, outbox_status)


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'customers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('phone_e164', sa.String(length=20), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_customers_phone_e164', 'customers', ['phone_e164'], unique=True)

    op.create_table(
        'locations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('airport_code', sa.String(length=10), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('is_open', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('airport_code', 'code', name='uniq_location_code_per_airport'),
    )
    op.create_index('ix_locations_airport_code', 'locations', ['airport_code'])

    op.create_table(
        'queues',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('location_id', sa.Uuid(), sa.ForeignKey('locations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False, server_default='default'),
        sa.Column('is_open', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('location_id', 'code', name='uniq_queue_code_per_location'),
    )
    op.create_index('ix_queues_location_id', 'queues', ['location_id'])

    op.create_table(
        'consent_versions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('key', 'version', name='uniq_consent_key_version'),
    )
    op.create_index('ix_consent_versions_key', 'consent_versions', ['key'])

    op.create_table(
        'employee_profiles',
        sa.Column('user_id', sa.Uuid(), primary_key=True),
        sa.Column('role', employee_role, nullable=False, server_default='employee'),
        sa.Column('is_open', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'queue_entries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('public_token', sa.String(length=64), nullable=False, unique=True),
        sa.Column('queue_id', sa.Uuid(), sa.ForeignKey('queues.id', ondelete='CASCADE'), nullable=False),
        sa.Column('customer_id', sa.Uuid(), sa.ForeignKey('customers.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'consent_version_id',
            sa.Uuid(),
            sa.ForeignKey('consent_versions.id', ondelete='RESTRICT'),
            nullable=True,
        ),
        sa.Column('status', queue_entry_status, nullable=False, server_default='waiting'),
        sa.Column('customer_type', customer_type, nullable=False),
        sa.Column('sort_key', sa.Integer(), nullable=False, comment='FIFO position within (queue, customer_type)'),
        sa.Column('service_label', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('served_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('no_show_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_queue_entries_queue_id', 'queue_entries', ['queue_id'])
    op.create_index('ix_queue_entries_customer_id', 'queue_entries', ['customer_id'])
    op.create_index('ix_queue_entries_status', 'queue_entries', ['status'])
    op.create_index(
        'ix_queue_entries_line_order',
        'queue_entries',
        ['queue_id', 'status', 'customer_type', 'sort_key'],
    )
    # One active entry per customer per queue
    op.create_index(
        'uniq_active_entry_per_customer_per_queue',
        'queue_entries',
        ['customer_id', 'queue_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('waiting', 'serving')"),
    )

    op.create_table(
        'queue_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'queue_entry_id',
            sa.Uuid(),
            sa.ForeignKey('queue_entries.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('actor_user_id', sa.Uuid(), nullable=True),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_queue_events_queue_entry_id', 'queue_events', ['queue_entry_id'])
    op.create_index('ix_queue_events_event_type', 'queue_events', ['event_type'])

    op.create_table(
        'sms_outbox',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'queue_entry_id',
            sa.Uuid(),
            sa.ForeignKey('queue_entries.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('message_type', outbox_message_type, nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False, unique=True),
        sa.Column('to_phone', sa.String(length=20), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('status', outbox_status, nullable=False, server_default='queued'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lock_token', sa.Uuid(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=64), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_sms_outbox_queue_entry_id', 'sms_outbox', ['queue_entry_id'])
    op.create_index('ix_sms_outbox_status', 'sms_outbox', ['status'])
    op.create_index('ix_sms_outbox_due', 'sms_outbox', ['status', 'next_attempt_at'])

    op.create_table(
        'rate_limit_buckets',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('bucket_key', sa.String(length=255), nullable=False),
        sa.Column('window_seconds', sa.Integer(), nullable=False),
        sa.Column('window_start', sa.BigInteger(), nullable=False, comment='Epoch seconds at which the window opened'),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reset_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('bucket_key', 'window_seconds', 'window_start', name='uniq_rate_limit_bucket_window'),
    )
    op.create_index('ix_rate_limit_buckets_reset_at', 'rate_limit_buckets', ['reset_at'])

    op.create_table(
        'sms_opt_outs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('phone_e164', sa.String(length=20), nullable=False, unique=True),
        sa.Column('source', sa.String(length=50), nullable=True),
        sa.Column('opted_out_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'sms_inbound',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('from_phone', sa.String(length=32), nullable=False),
        sa.Column('to_phone', sa.String(length=32), nullable=True),
        sa.Column('body', sa.Text(), nullable=False, server_default=''),
        sa.Column('provider_message_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('raw', postgresql.JSONB(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_sms_inbound_from_phone', 'sms_inbound', ['from_phone'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('sms_inbound')
    op.drop_table('sms_opt_outs')
    op.drop_table('rate_limit_buckets')
    op.drop_table('sms_outbox')
    op.drop_table('queue_events')
    op.drop_table('queue_entries')
    op.drop_table('employee_profiles')
    op.drop_table('consent_versions')
    op.drop_table('queues')
    op.drop_table('locations')
    op.drop_table('customers')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
