"""Initial schema (tenants, services, customers, appointments, blackout dates, call records)

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-01-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DEFAULT_WORKING_HOURS = (
    '{"monday": {"start": "09:00", "end": "17:00", "enabled": true}, '
    '"tuesday": {"start": "09:00", "end": "17:00", "enabled": true}, '
    '"wednesday": {"start": "09:00", "end": "17:00", "enabled": true}, '
    '"thursday": {"start": "09:00", "end": "17:00", "enabled": true}, '
    '"friday": {"start": "09:00", "end": "17:00", "enabled": true}, '
    '"saturday": {"start": "10:00", "end": "14:00", "enabled": false}, '
    '"sunday": {"start": "10:00", "end": "14:00", "enabled": false}}'
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # Create tenants table
    op.create_table(
        'tenants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=True),
        sa.Column('timezone', sa.String(length=50), nullable=False, server_default='America/New_York'),
        sa.Column('business_type', sa.String(length=100), nullable=True),
        sa.Column('system_prompt', sa.Text(), nullable=True),
        sa.Column('greeting_message', sa.Text(), nullable=True),
        sa.Column('working_hours', sa.JSON(), nullable=False, server_default=sa.text(f"'{DEFAULT_WORKING_HOURS}'")),
        sa.Column('slot_duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('buffer_minutes', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('max_advance_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('fallback_phone', sa.String(length=20), nullable=True),
        sa.Column('fallback_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('provider', sa.String(length=20), nullable=False, server_default='twilio'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone_number'),
    )

    # Create services table
    op.create_table(
        'services',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_services_tenant_id'), 'services', ['tenant_id'], unique=False)

    # Create customers table
    op.create_table(
        'customers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'phone', name='uq_customers_tenant_phone'),
    )
    op.create_index(op.f('ix_customers_tenant_id'), 'customers', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_customers_phone'), 'customers', ['phone'], unique=False)

    # Create blackout_dates table
    op.create_table(
        'blackout_dates',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'date', name='uq_blackout_dates_tenant_date'),
    )
    op.create_index(op.f('ix_blackout_dates_tenant_id'), 'blackout_dates', ['tenant_id'], unique=False)

    # Create call_records table
    op.create_table(
        'call_records',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('provider_call_id', sa.String(length=255), nullable=False),
        sa.Column('stream_id', sa.String(length=255), nullable=True),
        sa.Column('from_number', sa.String(length=50), nullable=True),
        sa.Column('to_number', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='in_progress'),
        sa.Column('outcome', sa.String(length=20), nullable=True),
        sa.Column('end_reason', sa.String(length=100), nullable=True),
        sa.Column('transcript', sa.Text(), nullable=True),
        sa.Column('dropped_frames', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_call_records_tenant_id'), 'call_records', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_call_records_provider_call_id'), 'call_records', ['provider_call_id'], unique=False)
    op.create_index(op.f('ix_call_records_outcome'), 'call_records', ['outcome'], unique=False)

    # Create conversation_messages table
    op.create_table(
        'conversation_messages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('call_record_id', sa.Uuid(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('tool_name', sa.String(length=100), nullable=True),
        sa.Column('tool_args', sa.JSON(), nullable=True),
        sa.Column('tool_result', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['call_record_id'], ['call_records.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        op.f('ix_conversation_messages_call_record_id'), 'conversation_messages', ['call_record_id'], unique=False
    )

    # Create appointments table
    op.create_table(
        'appointments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('customer_id', sa.Uuid(), nullable=True),
        sa.Column('service_id', sa.Uuid(), nullable=True),
        sa.Column('call_record_id', sa.Uuid(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=20), nullable=False),
        sa.Column('service_name', sa.String(length=255), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='confirmed'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['call_record_id'], ['call_records.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_appointments_tenant_id'), 'appointments', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_appointments_customer_id'), 'appointments', ['customer_id'], unique=False)
    op.create_index(op.f('ix_appointments_scheduled_at'), 'appointments', ['scheduled_at'], unique=False)
    op.create_index(op.f('ix_appointments_status'), 'appointments', ['status'], unique=False)
    # Slot lookups always filter by tenant and time range
    op.create_index('ix_appointments_tenant_scheduled', 'appointments', ['tenant_id', 'scheduled_at'], unique=False)
    op.create_index(
        'uq_appointments_tenant_active_slot',
        'appointments',
        ['tenant_id', 'scheduled_at'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'confirmed')"),
        sqlite_where=sa.text("status IN ('pending', 'confirmed')"),
    )


def downgrade() -> None:
    op.drop_index('uq_appointments_tenant_active_slot', table_name='appointments')
    op.drop_index('ix_appointments_tenant_scheduled', table_name='appointments')
    op.drop_index(op.f('ix_appointments_status'), table_name='appointments')
    op.drop_index(op.f('ix_appointments_scheduled_at'), table_name='appointments')
    op.drop_index(op.f('ix_appointments_customer_id'), table_name='appointments')
    op.drop_index(op.f('ix_appointments_tenant_id'), table_name='appointments')
    op.drop_table('appointments')

    op.drop_index(op.f('ix_conversation_messages_call_record_id'), table_name='conversation_messages')
    op.drop_table('conversation_messages')

    op.drop_index(op.f('ix_call_records_outcome'), table_name='call_records')
    op.drop_index(op.f('ix_call_records_provider_call_id'), table_name='call_records')
    op.drop_index(op.f('ix_call_records_tenant_id'), table_name='call_records')
    op.drop_table('call_records')

    op.drop_index(op.f('ix_blackout_dates_tenant_id'), table_name='blackout_dates')
    op.drop_table('blackout_dates')

    op.drop_index(op.f('ix_customers_phone'), table_name='customers')
    op.drop_index(op.f('ix_customers_tenant_id'), table_name='customers')
    op.drop_table('customers')

    op.drop_index(op.f('ix_services_tenant_id'), table_name='services')
    op.drop_table('services')

    op.drop_table('tenants')
