"""
Create booking core tables: providers, clients, services, add-ons, bookings,
add-on lines, payment records and the outbox.

Revision ID: 20261001_create_booking_core_tables
Revises:
Create Date: 2026-10-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from typing import Union

# revision identifiers, used by Alembic.
revision: str = '20261001_create_booking_core_tables'
down_revision: Union[str, None] = None
branch_labels = None
depends_on = None


def _audit_columns() -> list:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    op.create_table(
        'providers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('is_zero_fee', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('gateway_account_id', sa.String(), nullable=True),
        sa.Column('gateway_account_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('charges_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_audit_columns(),
    )
    op.create_index('ix_providers_id', 'providers', ['id'])
    op.create_index('ix_providers_gateway_account_id', 'providers', ['gateway_account_id'], unique=True)

    op.create_table(
        'clients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=True),
        *_audit_columns(),
    )
    op.create_index('ix_clients_id', 'clients', ['id'])
    op.create_index('ix_clients_email', 'clients', ['email'], unique=True)

    op.create_table(
        'services',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider_id', sa.Integer(), sa.ForeignKey('providers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        *_audit_columns(),
    )
    op.create_index('ix_services_id', 'services', ['id'])
    op.create_index('ix_services_provider_id', 'services', ['provider_id'])

    op.create_table(
        'service_addons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider_id', sa.Integer(), sa.ForeignKey('providers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )
    op.create_index('ix_service_addons_id', 'service_addons', ['id'])
    op.create_index('ix_service_addons_provider_id', 'service_addons', ['provider_id'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('kind', sa.String(length=8), nullable=False),
        sa.Column('provider_id', sa.Integer(), sa.ForeignKey('providers.id'), nullable=False),
        sa.Column('service_id', sa.Integer(), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('client_id', sa.Integer(), sa.ForeignKey('clients.id'), nullable=True),
        sa.Column('guest_name', sa.String(), nullable=True),
        sa.Column('guest_email', sa.String(), nullable=True),
        sa.Column('guest_phone', sa.String(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('service_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('addon_total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('platform_fee', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('provider_payout', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=18), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=18), nullable=False, server_default='pending'),
        sa.Column('last_payment_event_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.String(), nullable=True),
        *_audit_columns(),
        sa.CheckConstraint('end_time > start_time', name='ck_bookings_end_after_start'),
    )
    op.create_index('ix_bookings_id', 'bookings', ['id'])
    op.create_index('ix_bookings_transaction_id', 'bookings', ['transaction_id'], unique=True)
    op.create_index('ix_bookings_provider_id', 'bookings', ['provider_id'])
    op.create_index('ix_bookings_client_id', 'bookings', ['client_id'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])
    # Overlap lookups scan a provider's window
    op.create_index('ix_bookings_provider_window', 'bookings', ['provider_id', 'start_time', 'end_time'])

    op.create_table(
        'booking_addons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('addon_id', sa.Integer(), sa.ForeignKey('service_addons.id'), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        *_audit_columns(),
        sa.UniqueConstraint('booking_id', 'addon_id', name='uq_booking_addons_booking_addon'),
    )
    op.create_index('ix_booking_addons_id', 'booking_addons', ['id'])
    op.create_index('ix_booking_addons_booking_id', 'booking_addons', ['booking_id'])

    op.create_table(
        'payment_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(), nullable=False),
        sa.Column('parent_transaction_id', sa.String(), nullable=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('record_type', sa.String(length=6), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=18), nullable=False),
        sa.Column('platform_fee', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('provider_payout', sa.BigInteger(), nullable=False, server_default='0'),
        *_audit_columns(),
        sa.UniqueConstraint('transaction_id', name='uq_payment_records_transaction_id'),
    )
    op.create_index('ix_payment_records_id', 'payment_records', ['id'])
    op.create_index('ix_payment_records_booking_id', 'payment_records', ['booking_id'])
    op.create_index('ix_payment_records_parent_transaction_id', 'payment_records', ['parent_transaction_id'])

    op.create_table(
        'outbox_events',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True),
        sa.Column('topic', sa.String(length=255), nullable=False),
        sa.Column('payload_json', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('due_at', sa.DateTime(), nullable=True),
    )
    # Fast scan for undelivered
    op.create_index('ix_outbox_undelivered_created', 'outbox_events', ['delivered_at', 'created_at'])
    op.create_index('ix_outbox_events_topic', 'outbox_events', ['topic'])


def downgrade() -> None:
    op.drop_index('ix_outbox_events_topic', table_name='outbox_events')
    op.drop_index('ix_outbox_undelivered_created', table_name='outbox_events')
    op.drop_table('outbox_events')
    op.drop_table('payment_records')
    op.drop_table('booking_addons')
    op.drop_table('bookings')
    op.drop_table('service_addons')
    op.drop_table('services')
    op.drop_table('clients')
    op.drop_table('providers')
