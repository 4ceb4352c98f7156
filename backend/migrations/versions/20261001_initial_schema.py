"""Initial schema: staff auth, tables, IoT devices/commands, billing sessions, packages, orders

Revision ID: 20261001_initial
Revises:
Create Date: 2026-10-01

This migration adds:
1. users, session_tokens, reauth_grants (staff auth + owner re-auth grants)
2. iot_devices, iot_commands (device registry + command queue)
3. billiard_tables (relay channel / GPIO pin unique per device)
4. billing_packages, billing_package_items, menu_items
5. billing_sessions (one ACTIVE per table, partial unique index) + billing_session_events
6. orders, order_items, package_usages
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. STAFF AUTH
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('pin_hash', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'], unique=False)

    op.create_table('session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=128), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'], unique=False)
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)

    op.create_table('reauth_grants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('purpose', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reauth_grants_user_id', 'reauth_grants', ['user_id'], unique=False)
    op.create_index('ix_reauth_grants_token_hash', 'reauth_grants', ['token_hash'], unique=True)

    # ==========================================================================
    # 2. IOT DEVICES
    # ==========================================================================
    op.create_table('iot_devices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('device_token_hash', sa.String(length=64), nullable=False),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signal_strength', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_iot_devices_is_active', 'iot_devices', ['is_active'], unique=False)

    op.create_table('iot_commands',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.Column('command', sa.String(length=16), nullable=False),
        sa.Column('nonce', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acked_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['device_id'], ['iot_devices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('nonce'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_iot_commands_device_id', 'iot_commands', ['device_id'], unique=False)
    op.create_index('ix_iot_commands_status', 'iot_commands', ['status'], unique=False)
    op.create_index('ix_iot_commands_device_status_created', 'iot_commands',
                    ['device_id', 'status', 'created_at'], unique=False)

    # ==========================================================================
    # 3. TABLES
    # ==========================================================================
    op.create_table('billiard_tables',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('hourly_rate', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('iot_device_id', sa.Integer(), nullable=True),
        sa.Column('relay_channel', sa.Integer(), nullable=True),
        sa.Column('gpio_pin', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['iot_device_id'], ['iot_devices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sa.UniqueConstraint('iot_device_id', 'relay_channel', name='uq_tables_device_channel'),
        sa.UniqueConstraint('iot_device_id', 'gpio_pin', name='uq_tables_device_gpio'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_billiard_tables_status', 'billiard_tables', ['status'], unique=False)
    op.create_index('ix_billiard_tables_is_active', 'billiard_tables', ['is_active'], unique=False)
    op.create_index('ix_billiard_tables_iot_device_id', 'billiard_tables', ['iot_device_id'], unique=False)

    # ==========================================================================
    # 4. PACKAGES + MENU
    # ==========================================================================
    op.create_table('menu_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('track_stock', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table('billing_packages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sqlite_autoincrement=True
    )

    op.create_table('billing_package_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=False),
        sa.Column('item_type', sa.String(length=16), nullable=False),
        sa.Column('menu_item_id', sa.Integer(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(['package_id'], ['billing_packages.id']),
        sa.ForeignKeyConstraint(['menu_item_id'], ['menu_items.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_billing_package_items_package_id', 'billing_package_items', ['package_id'], unique=False)

    # ==========================================================================
    # 5. BILLING SESSIONS
    # ==========================================================================
    op.create_table('billing_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('table_id', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actual_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('rate_type', sa.String(length=16), nullable=False),
        sa.Column('rate_per_hour', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('blink_command_sent', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('auto_completed', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_by_id', sa.Integer(), nullable=False),
        sa.Column('approved_by_id', sa.Integer(), nullable=True),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['table_id'], ['billiard_tables.id']),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id']),
        sa.ForeignKeyConstraint(['approved_by_id'], ['users.id']),
        sa.ForeignKeyConstraint(['package_id'], ['billing_packages.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_billing_sessions_table_id', 'billing_sessions', ['table_id'], unique=False)
    op.create_index('ix_billing_sessions_status', 'billing_sessions', ['status'], unique=False)
    op.create_index('ix_billing_sessions_created_by_id', 'billing_sessions', ['created_by_id'], unique=False)
    op.create_index('ix_billing_sessions_status_end', 'billing_sessions', ['status', 'end_time'], unique=False)
    op.create_index(
        'uq_billing_sessions_active_table', 'billing_sessions', ['table_id'], unique=True,
        sqlite_where=sa.text("status = 'ACTIVE'"),
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table('billing_session_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('billing_session_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=16), nullable=False),
        sa.Column('amount_delta', sa.Numeric(12, 2), nullable=False),
        sa.Column('minutes_delta', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('from_table_id', sa.Integer(), nullable=True),
        sa.Column('to_table_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['billing_session_id'], ['billing_sessions.id']),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['package_id'], ['billing_packages.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_billing_session_events_billing_session_id', 'billing_session_events',
                    ['billing_session_id'], unique=False)
    op.create_index('ix_billing_session_events_event_type', 'billing_session_events', ['event_type'], unique=False)
    op.create_index('ix_billing_events_session_occurred', 'billing_session_events',
                    ['billing_session_id', 'occurred_at'], unique=False)

    # ==========================================================================
    # 6. ORDERS + PACKAGE USAGE
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('billing_session_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('created_by_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['billing_session_id'], ['billing_sessions.id']),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_billing_session_id', 'orders', ['billing_session_id'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)

    op.create_table('order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('menu_item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['menu_item_id'], ['menu_items.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'], unique=False)

    op.create_table('package_usages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=False),
        sa.Column('billing_session_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('usage_type', sa.String(length=16), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('created_by_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['package_id'], ['billing_packages.id']),
        sa.ForeignKeyConstraint(['billing_session_id'], ['billing_sessions.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_package_usages_package_id', 'package_usages', ['package_id'], unique=False)
    op.create_index('ix_package_usages_billing_session_id', 'package_usages', ['billing_session_id'], unique=False)


def downgrade():
    op.drop_table('package_usages')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('billing_session_events')
    op.drop_index('uq_billing_sessions_active_table', table_name='billing_sessions')
    op.drop_table('billing_sessions')
    op.drop_table('billing_package_items')
    op.drop_table('billing_packages')
    op.drop_table('menu_items')
    op.drop_table('billiard_tables')
    op.drop_table('iot_commands')
    op.drop_table('iot_devices')
    op.drop_table('reauth_grants')
    op.drop_table('session_tokens')
    op.drop_table('users')
