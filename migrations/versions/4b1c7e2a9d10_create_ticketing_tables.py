"""create_ticketing_tables

Revision ID: 4b1c7e2a9d10
Revises:
Create Date: 2026-10-17 10:12:41.503218

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4b1c7e2a9d10'
down_revision = None
branch_labels = None
depends_on = None


access_level = sa.Enum('ADMIN', 'MANAGER', 'CASHIER', 'SCANNER', name='accesslevel')
ticketing_status = sa.Enum('ACTIVE', 'SUSPENDED', 'CLOSED', name='ticketingstatus')
seat_status = sa.Enum('AVAILABLE', 'RESERVED', 'SOLD', 'BLOCKED', name='seatstatus')
ticket_status = sa.Enum('VALID', 'USED', 'CANCELLED', name='ticketstatus')
ticket_type_code = sa.Enum('INT', 'RID', 'OMA', name='tickettypecode')
transaction_status = sa.Enum('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED', name='transactionstatus')
payment_method = sa.Enum('CARD', 'CASH', 'FREE', name='paymentmethod')


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('password_hash', sa.String(length=256), nullable=False),
        sa.Column('first_name', sa.String(length=50), nullable=False),
        sa.Column('last_name', sa.String(length=50), nullable=False),
        sa.Column('access_level', access_level, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('failed_login_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until', sa.DateTime(), nullable=True),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'ticketed_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_ref', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('starts_at', sa.DateTime(), nullable=True),
        sa.Column('total_capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tickets_sold', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('revenue', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('ticketing_status', ticketing_status, nullable=False),
        sa.Column('sale_start_date', sa.DateTime(), nullable=True),
        sa.Column('sale_end_date', sa.DateTime(), nullable=True),
        sa.Column('max_tickets_per_user', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('requires_nominative', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('allows_change_name', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('allows_resale', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ticketed_events_event_ref', 'ticketed_events', ['event_ref'])

    op.create_table(
        'event_counters',
        sa.Column('ticketed_event_id', sa.Integer(), nullable=False),
        sa.Column('last_number', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['ticketed_event_id'], ['ticketed_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('ticketed_event_id'),
    )

    op.create_table(
        'sectors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ticketed_event_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('sector_code', sa.String(length=10), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('available_seats', sa.Integer(), nullable=False),
        sa.Column('is_numbered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sales_suspended', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_intero', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('price_ridotto', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('prevendita', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['ticketed_event_id'], ['ticketed_events.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('ticketed_event_id', 'sector_code', name='uq_sector_event_code'),
        sa.CheckConstraint('available_seats >= 0', name='ck_sector_available_non_negative'),
        sa.CheckConstraint('available_seats <= capacity', name='ck_sector_available_le_capacity'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sectors_ticketed_event_id', 'sectors', ['ticketed_event_id'])

    op.create_table(
        'seats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sector_id', sa.Integer(), nullable=False),
        sa.Column('row', sa.String(length=10), nullable=False),
        sa.Column('seat_number', sa.String(length=10), nullable=False),
        sa.Column('status', seat_status, nullable=False),
        sa.Column('is_accessible', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(['sector_id'], ['sectors.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('sector_id', 'row', 'seat_number', name='uq_seat_position'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_seats_sector_id', 'seats', ['sector_id'])
    op.create_index('ix_seats_status', 'seats', ['status'])

    op.create_table(
        'cancellation_reasons',
        sa.Column('code', sa.String(length=10), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('code'),
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ticketed_event_id', sa.Integer(), nullable=False),
        sa.Column('transaction_code', sa.String(length=40), nullable=False),
        sa.Column('tickets_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('refunded_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('payment_method', payment_method, nullable=False),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('customer_email', sa.String(length=120), nullable=True),
        sa.Column('status', transaction_status, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['ticketed_event_id'], ['ticketed_events.id']),
        sa.UniqueConstraint('transaction_code'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_transactions_ticketed_event_id', 'transactions', ['ticketed_event_id'])

    op.create_table(
        'tickets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ticketed_event_id', sa.Integer(), nullable=False),
        sa.Column('sector_id', sa.Integer(), nullable=False),
        sa.Column('seat_id', sa.Integer(), nullable=True),
        sa.Column('transaction_id', sa.Integer(), nullable=True),
        sa.Column('ticket_type_code', ticket_type_code, nullable=False),
        sa.Column('sector_code', sa.String(length=10), nullable=False),
        sa.Column('progressive_number', sa.Integer(), nullable=False),
        sa.Column('emission_date_str', sa.String(length=8), nullable=False),
        sa.Column('emission_time_str', sa.String(length=4), nullable=False),
        sa.Column('fiscal_seal_code', sa.String(length=64), nullable=False),
        sa.Column('gross_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('participant_first_name', sa.String(length=80), nullable=True),
        sa.Column('participant_last_name', sa.String(length=80), nullable=True),
        sa.Column('status', ticket_status, nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('reason_code', sa.String(length=10), nullable=True),
        sa.Column('refund_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('refund_amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('refund_reference', sa.String(length=100), nullable=True),
        sa.Column('refund_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_refund_error', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['ticketed_event_id'], ['ticketed_events.id']),
        sa.ForeignKeyConstraint(['sector_id'], ['sectors.id']),
        sa.ForeignKeyConstraint(['seat_id'], ['seats.id']),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id']),
        sa.ForeignKeyConstraint(['reason_code'], ['cancellation_reasons.code']),
        sa.UniqueConstraint('ticketed_event_id', 'progressive_number', name='uq_ticket_event_progressive'),
        sa.UniqueConstraint('fiscal_seal_code'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tickets_ticketed_event_id', 'tickets', ['ticketed_event_id'])
    op.create_index('ix_tickets_sector_id', 'tickets', ['sector_id'])
    op.create_index('ix_tickets_seat_id', 'tickets', ['seat_id'])
    op.create_index('ix_tickets_transaction_id', 'tickets', ['transaction_id'])
    op.create_index('ix_tickets_status', 'tickets', ['status'])
    # At most one live ticket per seat
    op.create_index(
        'uq_tickets_live_seat', 'tickets', ['seat_id'], unique=True,
        postgresql_where=sa.text("seat_id IS NOT NULL AND status IN ('VALID', 'USED')"),
        sqlite_where=sa.text("seat_id IS NOT NULL AND status IN ('VALID', 'USED')"),
    )

    op.create_table(
        'fiscal_devices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('device_code', sa.String(length=50), nullable=False),
        sa.Column('ready', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('card_serial', sa.String(length=50), nullable=True),
        sa.Column('last_message', sa.String(length=255), nullable=True),
        sa.Column('last_heartbeat_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('device_code'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=True),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('entity_reference', sa.String(length=50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('severity', sa.String(length=20), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('fiscal_devices')
    op.drop_index('uq_tickets_live_seat', table_name='tickets')
    op.drop_table('tickets')
    op.drop_table('transactions')
    op.drop_table('cancellation_reasons')
    op.drop_table('seats')
    op.drop_table('sectors')
    op.drop_table('event_counters')
    op.drop_table('ticketed_events')
    op.drop_table('users')
    for enum_type in (payment_method, transaction_status, ticket_type_code, ticket_status,
                      seat_status, ticketing_status, access_level):
        enum_type.drop(op.get_bind(), checkfirst=True)
