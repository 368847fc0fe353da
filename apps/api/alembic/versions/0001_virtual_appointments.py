"""Virtual appointments: users, service windows, redeem codes, appointments,
payments, rooms and jobs.

Revision ID: 0001_virtual_appointments
Revises:
Create Date: 2026-10-19

Creates:
- users (minimal identity/role rows)
- admin_service_windows
- service_prices
- redeem_codes, redemption_records
- appointments (partial unique slot index)
- payments (partial unique active-payment index), payment_events,
  payment_reconciliations
- rooms
- jobs
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_virtual_appointments'
down_revision = None
branch_labels = None
depends_on = None

SLOT_HOLDING_SQL = "status IN ('confirmed', 'pending_payment')"
ACTIVE_PAYMENT_SQL = "status IN ('created', 'initiated', 'processing')"


def _uuid_pk():
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        server_default=sa.text('gen_random_uuid()'),
        nullable=False,
    )


def _ts(name: str, nullable: bool = False, default_now: bool = False):
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text('now()') if default_now else None,
        nullable=nullable,
    )


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # ==========================================================================
    # users
    # ==========================================================================
    op.create_table(
        'users',
        _uuid_pk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('role', sa.String(20), server_default=sa.text("'user'"), nullable=False),
        sa.Column('push_token', sa.String(512), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('TRUE'), nullable=False),
        sa.Column('token_version', sa.Integer(), server_default=sa.text('1'), nullable=False),
        _ts('created_at', default_now=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )

    # ==========================================================================
    # admin_service_windows
    # ==========================================================================
    op.create_table(
        'admin_service_windows',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('start_of_day', sa.Time(), nullable=False),
        sa.Column('end_of_day', sa.Time(), nullable=False),
        sa.Column('timezone', sa.String(64), server_default=sa.text("'Asia/Kolkata'"), nullable=False),
        sa.Column('alert_emails', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('active', sa.Boolean(), server_default=sa.text('TRUE'), nullable=False),
        _ts('created_at', default_now=True),
        _ts('updated_at', default_now=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', name='uq_service_window_user'),
        sa.CheckConstraint('start_of_day < end_of_day', name='ck_service_window_order'),
    )

    # ==========================================================================
    # service_prices
    # ==========================================================================
    op.create_table(
        'service_prices',
        _uuid_pk(),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), server_default=sa.text('TRUE'), nullable=False),
        sa.Column('updated_by', postgresql.UUID(as_uuid=True), nullable=True),
        _ts('created_at', default_now=True),
        _ts('updated_at', default_now=True),
        sa.ForeignKeyConstraint(['updated_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('kind', name='uq_service_prices_kind'),
        sa.CheckConstraint('price_cents >= 0', name='ck_service_price_non_negative'),
    )

    # ==========================================================================
    # redeem_codes
    # ==========================================================================
    op.create_table(
        'redeem_codes',
        _uuid_pk(),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_kind', sa.String(10), server_default=sa.text("'percent'"), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('min_order_cents', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('max_discount_cents', sa.Integer(), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('per_user_limit', sa.Integer(), server_default=sa.text('1'), nullable=False),
        _ts('valid_from', nullable=True),
        _ts('valid_until', nullable=True),
        sa.Column('active', sa.Boolean(), server_default=sa.text('TRUE'), nullable=False),
        sa.Column('applicability', sa.String(20), server_default=sa.text("'all'"), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        _ts('created_at', default_now=True),
        _ts('updated_at', default_now=True),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_redeem_code'),
        sa.CheckConstraint('value >= 0', name='ck_redeem_value_non_negative'),
        sa.CheckConstraint(
            'valid_until IS NULL OR valid_from IS NULL OR valid_from < valid_until',
            name='ck_redeem_validity_range',
        ),
    )
    op.create_index('idx_redeem_codes_active', 'redeem_codes', ['active', 'valid_until'])

    # ==========================================================================
    # appointments
    # ==========================================================================
    op.create_table(
        'appointments',
        _uuid_pk(),
        sa.Column('patient_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('doctor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('kind', sa.String(20), server_default=sa.text("'virtual'"), nullable=False),
        _ts('scheduled_at'),
        sa.Column('duration_minutes', sa.Integer(), server_default=sa.text('30'), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'pending_payment'"), nullable=False),
        sa.Column('room_id', sa.String(64), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), server_default=sa.text("'INR'"), nullable=False),
        sa.Column('redeem_code_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        _ts('created_at', default_now=True),
        _ts('updated_at', default_now=True),
        _ts('confirmed_at', nullable=True),
        _ts('cancelled_at', nullable=True),
        _ts('completed_at', nullable=True),
        sa.ForeignKeyConstraint(['patient_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['redeem_code_id'], ['redeem_codes.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    # One slot-holding appointment per doctor per start time
    op.create_index(
        'uq_appointment_doctor_slot',
        'appointments',
        ['doctor_id', 'scheduled_at'],
        unique=True,
        postgresql_where=sa.text(SLOT_HOLDING_SQL),
    )
    op.create_index('idx_appointments_patient', 'appointments', ['patient_id', 'created_at'])
    op.create_index('idx_appointments_status_scheduled', 'appointments', ['status', 'scheduled_at'])

    # ==========================================================================
    # payments
    # ==========================================================================
    op.create_table(
        'payments',
        _uuid_pk(),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('merchant_txn_id', sa.String(64), nullable=False),
        sa.Column('gateway_order_id', sa.String(128), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('currency', sa.String(3), server_default=sa.text("'INR'"), nullable=False),
        sa.Column('method', sa.String(20), server_default=sa.text("'pay_page'"), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'created'"), nullable=False),
        sa.Column('redeem_code_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('redirect_url', sa.Text(), nullable=True),
        sa.Column('gateway_raw_response', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('receipt_url', sa.Text(), nullable=True),
        _ts('initiated_at', nullable=True),
        _ts('completed_at', nullable=True),
        _ts('checksum_verified_at', nullable=True),
        _ts('last_polled_at', nullable=True),
        _ts('created_at', default_now=True),
        _ts('updated_at', default_now=True),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['redeem_code_id'], ['redeem_codes.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_txn_id', name='uq_payments_merchant_txn_id'),
        sa.UniqueConstraint('gateway_order_id', name='uq_payments_gateway_order_id'),
    )
    op.create_index(
        'uq_payment_active_per_appointment',
        'payments',
        ['appointment_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PAYMENT_SQL),
    )
    op.create_index('idx_payments_user', 'payments', ['user_id', 'created_at'])
    op.create_index('idx_payments_status_updated', 'payments', ['status', 'updated_at'])

    op.create_table(
        'payment_events',
        _uuid_pk(),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=False),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        _ts('created_at', default_now=True),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', 'to_status', name='uq_payment_event_target'),
    )
    op.create_index('idx_payment_events_payment', 'payment_events', ['payment_id', 'created_at'])

    op.create_table(
        'payment_reconciliations',
        _uuid_pk(),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reason', sa.String(40), nullable=False),
        sa.Column('observed_status', sa.String(20), nullable=False),
        sa.Column('recorded_status', sa.String(20), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('resolved', sa.Boolean(), server_default=sa.text('FALSE'), nullable=False),
        _ts('created_at', default_now=True),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_payment_reconciliations_open', 'payment_reconciliations', ['resolved', 'created_at']
    )

    # ==========================================================================
    # redemption_records
    # ==========================================================================
    op.create_table(
        'redemption_records',
        _uuid_pk(),
        sa.Column('redeem_code_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('original_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('final_cents', sa.Integer(), nullable=False),
        _ts('created_at', default_now=True),
        sa.ForeignKeyConstraint(['redeem_code_id'], ['redeem_codes.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', name='uq_redemption_payment'),
    )
    op.create_index(
        'idx_redemption_records_code_user', 'redemption_records', ['redeem_code_id', 'user_id']
    )

    # ==========================================================================
    # rooms
    # ==========================================================================
    op.create_table(
        'rooms',
        _uuid_pk(),
        sa.Column('room_id', sa.String(64), nullable=False),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('patient_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('doctor_id', postgresql.UUID(as_uuid=True), nullable=False),
        _ts('valid_from'),
        _ts('valid_until'),
        sa.Column('revoked', sa.Boolean(), server_default=sa.text('FALSE'), nullable=False),
        _ts('revoked_at', nullable=True),
        _ts('created_at', default_now=True),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['patient_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('room_id', name='uq_rooms_room_id'),
        sa.UniqueConstraint('appointment_id', name='uq_rooms_appointment'),
        sa.CheckConstraint('valid_until > valid_from', name='ck_room_validity'),
    )

    # ==========================================================================
    # jobs
    # ==========================================================================
    op.create_table(
        'jobs',
        _uuid_pk(),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        _ts('run_at', default_now=True),
        sa.Column('status', sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default=sa.text('1'), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        _ts('created_at', default_now=True),
        _ts('completed_at', nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_jobs_pending',
        'jobs',
        ['status', 'run_at'],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        'uq_job_idempotency',
        'jobs',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )


def downgrade() -> None:
    op.drop_table('jobs')
    op.drop_table('rooms')
    op.drop_table('redemption_records')
    op.drop_table('payment_reconciliations')
    op.drop_table('payment_events')
    op.drop_table('payments')
    op.drop_table('appointments')
    op.drop_table('redeem_codes')
    op.drop_table('service_prices')
    op.drop_table('admin_service_windows')
    op.drop_table('users')
