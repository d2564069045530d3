"""Create checkout reconciliation schema

Revision ID: 20261018_001_create_checkout_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_001_create_checkout_schema'
down_revision = None
branch_labels = None
depends_on = None

checkout_status = sa.Enum(
    'PENDING', 'PAYMENT_COMPLETED', 'CONTACT_CREATED', 'SALES_ORDER_CREATED', 'COMPLETED',
    'PAYMENT_FAILED', 'CANCELLED', 'REFUNDED',
    name='checkoutstatus',
)
agreement_status = sa.Enum(
    'PENDING', 'SENT', 'PARTIALLY_SIGNED', 'COMPLETED', 'DECLINED', 'VOIDED',
    name='agreementstatus',
)
audit_category = sa.Enum(
    'WEBHOOK', 'STATE_TRANSITION', 'PROVISIONING', 'MAGIC_LINK', 'OPERATOR_ALERT',
    name='auditcategory',
)
event_status = sa.Enum('PENDING', 'DISPATCHED', 'FAILED', name='eventstatus')


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table('users',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('hashed_password', sa.String(length=255), nullable=False),
        sa.Column('roles', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    op.create_table('checkout_sessions',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('status', checkout_status, nullable=False),
        sa.Column('module', sa.String(length=120), nullable=True),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('payment_reference', sa.String(length=120), nullable=True),
        sa.Column('invoice_reference', sa.String(length=120), nullable=True),
        sa.Column('provisioning_claim', sa.String(length=36), nullable=True),
        sa.Column('provisioning_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('payment_reference'),
        sa.UniqueConstraint('invoice_reference'),
    )
    op.create_index(op.f('ix_checkout_sessions_user_id'), 'checkout_sessions', ['user_id'], unique=False)
    op.create_index(op.f('ix_checkout_sessions_status'), 'checkout_sessions', ['status'], unique=False)

    op.create_table('company_info',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('checkout_session_id', sa.String(length=36), nullable=False),
        sa.Column('company_name', sa.String(length=255), nullable=False),
        sa.Column('contact_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('phone', sa.String(length=40), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('city', sa.String(length=120), nullable=True),
        sa.Column('state', sa.String(length=120), nullable=True),
        sa.Column('zip_code', sa.String(length=20), nullable=True),
        sa.Column('country', sa.String(length=80), nullable=True),
        sa.Column('industry', sa.String(length=120), nullable=True),
        sa.Column('company_size', sa.String(length=40), nullable=True),
        sa.ForeignKeyConstraint(['checkout_session_id'], ['checkout_sessions.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('checkout_session_id'),
    )

    op.create_table('agreement_signature_statuses',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('checkout_session_id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=40), nullable=False),
        sa.Column('envelope_id', sa.String(length=120), nullable=True),
        sa.Column('status', agreement_status, nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['checkout_session_id'], ['checkout_sessions.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('checkout_session_id'),
    )
    op.create_index(
        op.f('ix_agreement_signature_statuses_envelope_id'), 'agreement_signature_statuses', ['envelope_id'], unique=True
    )

    op.create_table('sales_orders',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('checkout_session_id', sa.String(length=36), nullable=False),
        sa.Column('external_id', sa.String(length=120), nullable=True),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.ForeignKeyConstraint(['checkout_session_id'], ['checkout_sessions.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('checkout_session_id'),
        sa.UniqueConstraint('external_id'),
    )

    op.create_table('zoho_account_links',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('contact_id', sa.String(length=120), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index(op.f('ix_zoho_account_links_contact_id'), 'zoho_account_links', ['contact_id'], unique=False)

    op.create_table('signup_links',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('owner_user_id', sa.String(length=36), nullable=False),
        sa.Column('contact_id', sa.String(length=120), nullable=False),
        sa.Column('login_code', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['owner_user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('contact_id', 'login_code', name='uq_signup_link_contact_code'),
    )
    op.create_index(op.f('ix_signup_links_owner_user_id'), 'signup_links', ['owner_user_id'], unique=False)
    op.create_index(op.f('ix_signup_links_contact_id'), 'signup_links', ['contact_id'], unique=False)

    op.create_table('processed_events',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        sa.Column('provider', sa.String(length=40), nullable=False),
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_kind', sa.String(length=60), nullable=False),
        sa.Column('correlation_id', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('provider', 'external_event_id', name='uq_processed_event_provider_event'),
    )
    op.create_index(op.f('ix_processed_events_correlation_id'), 'processed_events', ['correlation_id'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('checkout_session_id', sa.String(length=36), nullable=True),
        sa.Column('actor', sa.String(length=80), nullable=False),
        sa.Column('action', sa.String(length=120), nullable=False),
        sa.Column('category', audit_category, nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('critical', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['checkout_session_id'], ['checkout_sessions.id'], ondelete='CASCADE'),
    )
    op.create_index(op.f('ix_audit_logs_checkout_session_id'), 'audit_logs', ['checkout_session_id'], unique=False)

    op.create_table('event_outbox',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('checkout_session_id', sa.String(length=36), nullable=True),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', event_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('next_run_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('channel', sa.String(length=40), nullable=False),
        sa.ForeignKeyConstraint(['checkout_session_id'], ['checkout_sessions.id'], ondelete='CASCADE'),
    )
    op.create_index(op.f('ix_event_outbox_checkout_session_id'), 'event_outbox', ['checkout_session_id'], unique=False)


def downgrade() -> None:
    op.drop_table('event_outbox')
    op.drop_table('audit_logs')
    op.drop_table('processed_events')
    op.drop_table('signup_links')
    op.drop_table('zoho_account_links')
    op.drop_table('sales_orders')
    op.drop_table('agreement_signature_statuses')
    op.drop_table('company_info')
    op.drop_table('checkout_sessions')
    op.drop_table('users')
    for enum in (event_status, audit_category, agreement_status, checkout_status):
        enum.drop(op.get_bind(), checkfirst=True)
