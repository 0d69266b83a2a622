"""Initial identity resolution and attribution schema.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00.000000

WHAT:
    Creates the engine tables:
    - contacts, payments, appointments: CRM records and conversions
    - tracking_sessions: anonymous sessions with fingerprint signals
    - identity_nodes, identity_links: union-find identity graph
    - identity_match_reviews: fingerprint candidates kept for review
    - ad_touchpoints: daily ad delivery from the ad-platform sync

WHY:
    identity_links carries the (identifier_type, identifier_value) unique key
    that makes first-writer-wins linking safe under concurrent writers;
    payments.transaction_id and ad_touchpoints (platform, ad_id, date) are the
    natural keys for webhook and sync idempotency.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # CRM
    # =========================================================================
    op.create_table(
        'contacts',
        sa.Column('contact_id', sa.String(), primary_key=True),
        sa.Column('ext_crm_id', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('phone_key', sa.String(), nullable=True),
        sa.Column('company', sa.String(), nullable=True),
        sa.Column('visitor_id', sa.String(), nullable=True),
        sa.Column('rstk_adid', sa.String(), nullable=True),
        sa.Column('rstk_source', sa.String(), nullable=True),
        sa.Column('source', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='lead'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_contacts_ext_crm_id', 'contacts', ['ext_crm_id'])
    op.create_index('ix_contacts_email', 'contacts', ['email'])
    op.create_index('ix_contacts_phone_key', 'contacts', ['phone_key'])
    op.create_index('ix_contacts_visitor_id', 'contacts', ['visitor_id'])
    op.create_index('ix_contacts_created_at', 'contacts', ['created_at'])
    # Duplicate finder compares LOWER(TRIM(email))
    op.create_index(
        'ix_contacts_email_normalized',
        'contacts',
        [sa.text('lower(trim(email))')],
        postgresql_where=sa.text('email IS NOT NULL'),
    )

    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('transaction_id', sa.String(), nullable=False, unique=True),
        sa.Column('contact_id', sa.String(), sa.ForeignKey('contacts.contact_id'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(), nullable=False, server_default='MXN'),
        sa.Column('status', sa.String(), nullable=False, server_default='completed'),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_payments_contact_id', 'payments', ['contact_id'])

    op.create_table(
        'appointments',
        sa.Column('appointment_id', sa.String(), primary_key=True),
        sa.Column('contact_id', sa.String(), sa.ForeignKey('contacts.contact_id'), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('status', sa.String(), nullable=False, server_default='scheduled'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_appointments_contact_id', 'appointments', ['contact_id'])

    # =========================================================================
    # TRACKING
    # =========================================================================
    op.create_table(
        'tracking_sessions',
        sa.Column('session_id', sa.String(), primary_key=True),
        sa.Column('visitor_id', sa.String(), nullable=False),
        sa.Column('contact_id', sa.String(), sa.ForeignKey('contacts.contact_id'), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('channel', sa.String(), nullable=True),
        sa.Column('source_platform', sa.String(), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('landing_page', sa.String(), nullable=True),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('canvas_fingerprint', sa.String(), nullable=True),
        sa.Column('webgl_fingerprint', sa.String(), nullable=True),
        sa.Column('audio_fingerprint', sa.String(), nullable=True),
        sa.Column('fonts_fingerprint', sa.String(), nullable=True),
        sa.Column('screen_fingerprint', sa.String(), nullable=True),
        sa.Column('device_signature', sa.String(), nullable=True),
        sa.Column('ip', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('fingerprint_probability', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_tracking_sessions_visitor_id', 'tracking_sessions', ['visitor_id'])
    op.create_index('ix_tracking_sessions_contact_id', 'tracking_sessions', ['contact_id'])
    op.create_index('ix_tracking_sessions_started_at', 'tracking_sessions', ['started_at'])
    op.create_index('ix_tracking_sessions_ad_id', 'tracking_sessions', ['ad_id'])
    op.create_index('ix_tracking_sessions_visitor_started', 'tracking_sessions', ['visitor_id', 'started_at'])
    op.create_index('ix_tracking_sessions_canvas_fingerprint', 'tracking_sessions', ['canvas_fingerprint'])
    op.create_index('ix_tracking_sessions_webgl_fingerprint', 'tracking_sessions', ['webgl_fingerprint'])
    op.create_index('ix_tracking_sessions_device_signature', 'tracking_sessions', ['device_signature'])

    # =========================================================================
    # IDENTITY GRAPH
    # =========================================================================
    op.create_table(
        'identity_nodes',
        sa.Column('identity_id', sa.String(), primary_key=True),
        sa.Column('parent_id', sa.String(), sa.ForeignKey('identity_nodes.identity_id'), nullable=True),
        sa.Column('rank', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_identity_nodes_parent_id', 'identity_nodes', ['parent_id'])

    op.create_table(
        'identity_links',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'primary_identity_id', sa.String(),
            sa.ForeignKey('identity_nodes.identity_id'), nullable=False,
        ),
        sa.Column('identifier_type', sa.String(), nullable=False),
        sa.Column('identifier_value', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('identifier_type', 'identifier_value', name='uq_identity_link_identifier'),
    )
    op.create_index('ix_identity_links_primary_identity_id', 'identity_links', ['primary_identity_id'])

    op.create_table(
        'identity_match_reviews',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('primary_identity_id', sa.String(), nullable=False),
        sa.Column('contact_id', sa.String(), nullable=True),
        sa.Column('reference_session_id', sa.String(), nullable=True),
        sa.Column('candidate_session_id', sa.String(), nullable=False),
        sa.Column('candidate_visitor_id', sa.String(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('probability', sa.Float(), nullable=False),
        sa.Column('matched_signals', sa.JSON(), nullable=True),
        sa.Column('auto_linked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_identity_match_reviews_primary_identity_id', 'identity_match_reviews', ['primary_identity_id'])
    op.create_index('ix_identity_match_reviews_contact_id', 'identity_match_reviews', ['contact_id'])

    # =========================================================================
    # AD TOUCHPOINTS
    # =========================================================================
    op.create_table(
        'ad_touchpoints',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('platform', sa.String(), nullable=False, server_default='meta'),
        sa.Column('ad_id', sa.String(), nullable=False),
        sa.Column('ad_name', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('adset_name', sa.String(), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('spend', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reach', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('platform', 'ad_id', 'date', name='uq_ad_touchpoint_day'),
    )
    op.create_index('ix_ad_touchpoints_ad_date', 'ad_touchpoints', ['ad_id', 'date'])
    op.create_index('ix_ad_touchpoints_campaign_id', 'ad_touchpoints', ['campaign_id'])
    op.create_index('ix_ad_touchpoints_adset_id', 'ad_touchpoints', ['adset_id'])
    op.create_index('ix_ad_touchpoints_date', 'ad_touchpoints', ['date'])


def downgrade() -> None:
    op.drop_table('ad_touchpoints')
    op.drop_table('identity_match_reviews')
    op.drop_table('identity_links')
    op.drop_table('identity_nodes')
    op.drop_table('tracking_sessions')
    op.drop_table('appointments')
    op.drop_table('payments')
    op.drop_table('contacts')
