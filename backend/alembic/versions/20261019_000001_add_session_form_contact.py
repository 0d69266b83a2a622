"""Add form-captured email/phone to tracking sessions.

Revision ID: 20261019_000001
Revises: 20261018_000001
Create Date: 2026-10-19

WHAT: Adds email, phone and phone_key columns to tracking_sessions
WHY: Retroactive linking matches orphan contacts to sessions by the email or
     phone a visitor typed into a tracked form, not only by visitor_id
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = '20261018_000001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add form contact columns to tracking_sessions."""
    op.add_column('tracking_sessions', sa.Column('email', sa.String(), nullable=True))
    op.add_column('tracking_sessions', sa.Column('phone', sa.String(), nullable=True))
    op.add_column('tracking_sessions', sa.Column('phone_key', sa.String(), nullable=True))
    op.create_index('ix_tracking_sessions_email', 'tracking_sessions', ['email'])
    op.create_index('ix_tracking_sessions_phone_key', 'tracking_sessions', ['phone_key'])


def downgrade() -> None:
    """Remove form contact columns from tracking_sessions."""
    op.drop_index('ix_tracking_sessions_phone_key', table_name='tracking_sessions')
    op.drop_index('ix_tracking_sessions_email', table_name='tracking_sessions')
    op.drop_column('tracking_sessions', 'phone_key')
    op.drop_column('tracking_sessions', 'phone')
    op.drop_column('tracking_sessions', 'email')
