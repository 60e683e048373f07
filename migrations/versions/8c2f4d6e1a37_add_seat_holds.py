"""add seat holds

Revision ID: 8c2f4d6e1a37
Revises: 4b1c7e2a9d10
Create Date: 2026-10-17 21:40:12.118904

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8c2f4d6e1a37'
down_revision = '4b1c7e2a9d10'
branch_labels = None
depends_on = None


def upgrade():
    # Hold columns on seats (status RESERVED until hold_expires_at)
    op.add_column('seats', sa.Column('hold_token', sa.String(length=64), nullable=True))
    op.add_column('seats', sa.Column('hold_expires_at', sa.DateTime(), nullable=True))
    op.add_column('seats', sa.Column('hold_extensions', sa.Integer(), nullable=False, server_default='0'))
    op.create_index('ix_seats_hold_token', 'seats', ['hold_token'])
    op.create_index('ix_seats_hold_expires_at', 'seats', ['hold_expires_at'])


def downgrade():
    op.drop_index('ix_seats_hold_expires_at', table_name='seats')
    op.drop_index('ix_seats_hold_token', table_name='seats')
    op.drop_column('seats', 'hold_extensions')
    op.drop_column('seats', 'hold_expires_at')
    op.drop_column('seats', 'hold_token')
