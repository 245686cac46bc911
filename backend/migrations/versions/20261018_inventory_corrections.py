"""inventory corrections

Revision ID: 20261018_corrections
Revises: 20261018_initial
Create Date: 2026-10-18 12:00:00.000000

Adds inventory_corrections: counted-stock corrections that adjust the
ledger only once approved.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_corrections'
down_revision = '20261018_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'inventory_corrections',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variation_id', sa.Integer(), nullable=False),
        sa.Column('system_count', sa.Numeric(18, 4), nullable=False),
        sa.Column('physical_count', sa.Numeric(18, 4), nullable=False),
        sa.Column('difference', sa.Numeric(18, 4), nullable=False),
        sa.Column('applied_quantity', sa.Numeric(18, 4), nullable=True),
        sa.Column('serial_number_ids', sa.JSON(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('stock_movement_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('approved_by_user_id', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by_user_id', sa.Integer(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['variation_id'], ['product_variations.id'], ),
        sa.ForeignKeyConstraint(['stock_movement_id'], ['stock_movements.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['approved_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['rejected_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_corrections_location_id', 'inventory_corrections', ['location_id'])
    op.create_index('ix_inventory_corrections_variation_id', 'inventory_corrections', ['variation_id'])
    op.create_index('ix_inventory_corrections_status', 'inventory_corrections', ['status'])


def downgrade():
    op.drop_table('inventory_corrections')
