"""eTIMS transaction ledger and registrable item tables

Revision ID: 001
Revises:
Create Date: 2026-10-18

Adds:
- ingredients, recipes and recipe_components with KRA item code columns
- kra_transactions ledger with its lookup indexes
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'ingredients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, index=True),
        sa.Column('unit', sa.String(20), nullable=False, server_default='pcs'),
        sa.Column('cost_per_unit', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        # Authority-issued codes
        sa.Column('item_cd', sa.String(20), nullable=True, index=True),
        sa.Column('item_cls_cd', sa.String(10), nullable=True),
        sa.Column('kra_status', sa.String(20), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'recipes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, index=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('unit', sa.String(20), nullable=False, server_default='portion'),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('item_cd', sa.String(20), nullable=True, index=True),
        sa.Column('item_cls_cd', sa.String(10), nullable=True),
        sa.Column('kra_status', sa.String(20), nullable=True),
        sa.Column('kra_composition_status', sa.String(20), nullable=True),
        sa.Column('kra_composition_no', sa.Integer(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'recipe_components',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('recipe_id', sa.Integer(),
                  sa.ForeignKey('recipes.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('ingredient_id', sa.Integer(),
                  sa.ForeignKey('ingredients.id'),
                  nullable=False, index=True),
        sa.Column('quantity', sa.Numeric(10, 4), nullable=False),
    )

    op.create_table(
        'kra_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_type', sa.String(32), nullable=False),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('kra_invoice_no', sa.Integer(), nullable=True),
        sa.Column('kra_sar_no', sa.Integer(), nullable=True),
        sa.Column('kra_result_code', sa.String(32), nullable=True),
        sa.Column('kra_result_message', sa.Text(), nullable=True),
        sa.Column('kra_receipt_data', sa.JSON(), nullable=True),
        # Business links
        sa.Column('supplier_order_id', sa.String(64), nullable=True),
        sa.Column('sales_order_id', sa.String(64), nullable=True),
        sa.Column('ingredient_id', sa.String(64), nullable=True),
        sa.Column('recipe_id', sa.String(64), nullable=True),
        sa.Column('idempotency_key', sa.String(128), nullable=True),
        # Outbound payload snapshot
        sa.Column('items_data', sa.JSON(), nullable=True),
        sa.Column('total_amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('vat_amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending', index=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_details', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_kra_tx_type_status', 'kra_transactions', ['transaction_type', 'status'])
    op.create_index('idx_kra_tx_sales_order', 'kra_transactions', ['sales_order_id'])
    op.create_index('idx_kra_tx_supplier_order', 'kra_transactions', ['supplier_order_id'])
    op.create_index('idx_kra_tx_ingredient', 'kra_transactions', ['ingredient_id'])
    op.create_index('idx_kra_tx_idempotency', 'kra_transactions', ['idempotency_key'])


def downgrade() -> None:
    op.drop_index('idx_kra_tx_idempotency', table_name='kra_transactions')
    op.drop_index('idx_kra_tx_ingredient', table_name='kra_transactions')
    op.drop_index('idx_kra_tx_supplier_order', table_name='kra_transactions')
    op.drop_index('idx_kra_tx_sales_order', table_name='kra_transactions')
    op.drop_index('idx_kra_tx_type_status', table_name='kra_transactions')
    op.drop_table('kra_transactions')
    op.drop_table('recipe_components')
    op.drop_table('recipes')
    op.drop_table('ingredients')
