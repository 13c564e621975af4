"""initial invoicing schema

Revision ID: 5b1c2e7a9f40
Revises: 
Create Date: 2026-10-19 10:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b1c2e7a9f40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

INVOICE_STATUSES = ('DRAFT', 'COMMITTED', 'VOID')
INVOICE_ITEM_TYPES = ('FIXED', 'RECURRING', 'USAGE', 'CREDIT_ADJ', 'CBA_ADJ', 'ITEM_ADJ', 'TAX', 'EXTERNAL_CHARGE')


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'account',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'invoice',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('invoice_number', sa.Integer(), nullable=False),
        sa.Column('invoice_date', sa.Date(), nullable=False),
        sa.Column('target_date', sa.Date(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.Enum(*INVOICE_STATUSES, name='invoicestatusenum'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['account.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'invoice_number', name='uq_invoice_account_number')
    )
    op.create_index('ix_invoice_account_id', 'invoice', ['account_id'])

    op.create_table(
        'invoice_item',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('invoice_id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=True),
        sa.Column('item_type', sa.Enum(*INVOICE_ITEM_TYPES, name='invoiceitemtypeenum'), nullable=False),
        sa.Column('amount', sa.Numeric(15, 4), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoice.id'], ),
        sa.ForeignKeyConstraint(['account_id'], ['account.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_invoice_item_invoice_id', 'invoice_item', ['invoice_id'])

    op.create_table(
        'invoice_trigger',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('target_date', sa.Date(), nullable=False),
        sa.Column('effective_date', sa.Date(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['account.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_invoice_trigger_account_id', 'invoice_trigger', ['account_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_invoice_trigger_account_id', table_name='invoice_trigger')
    op.drop_table('invoice_trigger')
    op.drop_index('ix_invoice_item_invoice_id', table_name='invoice_item')
    op.drop_table('invoice_item')
    op.drop_index('ix_invoice_account_id', table_name='invoice')
    op.drop_table('invoice')
    op.drop_table('account')
    sa.Enum(name='invoiceitemtypeenum').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='invoicestatusenum').drop(op.get_bind(), checkfirst=True)
