"""Create billing schema

Revision ID: 001_billing
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_billing'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated=True):
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)]
    if with_updated:
        columns.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade():
    """Create invoice, payment, credit ledger and sequence tables"""

    # ====================
    # CUSTOMERS
    # ====================
    op.create_table(
        'customers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('gstin', sa.String(15), nullable=True),
        sa.Column('state_code', sa.String(2), nullable=True),
        sa.Column('credit_limit_paise', sa.BigInteger, nullable=True),
        sa.Column('credit_balance_paise', sa.BigInteger, server_default='0', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_customers_tenant_id', 'customers', ['tenant_id'])
    op.create_index('ix_customers_tenant_phone', 'customers', ['tenant_id', 'phone'])

    # ====================
    # INVOICES
    # ====================
    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('seller_org_id', sa.Uuid(), nullable=False),
        sa.Column('seller_gstin_id', sa.Uuid(), nullable=True),
        sa.Column('seller_state_code', sa.String(2), nullable=False),
        sa.Column('customer_id', sa.Uuid(), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('buyer_name', sa.String(200), nullable=True),
        sa.Column('buyer_gstin', sa.String(15), nullable=True),
        sa.Column('place_of_supply', sa.String(2), nullable=False),
        sa.Column('is_inter_state', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('invoice_number', sa.String(30), nullable=False),
        sa.Column('invoice_type', sa.String(20), server_default='B2C', nullable=False),
        sa.Column('status', sa.String(20), server_default='DRAFT', nullable=False),
        sa.Column('payment_status', sa.String(20), server_default='PENDING', nullable=False),
        sa.Column('invoice_date', sa.Date, nullable=False),
        sa.Column('total_taxable_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('total_cgst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('total_sgst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('total_igst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('total_gst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('round_off_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('total_invoice_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('paid_amount_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('original_invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('return_reason', sa.Text, nullable=True),
        sa.Column('idempotency_key', sa.String(100), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('filed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('seller_org_id', 'invoice_number', name='uq_invoice_seller_number'),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_invoice_idempotency'),
    )
    op.create_index('ix_invoices_tenant_id', 'invoices', ['tenant_id'])
    op.create_index('ix_invoices_tenant_date', 'invoices', ['tenant_id', 'invoice_date'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_customer_id', 'invoices', ['customer_id'])
    op.create_index('ix_invoices_original_invoice_id', 'invoices', ['original_invoice_id'])

    # ====================
    # INVOICE LINE ITEMS
    # ====================
    op.create_table(
        'invoice_line_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('product_ref', sa.String(100), nullable=False),
        sa.Column('product_name', sa.String(300), nullable=False),
        sa.Column('hsn_code', sa.String(8), nullable=False),
        sa.Column('batch_ref', sa.String(100), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price_paise', sa.BigInteger, nullable=False),
        sa.Column('discount_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('unit_cost_paise', sa.BigInteger, nullable=True),
        sa.Column('gst_rate_bps', sa.Integer, nullable=False),
        sa.Column('tax_inclusion', sa.String(10), nullable=False),
        sa.Column('taxable_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('cgst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('sgst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('igst_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column('line_total_paise', sa.BigInteger, server_default='0', nullable=False),
        sa.Column(
            'original_line_item_id', sa.Uuid(),
            sa.ForeignKey('invoice_line_items.id', ondelete='RESTRICT'), nullable=True
        ),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('invoice_id', 'position', name='uq_line_item_position'),
    )
    op.create_index('ix_invoice_line_items_invoice_id', 'invoice_line_items', ['invoice_id'])
    op.create_index(
        'ix_invoice_line_items_original_line_item_id', 'invoice_line_items', ['original_line_item_id']
    )

    # ====================
    # TAX LINES
    # ====================
    op.create_table(
        'invoice_tax_lines',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tax_type', sa.String(4), nullable=False),
        sa.Column('tax_rate_bps', sa.Integer, nullable=False),
        sa.Column('tax_paise', sa.BigInteger, nullable=False),
        sa.UniqueConstraint('invoice_id', 'tax_type', 'tax_rate_bps', name='uq_tax_line_bucket'),
    )
    op.create_index('ix_invoice_tax_lines_invoice_id', 'invoice_tax_lines', ['invoice_id'])

    # ====================
    # PAYMENTS
    # ====================
    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('amount_paise', sa.BigInteger, nullable=False),
        sa.Column('status', sa.String(20), server_default='INITIATED', nullable=False),
        sa.Column('provider_payment_id', sa.String(100), unique=True, nullable=True),
        sa.Column('details', sa.JSON, nullable=True),
        sa.Column('split_group_id', sa.Uuid(), nullable=True),
        sa.Column('is_refund', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payments_tenant_id', 'payments', ['tenant_id'])
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])

    # ====================
    # CREDIT LEDGER
    # ====================
    op.create_table(
        'credit_ledger_entries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('customer_id', sa.Uuid(), sa.ForeignKey('customers.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('entry_no', sa.Integer, nullable=False),
        sa.Column('entry_type', sa.String(10), nullable=False),
        sa.Column('amount_paise', sa.BigInteger, nullable=False),
        sa.Column('balance_after_paise', sa.BigInteger, nullable=False),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payments.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('description', sa.String(300), nullable=False),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('customer_id', 'entry_no', name='uq_credit_ledger_entry_no'),
    )
    op.create_index('ix_credit_ledger_entries_customer_id', 'credit_ledger_entries', ['customer_id'])

    # ====================
    # INVOICE SEQUENCES
    # ====================
    op.create_table(
        'invoice_sequences',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('seller_org_id', sa.Uuid(), nullable=False),
        sa.Column('series', sa.String(10), nullable=False),
        sa.Column('sequence_date', sa.Date, nullable=False),
        sa.Column('current_number', sa.Integer, server_default='0', nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('seller_org_id', 'series', 'sequence_date', name='uq_invoice_sequence_day'),
    )

    # ====================
    # RESTOCK RECORDS
    # ====================
    op.create_table(
        'restock_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column(
            'original_line_item_id', sa.Uuid(),
            sa.ForeignKey('invoice_line_items.id', ondelete='RESTRICT'), nullable=False
        ),
        sa.Column('return_batch_ref', sa.String(100), nullable=False),
        sa.Column('credit_note_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('product_ref', sa.String(100), nullable=False),
        sa.Column('batch_ref', sa.String(100), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('original_line_item_id', 'return_batch_ref', name='uq_restock_line_batch'),
    )


def downgrade():
    op.drop_table('restock_records')
    op.drop_table('invoice_sequences')
    op.drop_table('credit_ledger_entries')
    op.drop_table('payments')
    op.drop_table('invoice_tax_lines')
    op.drop_table('invoice_line_items')
    op.drop_table('invoices')
    op.drop_table('customers')
