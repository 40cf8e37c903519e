"""Ledger, period close, FX and consolidation tables

Revision ID: 20261019_0900_ledger_close_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261019_0900_ledger_close_core'
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    'entrytype': ('DEBIT', 'CREDIT'),
    'accounttype': ('ASSET', 'LIABILITY', 'EQUITY', 'REVENUE', 'EXPENSE'),
    'documenttype': ('INVOICE', 'RECEIPT', 'EXPENSE', 'BILL', 'STATEMENT', 'OTHER'),
    'documentstatus': ('PENDING', 'EXTRACTED', 'CLASSIFIED', 'POSTED', 'REJECTED'),
    'closestatus': ('DRAFT', 'IN_PROGRESS', 'LOCKED', 'CLOSED', 'REOPENED'),
    'closetasktype': (
        'ACCRUAL', 'DEPRECIATION', 'PREPAYMENT', 'RECONCILIATION', 'VALIDATION',
        'REPORT', 'TAX', 'FILING', 'APPROVAL',
    ),
    'closetaskstatus': ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'BLOCKED', 'SKIPPED'),
    'alertseverity': ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL'),
    'entitytype': ('PARENT', 'SUBSIDIARY', 'DIVISION', 'DEPARTMENT'),
    'ratetype': ('SPOT', 'AVERAGE', 'HISTORICAL'),
    'accrualstatus': ('PENDING', 'POSTED', 'REVERSED'),
    'prepaymentstatus': ('PENDING', 'POSTED', 'AMORTIZED'),
    'depreciationmethod': ('STRAIGHT_LINE', 'REDUCING_BALANCE', 'UNITS_OF_PRODUCTION'),
}


def _enum(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _base_columns():
    """id, tenant_id and timestamps shared by every tenant table."""
    return [
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('tenant_id', _uuid(), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # =========================================================================
    # LEDGER
    # =========================================================================
    op.create_table(
        'chart_of_accounts',
        *_base_columns(),
        sa.Column('account_code', sa.String(20), nullable=False),
        sa.Column('account_name', sa.String(200), nullable=False),
        sa.Column('account_type', _enum('accounttype'), nullable=False),
        sa.Column('parent_code', sa.String(20), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('tenant_id', 'account_code', name='uq_chart_of_accounts_tenant_code'),
    )

    op.create_table(
        'ledger_transactions',
        *_base_columns(),
        sa.Column('document_id', _uuid(), nullable=True, index=True),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('transaction_date', sa.Date, nullable=False),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('transaction_metadata', sa.JSON, nullable=False),
    )

    op.create_table(
        'ledger_entries',
        *_base_columns(),
        sa.Column(
            'transaction_id', _uuid(),
            sa.ForeignKey('ledger_transactions.id', ondelete='RESTRICT'),
            nullable=True, index=True,
        ),
        sa.Column('entity_id', _uuid(), nullable=True, index=True),
        sa.Column('document_id', _uuid(), nullable=True, index=True),
        sa.Column('entry_type', _enum('entrytype'), nullable=False),
        sa.Column('account_code', sa.String(20), nullable=False),
        sa.Column('account_name', sa.String(200), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='GBP'),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('transaction_date', sa.Date, nullable=False),
        sa.Column('tax_amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('tax_rate', sa.Numeric(7, 4), nullable=True),
        sa.Column('source_transaction_id', sa.String(100), nullable=True),
        sa.Column('reconciled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('reconciled_with', _uuid(), nullable=True),
        sa.Column('reconciled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('entry_metadata', sa.JSON, nullable=False),
        sa.UniqueConstraint(
            'tenant_id', 'account_code', 'entry_type', 'amount', 'source_transaction_id',
            name='uq_ledger_entries_idempotency',
        ),
        sa.CheckConstraint('amount >= 0', name='ck_ledger_entries_amount_non_negative'),
    )
    op.create_index(
        'ix_ledger_entries_tenant_account_date', 'ledger_entries',
        ['tenant_id', 'account_code', 'transaction_date'],
    )

    op.create_table(
        'documents',
        *_base_columns(),
        sa.Column('file_name', sa.String(255), nullable=True),
        sa.Column('document_type', _enum('documenttype'), nullable=False),
        sa.Column('status', _enum('documentstatus'), nullable=False),
        sa.Column('extracted_data', sa.JSON, nullable=False),
        sa.Column('confidence_score', sa.Numeric(5, 4), nullable=True),
    )

    # =========================================================================
    # ENTITIES & CONSOLIDATION
    # =========================================================================
    op.create_table(
        'entities',
        *_base_columns(),
        sa.Column(
            'parent_entity_id', _uuid(),
            sa.ForeignKey('entities.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('entity_name', sa.String(200), nullable=False),
        sa.Column('entity_type', _enum('entitytype'), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='GBP'),
        sa.Column('country_code', sa.String(2), nullable=True),
        sa.Column('tax_id', sa.String(50), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'intercompany_transactions',
        *_base_columns(),
        sa.Column(
            'from_entity_id', _uuid(),
            sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column(
            'to_entity_id', _uuid(),
            sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column('transaction_date', sa.Date, nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='GBP'),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('is_eliminated', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('eliminated_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'consolidated_reports',
        *_base_columns(),
        sa.Column('report_type', sa.String(50), nullable=False),
        sa.Column('period_start', sa.Date, nullable=False),
        sa.Column('period_end', sa.Date, nullable=False),
        sa.Column('base_currency', sa.String(3), nullable=False),
        sa.Column('entity_ids', sa.JSON, nullable=False),
        sa.Column('report_data', sa.JSON, nullable=False),
        sa.UniqueConstraint(
            'tenant_id', 'report_type', 'period_start', 'period_end', 'base_currency',
            name='uq_consolidated_reports_key',
        ),
    )

    # =========================================================================
    # FX
    # =========================================================================
    op.create_table(
        'exchange_rates',
        *_base_columns(),
        sa.Column('from_currency', sa.String(3), nullable=False),
        sa.Column('to_currency', sa.String(3), nullable=False),
        sa.Column('rate_date', sa.Date, nullable=False),
        sa.Column('rate', sa.Numeric(18, 8), nullable=False),
        sa.Column('rate_type', _enum('ratetype'), nullable=False),
        sa.Column('source', sa.String(20), nullable=False, server_default='manual'),
        sa.UniqueConstraint(
            'tenant_id', 'from_currency', 'to_currency', 'rate_date', 'rate_type',
            name='uq_exchange_rates_pair_date_type',
        ),
    )
    op.create_index(
        'ix_exchange_rates_lookup', 'exchange_rates',
        ['tenant_id', 'from_currency', 'to_currency', 'rate_date'],
    )

    op.create_table(
        'fx_remeasurement_log',
        *_base_columns(),
        sa.Column('ledger_entry_id', _uuid(), nullable=False, index=True),
        sa.Column('original_currency', sa.String(3), nullable=False),
        sa.Column('original_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('functional_currency', sa.String(3), nullable=False),
        sa.Column('exchange_rate', sa.Numeric(18, 8), nullable=False),
        sa.Column('remeasured_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('fx_gain_loss', sa.Numeric(18, 2), nullable=False),
        sa.Column('remeasurement_date', sa.Date, nullable=False),
    )

    # =========================================================================
    # ACCRUALS, PREPAYMENTS & FIXED ASSETS
    # =========================================================================
    for table, status_enum in (('accruals', 'accrualstatus'), ('prepayments', 'prepaymentstatus')):
        extra = (
            [
                sa.Column('transaction_id', _uuid(), nullable=True),
                sa.Column('reversal_transaction_id', _uuid(), nullable=True),
            ]
            if table == 'accruals'
            else [sa.Column('amortization_periods', sa.Integer, nullable=False, server_default='1')]
        )
        op.create_table(
            table,
            *_base_columns(),
            sa.Column('entity_id', _uuid(), nullable=True),
            sa.Column('account_code', sa.String(20), nullable=False),
            sa.Column('amount', sa.Numeric(18, 2), nullable=False),
            sa.Column('description', sa.Text, nullable=False),
            sa.Column('period_start', sa.Date, nullable=False),
            sa.Column('period_end', sa.Date, nullable=False),
            sa.Column('status', _enum(status_enum), nullable=False),
            sa.Column('created_by', sa.String(100), nullable=True),
            *extra,
        )

    op.create_table(
        'fixed_assets',
        *_base_columns(),
        sa.Column('entity_id', _uuid(), nullable=True),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('account_code', sa.String(20), nullable=False, server_default='1000'),
        sa.Column('purchase_date', sa.Date, nullable=False),
        sa.Column('purchase_cost', sa.Numeric(18, 2), nullable=False),
        sa.Column('residual_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('useful_life', sa.Integer, nullable=False),
        sa.Column('depreciation_method', _enum('depreciationmethod'), nullable=False),
        sa.Column('depreciation_rate', sa.Numeric(7, 4), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'depreciation_entries',
        *_base_columns(),
        sa.Column(
            'asset_id', _uuid(),
            sa.ForeignKey('fixed_assets.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column('period', sa.Date, nullable=False),
        sa.Column('depreciation_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('accumulated_depreciation', sa.Numeric(18, 2), nullable=False),
        sa.Column('net_book_value', sa.Numeric(18, 2), nullable=False),
        sa.Column('transaction_id', _uuid(), nullable=True),
        sa.UniqueConstraint('asset_id', 'period', name='uq_depreciation_entries_asset_period'),
    )

    # =========================================================================
    # PERIOD CLOSE
    # =========================================================================
    op.create_table(
        'period_close',
        *_base_columns(),
        sa.Column('entity_id', _uuid(), nullable=True, index=True),
        sa.Column('period_start', sa.Date, nullable=False),
        sa.Column('period_end', sa.Date, nullable=False),
        sa.Column('close_status', _enum('closestatus'), nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(100), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_by', sa.String(100), nullable=True),
        sa.Column('reopened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reopened_by', sa.String(100), nullable=True),
        sa.Column('variance_alerts', sa.JSON, nullable=False),
        sa.Column('generated_reports', sa.JSON, nullable=False),
        sa.UniqueConstraint(
            'tenant_id', 'entity_id', 'period_start', 'period_end',
            name='uq_period_close_period',
        ),
    )
    # NULL entity_id rows are distinct under the constraint above
    op.create_index(
        'uq_period_close_tenant_wide', 'period_close',
        ['tenant_id', 'period_start', 'period_end'],
        unique=True,
        postgresql_where=sa.text('entity_id IS NULL'),
    )

    op.create_table(
        'close_tasks',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column(
            'period_close_id', _uuid(),
            sa.ForeignKey('period_close.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column('task_type', _enum('closetasktype'), nullable=False),
        sa.Column('task_name', sa.String(200), nullable=False),
        sa.Column('priority', sa.Integer, nullable=False),
        sa.Column('status', _enum('closetaskstatus'), nullable=False),
        sa.Column('blocker_reason', sa.Text, nullable=True),
        sa.Column('result_data', sa.JSON, nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('period_close_id', 'task_type', name='uq_close_tasks_close_type'),
    )

    op.create_table(
        'variance_alerts',
        *_base_columns(),
        sa.Column(
            'period_close_id', _uuid(),
            sa.ForeignKey('period_close.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column('alert_type', sa.String(50), nullable=False),
        sa.Column('account_code', sa.String(20), nullable=False),
        sa.Column('current_period_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('prior_period_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('variance_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('variance_percentage', sa.Numeric(9, 2), nullable=True),
        sa.Column('severity', _enum('alertseverity'), nullable=False),
        sa.Column('acknowledged', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('acknowledged_by', sa.String(100), nullable=True),
    )


def downgrade() -> None:
    for table in (
        'variance_alerts',
        'close_tasks',
        'period_close',
        'depreciation_entries',
        'fixed_assets',
        'prepayments',
        'accruals',
        'fx_remeasurement_log',
        'exchange_rates',
        'consolidated_reports',
        'intercompany_transactions',
        'entities',
        'documents',
        'ledger_entries',
        'ledger_transactions',
        'chart_of_accounts',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
