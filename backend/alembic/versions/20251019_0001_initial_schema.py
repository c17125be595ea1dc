"""initial schema

Revision ID: 20251019_0001
Revises:
Create Date: 2025-10-19 00:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20251019_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True),
                     server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False)


def upgrade() -> None:
    # Databases that already carry these tables are stamped at this revision
    # by run_migrations.py instead of upgraded through it.
    op.create_table('users',
                    sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
                    sa.Column('username', sa.String(length=100), nullable=False),
                    sa.Column('full_name', sa.String(length=150)),
                    sa.Column('role', sa.String(length=20), nullable=False,
                              server_default=sa.text("'employee'")),
                    sa.Column('has_purchase_management_permission', sa.Boolean(),
                              nullable=False, server_default=sa.false()),
                    _created_at(),
                    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table('quotations',
                    sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
                    sa.Column('quote_number', sa.String(length=64), nullable=False),
                    sa.Column('quote_date', sa.Date(), nullable=False),
                    sa.Column('customer_name', sa.String(length=200), nullable=False),
                    sa.Column('location', sa.String(length=200)),
                    sa.Column('mobile', sa.String(length=32)),
                    _created_at(),
                    )
    op.create_index('ix_quotations_quote_number', 'quotations', ['quote_number'], unique=True)
    op.create_index('idx_quotation_created_date', 'quotations', ['created_at', 'quote_date'])

    op.create_table('quotation_items',
                    sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
                    sa.Column('quotation_id', sa.Integer(),
                              sa.ForeignKey('quotations.id', ondelete='CASCADE'), nullable=False),
                    sa.Column('category', sa.String(length=32), nullable=False),
                    sa.Column('horsepower', sa.String(length=32)),
                    sa.Column('capacity_kw', sa.Numeric(12, 3)),
                    sa.Column('price_per_kw', sa.Numeric(12, 2)),
                    sa.Column('total_before_tax', sa.Numeric(14, 2)),
                    sa.Column('vat15', sa.Numeric(14, 2)),
                    sa.Column('total_with_tax', sa.Numeric(14, 2)),
                    )
    op.create_index('ix_quotation_items_quotation_id', 'quotation_items', ['quotation_id'])

    op.create_table('instant_expense_sheets',
                    sa.Column('id', sa.String(length=32), primary_key=True),
                    sa.Column('custody_number', sa.String(length=32)),
                    sa.Column('custody_amount', sa.Numeric(14, 2), nullable=False,
                              server_default=sa.text('0')),
                    sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
                    sa.Column('status', sa.String(length=16), nullable=False,
                              server_default=sa.text("'OPEN'")),
                    sa.Column('notes', sa.Text()),
                    _created_at(),
                    sa.Column('last_modified', sa.DateTime(timezone=True),
                              server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
                    sa.CheckConstraint("status IN ('OPEN', 'CLOSED')",
                                       name='check_valid_sheet_status'),
                    )
    op.create_index('ix_instant_expense_sheets_custody_number',
                    'instant_expense_sheets', ['custody_number'], unique=True)
    op.create_index('ix_instant_expense_sheets_user_id', 'instant_expense_sheets', ['user_id'])
    op.create_index('idx_sheet_last_modified', 'instant_expense_sheets', ['last_modified'])

    op.create_table('instant_expense_lines',
                    sa.Column('id', sa.String(length=32), primary_key=True),
                    sa.Column('sheet_id', sa.String(length=32),
                              sa.ForeignKey('instant_expense_sheets.id', ondelete='CASCADE'),
                              nullable=False),
                    sa.Column('date', sa.Date()),
                    sa.Column('company', sa.String(length=200)),
                    sa.Column('invoice_number', sa.String(length=100)),
                    sa.Column('description', sa.Text()),
                    sa.Column('reason', sa.Text(), nullable=False),
                    sa.Column('amount', sa.Numeric(14, 2), nullable=False,
                              server_default=sa.text('0')),
                    sa.Column('bank_fees', sa.Numeric(14, 2)),
                    sa.Column('buyer_name', sa.String(length=150)),
                    sa.Column('notes', sa.Text()),
                    _created_at(),
                    )
    op.create_index('ix_instant_expense_lines_sheet_id', 'instant_expense_lines', ['sheet_id'])

    op.create_table('notifications',
                    sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
                    sa.Column('user_id', sa.Integer(), nullable=False),
                    sa.Column('message', sa.Text(), nullable=False),
                    sa.Column('link', sa.String(length=512)),
                    sa.Column('is_read', sa.Boolean(), nullable=False,
                              server_default=sa.false()),
                    _created_at(),
                    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('idx_notification_user_created', 'notifications', ['user_id', 'created_at'])

    op.create_table('web_push_subscriptions',
                    sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
                    sa.Column('user_id', sa.Integer(), nullable=False),
                    sa.Column('endpoint', sa.String(length=1024), nullable=False),
                    sa.Column('keys_auth', sa.String(length=255)),
                    sa.Column('keys_p256dh', sa.String(length=255)),
                    sa.Column('raw', sa.Text()),
                    _created_at(),
                    sa.Column('updated_at', sa.DateTime(timezone=True),
                              server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
                    )
    op.create_index('ix_web_push_subscriptions_user_id', 'web_push_subscriptions', ['user_id'])
    # utf8mb4 index keys are capped at 767 bytes on MySQL
    op.create_index('uniq_user_endpoint', 'web_push_subscriptions', ['user_id', 'endpoint'],
                    unique=True, mysql_length={'endpoint': 191})


def downgrade() -> None:
    op.drop_table('web_push_subscriptions')
    op.drop_table('notifications')
    op.drop_table('instant_expense_lines')
    op.drop_table('instant_expense_sheets')
    op.drop_table('quotation_items')
    op.drop_table('quotations')
    op.drop_table('users')
