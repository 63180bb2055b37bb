from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('guest_name', sa.String(200), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(50), nullable=True),
        sa.Column('subtotal', sa.Numeric(12,2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('shipping_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('payment_status', sa.String(30), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=False),
        sa.Column('mpesa_request_id', sa.String(100), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(50), nullable=True),
        sa.Column('mpesa_phone_number', sa.String(20), nullable=True),
        sa.Column('card_reference', sa.String(100), nullable=True),
        sa.Column('bank_reference', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('mpesa_request_id'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('book_id', sa.Integer, nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(12,2), nullable=False)
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('transaction_id', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(12,2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=False),
        sa.Column('gateway', sa.String(30), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False)
    )
    op.create_index('ix_transactions_transaction_id', 'transactions', ['transaction_id'], unique=True)

def downgrade():
    op.drop_index('ix_transactions_transaction_id', table_name='transactions')
    op.drop_table('transactions')
    op.drop_table('order_items')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_index('ix_orders_order_number', table_name='orders')
    op.drop_table('orders')
