from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('sku', sa.String(length=50), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('stock_quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('track_inventory', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('allow_backorder', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_taxable', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('is_gift_card', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'product_variations',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False, index=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('sku', sa.String(length=50), nullable=False, unique=True),
        sa.Column('price_modifier', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('stock_quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True, index=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('value', sa.Numeric(10, 2), nullable=False),
        sa.Column('minimum_order_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('maximum_discount', sa.Numeric(10, 2), nullable=True),
        sa.Column('usage_limit', sa.Integer, nullable=True),
        sa.Column('usage_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('starts_at', sa.DateTime, nullable=True),
        sa.Column('expires_at', sa.DateTime, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'tax_rates',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('country', sa.String(length=2), nullable=False, server_default='US'),
        sa.Column('state', sa.String(length=10), nullable=False),
        sa.Column('rate', sa.Numeric(6, 3), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(length=50), nullable=False, unique=True, index=True),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=30), nullable=False, server_default='pending'),
        sa.Column('fulfillment_status', sa.String(length=30), nullable=False, server_default='unfulfilled'),
        sa.Column('customer_email', sa.String(length=255), nullable=False),
        sa.Column('customer_first_name', sa.String(length=100), nullable=True),
        sa.Column('customer_last_name', sa.String(length=100), nullable=True),
        sa.Column('customer_phone', sa.String(length=50), nullable=True),
        sa.Column('shipping_line1', sa.String(length=200), nullable=False),
        sa.Column('shipping_line2', sa.String(length=200), nullable=True),
        sa.Column('shipping_city', sa.String(length=100), nullable=False),
        sa.Column('shipping_state', sa.String(length=10), nullable=False),
        sa.Column('shipping_zip', sa.String(length=20), nullable=False),
        sa.Column('shipping_country', sa.String(length=2), nullable=False, server_default='US'),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('shipping_total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('tax_total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('grand_total', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('coupon_code', sa.String(length=50), nullable=True),
        sa.Column('gift_card_code', sa.String(length=50), nullable=True),
        sa.Column('gift_card_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('payment_provider', sa.String(length=30), nullable=True),
        sa.Column('external_order_id', sa.String(length=100), nullable=True, index=True),
        sa.Column('payment_transaction_id', sa.String(length=100), nullable=True),
        sa.Column('payment_payer_id', sa.String(length=100), nullable=True),
        sa.Column('shipping_carrier', sa.String(length=50), nullable=True),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('customer_notes', sa.Text, nullable=True),
        sa.Column('cancelled_reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('shipped_at', sa.DateTime, nullable=True),
        sa.Column('delivered_at', sa.DateTime, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True)
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False),
        sa.Column('variation_id', sa.Integer, sa.ForeignKey('product_variations.id'), nullable=True),
        sa.Column('sku', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('variation_name', sa.String(length=200), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('is_taxable', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('is_gift_card', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('fulfilled_quantity', sa.Integer, nullable=False, server_default='0')
    )
    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('previous_status', sa.String(length=30), nullable=True),
        sa.Column('new_status', sa.String(length=30), nullable=False),
        sa.Column('payment_status', sa.String(length=30), nullable=False),
        sa.Column('changed_by', sa.String(length=100), nullable=False, server_default='system'),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('event_reference', sa.String(length=100), nullable=True, index=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('coupon_id', sa.Integer, sa.ForeignKey('coupons.id'), nullable=False),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('provider', sa.String(length=30), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('provider_transaction_id', sa.String(length=100), nullable=True, index=True),
        sa.Column('provider_payer_id', sa.String(length=100), nullable=True),
        sa.Column('related_transaction_id', sa.String(length=100), nullable=True, index=True),
        sa.Column('provider_response', sa.Text, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_table(
        'gift_cards',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True, index=True),
        sa.Column('initial_balance', sa.Numeric(10, 2), nullable=False),
        sa.Column('current_balance', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('purchaser_email', sa.String(length=255), nullable=True),
        sa.Column('recipient_email', sa.String(length=255), nullable=True),
        sa.Column('recipient_name', sa.String(length=200), nullable=True),
        sa.Column('purchased_order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('expires_at', sa.DateTime, nullable=True),
        sa.Column('last_used_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('current_balance >= 0 AND current_balance <= initial_balance', name='ck_gift_cards_balance')
    )
    op.create_table(
        'gift_card_transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('gift_card_id', sa.Integer, sa.ForeignKey('gift_cards.id'), nullable=False, index=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('balance_before', sa.Numeric(10, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(10, 2), nullable=False),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_table(
        'inventory_transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False, index=True),
        sa.Column('variation_id', sa.Integer, sa.ForeignKey('product_variations.id'), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('previous_quantity', sa.Integer, nullable=False),
        sa.Column('new_quantity', sa.Integer, nullable=False),
        sa.Column('reference_type', sa.String(length=20), nullable=True),
        sa.Column('reference_id', sa.Integer, nullable=True, index=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )

def downgrade():
    op.drop_table('inventory_transactions')
    op.drop_table('gift_card_transactions')
    op.drop_table('gift_cards')
    op.drop_table('payment_transactions')
    op.drop_table('coupon_usages')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('tax_rates')
    op.drop_table('coupons')
    op.drop_table('product_variations')
    op.drop_table('products')
