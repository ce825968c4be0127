"""create_rental_tables: stores, products, units, customers, reservations, payments

Revision ID: create_rental_tables
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'create_rental_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('latitude', sa.DECIMAL(10, 7), nullable=True),
        sa.Column('longitude', sa.DECIMAL(10, 7), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='Europe/Paris'),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('notification_chat_id', sa.String(64), nullable=True),
        sa.Column('discord_webhook_url', sa.Text(), nullable=True),
        sa.Column('payment_account_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id', name='pk_stores'),
        sa.UniqueConstraint('slug', name='uq_stores_slug'),
    )
    op.create_index('ix_stores_slug', 'stores', ['slug'], unique=False)

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('price', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('deposit', sa.DECIMAL(10, 2), nullable=False, server_default='0'),
        sa.Column('pricing_mode', sa.String(10), nullable=False, server_default='day'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('track_units', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('booking_attribute_axes', sa.JSON(), nullable=True),
        sa.Column('tax_settings', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], name='fk_products_store_id_stores', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
    )
    op.create_index('ix_products_store_id', 'products', ['store_id'], unique=False)
    op.create_index('ix_products_store_status', 'products', ['store_id', 'status'], unique=False)

    op.create_table(
        'product_pricing_tiers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('min_duration', sa.Integer(), nullable=False),
        sa.Column('discount_percent', sa.DECIMAL(5, 2), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'],
            name='fk_product_pricing_tiers_product_id_products', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_product_pricing_tiers'),
    )
    op.create_index('ix_product_pricing_tiers_product_id', 'product_pricing_tiers', ['product_id'], unique=False)

    op.create_table(
        'product_units',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('identifier', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='available'),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column('combination_key', sa.String(500), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'],
            name='fk_product_units_product_id_products', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_product_units'),
    )
    op.create_index('ix_product_units_product_status', 'product_units', ['product_id', 'status'], unique=False)
    op.create_index(
        'ix_product_units_product_combination', 'product_units', ['product_id', 'combination_key'], unique=False
    )

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(255), nullable=False),
        sa.Column('last_name', sa.String(255), nullable=False),
        sa.Column('customer_type', sa.String(20), nullable=False, server_default='individual'),
        sa.Column('company_name', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('city', sa.String(255), nullable=True),
        sa.Column('postal_code', sa.String(20), nullable=True),
        sa.Column('country', sa.String(2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], name='fk_customers_store_id_stores', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name='pk_customers'),
        sa.UniqueConstraint('store_id', 'email', name='uq_customers_store_email'),
    )
    op.create_index('ix_customers_store_id', 'customers', ['store_id'], unique=False)

    op.create_table(
        'reservations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('number', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('subtotal_amount', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('deposit_amount', sa.DECIMAL(10, 2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('subtotal_excl_tax', sa.DECIMAL(10, 2), nullable=True),
        sa.Column('tax_amount', sa.DECIMAL(10, 2), nullable=True),
        sa.Column('tax_rate', sa.DECIMAL(5, 2), nullable=True),
        sa.Column('delivery_option', sa.String(20), nullable=False, server_default='pickup'),
        sa.Column('delivery_address', sa.Text(), nullable=True),
        sa.Column('delivery_city', sa.String(255), nullable=True),
        sa.Column('delivery_postal_code', sa.String(20), nullable=True),
        sa.Column('delivery_country', sa.String(2), nullable=True),
        sa.Column('delivery_latitude', sa.DECIMAL(10, 7), nullable=True),
        sa.Column('delivery_longitude', sa.DECIMAL(10, 7), nullable=True),
        sa.Column('delivery_distance_km', sa.DECIMAL(10, 2), nullable=True),
        sa.Column('delivery_fee', sa.DECIMAL(10, 2), nullable=False, server_default='0'),
        sa.Column('customer_notes', sa.Text(), nullable=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='online'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ['store_id'], ['stores.id'], name='fk_reservations_store_id_stores', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], name='fk_reservations_customer_id_customers'),
        sa.PrimaryKeyConstraint('id', name='pk_reservations'),
        sa.UniqueConstraint('store_id', 'number', name='uq_reservations_store_number'),
    )
    op.create_index('ix_reservations_store_status', 'reservations', ['store_id', 'status'], unique=False)
    op.create_index(
        'ix_reservations_store_period', 'reservations', ['store_id', 'start_date', 'end_date'], unique=False
    )
    op.create_index('ix_reservations_customer_id', 'reservations', ['customer_id'], unique=False)

    op.create_table(
        'reservation_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reservation_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('is_custom_item', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('deposit_per_unit', sa.DECIMAL(10, 2), nullable=False, server_default='0'),
        sa.Column('total_price', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('tax_rate', sa.DECIMAL(5, 2), nullable=True),
        sa.Column('tax_amount', sa.DECIMAL(10, 2), nullable=True),
        sa.Column('price_excl_tax', sa.DECIMAL(10, 2), nullable=True),
        sa.Column('total_excl_tax', sa.DECIMAL(10, 2), nullable=True),
        sa.Column('pricing_breakdown', sa.JSON(), nullable=True),
        sa.Column('product_snapshot', sa.JSON(), nullable=True),
        sa.Column('combination_key', sa.String(500), nullable=True),
        sa.Column('selected_attributes', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(
            ['reservation_id'], ['reservations.id'],
            name='fk_reservation_items_reservation_id_reservations', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'],
            name='fk_reservation_items_product_id_products', ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_reservation_items'),
    )
    op.create_index('ix_reservation_items_reservation_id', 'reservation_items', ['reservation_id'], unique=False)
    op.create_index('ix_reservation_items_product_id', 'reservation_items', ['product_id'], unique=False)

    op.create_table(
        'reservation_activity',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reservation_id', sa.Integer(), nullable=False),
        sa.Column('activity_type', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ['reservation_id'], ['reservations.id'],
            name='fk_reservation_activity_reservation_id_reservations', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_reservation_activity'),
    )
    op.create_index(
        'ix_reservation_activity_reservation_id', 'reservation_activity', ['reservation_id'], unique=False
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reservation_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('payment_type', sa.String(20), nullable=False, server_default='rental'),
        sa.Column('method', sa.String(20), nullable=False, server_default='yookassa'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider_payment_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ['reservation_id'], ['reservations.id'],
            name='fk_payments_reservation_id_reservations', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_payments'),
    )
    op.create_index('ix_payments_reservation_id', 'payments', ['reservation_id'], unique=False)
    op.create_index('ix_payments_provider_payment_id', 'payments', ['provider_payment_id'], unique=False)


def downgrade() -> None:
    op.drop_table('payments')
    op.drop_table('reservation_activity')
    op.drop_table('reservation_items')
    op.drop_table('reservations')
    op.drop_table('customers')
    op.drop_table('product_units')
    op.drop_table('product_pricing_tiers')
    op.drop_table('products')
    op.drop_table('stores')
