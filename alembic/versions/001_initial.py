"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Stores table
    op.create_table(
        'stores',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('chain', sa.String(length=32), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('pref', sa.String(length=64), nullable=True),
        sa.Column('city', sa.String(length=64), nullable=True),
        sa.Column('slug', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stores_lat_lng', 'stores', ['latitude', 'longitude'])

    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('chain', sa.String(length=32), nullable=False, server_default='all'),
        sa.PrimaryKeyConstraint('id')
    )

    # Report events (append-only)
    op.create_table(
        'report_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('session_id', sa.String(length=64), nullable=True),
        sa.Column('origin', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.CheckConstraint("status IN ('found', 'not_found')", name='ck_report_events_status')
    )
    op.create_index(
        'ix_report_events_product_store_created',
        'report_events',
        ['product_id', 'store_id', 'created_at'],
    )
    op.create_index(
        'ix_report_events_session',
        'report_events',
        ['session_id', 'store_id', 'product_id'],
    )

    # Comments table
    op.create_table(
        'comments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], )
    )
    op.create_index('ix_comments_store_product', 'comments', ['store_id', 'product_id'])

    # Watches table
    op.create_table(
        'watches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscriber_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('area_key', sa.String(length=32), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscriber_id', 'product_id', name='uq_watch_subscriber_product')
    )
    op.create_index('ix_watches_product_area', 'watches', ['product_id', 'area_key'])

    # Push subscriptions table
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscriber_id', sa.String(length=64), nullable=False),
        sa.Column('endpoint', sa.Text(), nullable=False),
        sa.Column('p256dh_key', sa.Text(), nullable=False),
        sa.Column('auth_key', sa.Text(), nullable=False),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('endpoint', name='uq_push_subscriptions_endpoint')
    )
    op.create_index('ix_push_subscriptions_subscriber', 'push_subscriptions', ['subscriber_id'])

    # Notification cooldowns (product x area)
    op.create_table(
        'notify_cooldowns',
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('area_key', sa.String(length=32), nullable=False),
        sa.Column('last_sent_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('product_id', 'area_key')
    )

    # Processed event markers
    op.create_table(
        'notify_processed',
        sa.Column('event_key', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('event_key')
    )

    # Notification logs
    op.create_table(
        'notify_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_key', sa.String(length=255), nullable=False),
        sa.Column('store_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('area_key', sa.String(length=32), nullable=True),
        sa.Column('outcome', sa.String(length=32), nullable=False),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('disabled_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notify_logs_created_at', 'notify_logs', ['created_at'])

    # Search logs
    op.create_table(
        'search_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('keyword', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('store_count_shown', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('search_source', sa.String(length=32), nullable=True),
        sa.Column('sort_mode', sa.String(length=16), nullable=True),
        sa.Column('area_pref', sa.String(length=64), nullable=True),
        sa.Column('area_city', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_search_logs_created_at', 'search_logs', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_search_logs_created_at', table_name='search_logs')
    op.drop_table('search_logs')
    op.drop_index('ix_notify_logs_created_at', table_name='notify_logs')
    op.drop_table('notify_logs')
    op.drop_table('notify_processed')
    op.drop_table('notify_cooldowns')
    op.drop_index('ix_push_subscriptions_subscriber', table_name='push_subscriptions')
    op.drop_table('push_subscriptions')
    op.drop_index('ix_watches_product_area', table_name='watches')
    op.drop_table('watches')
    op.drop_index('ix_comments_store_product', table_name='comments')
    op.drop_table('comments')
    op.drop_index('ix_report_events_session', table_name='report_events')
    op.drop_index('ix_report_events_product_store_created', table_name='report_events')
    op.drop_table('report_events')
    op.drop_table('products')
    op.drop_index('ix_stores_lat_lng', table_name='stores')
    op.drop_table('stores')
