"""Initial schema: zones, dispensaries, subscriptions, deals, reviews

Revision ID: 20261018_initial_schema
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from typing import Union


# revision identifiers, used by Alembic.
revision: str = '20261018_initial_schema'
down_revision: Union[str, None] = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'zones',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('postal_code', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('next_due_at', sa.DateTime(), nullable=True),
        sa.Column('last_processed_at', sa.DateTime(), nullable=True),
        sa.Column('refresh_interval_minutes', sa.Integer(), nullable=False, server_default='360'),
        sa.Column('lease_token', sa.String(length=64), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_zones_postal_code', 'zones', ['postal_code'], unique=True)
    # Claim query: status + next_due_at range scan
    op.create_index('ix_zones_claimable', 'zones', ['status', 'next_due_at'], unique=False)

    op.create_table(
        'dispensaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('place_id', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('address', sa.String(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('website', sa.String(length=500), nullable=True),
        sa.Column('flyer_url', sa.String(length=500), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('postal_code', sa.String(length=16), nullable=True),
        sa.Column('region', sa.String(length=32), nullable=True),
        sa.Column('reliability_score', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_ingested_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_dispensaries_place_id', 'dispensaries', ['place_id'], unique=True)
    op.create_index('ix_dispensaries_name', 'dispensaries', ['name'], unique=False)
    op.create_index('ix_dispensaries_active', 'dispensaries', ['active'], unique=False)

    op.create_table(
        'zone_dispensaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('zone_id', sa.Integer(), nullable=False),
        sa.Column('dispensary_id', sa.Integer(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['zone_id'], ['zones.id']),
        sa.ForeignKeyConstraint(['dispensary_id'], ['dispensaries.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('zone_id', 'dispensary_id', name='uq_zone_dispensary')
    )
    op.create_index('ix_zone_dispensaries_zone_id', 'zone_dispensaries', ['zone_id'], unique=False)
    op.create_index('ix_zone_dispensaries_dispensary_id', 'zone_dispensaries', ['dispensary_id'], unique=False)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('zone_id', sa.Integer(), nullable=False),
        sa.Column('postal_code', sa.String(length=16), nullable=False),
        sa.Column('radius_miles', sa.Float(), nullable=False, server_default='25.0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['zone_id'], ['zones.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', 'zone_id', name='uq_subscription_email_zone')
    )
    op.create_index('ix_subscriptions_email', 'subscriptions', ['email'], unique=False)
    op.create_index('ix_subscriptions_zone_id', 'subscriptions', ['zone_id'], unique=False)

    op.create_table(
        'notifications_outbox',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('zone_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False, server_default='DEALS_READY'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['zone_id'], ['zones.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', 'zone_id', 'type', name='uq_notification_email_zone_type')
    )

    op.create_table(
        'brands',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('normalized_name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_brands_normalized_name', 'brands', ['normalized_name'], unique=True)

    op.create_table(
        'deals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('dispensary_id', sa.Integer(), nullable=True),
        sa.Column('dispensary_name', sa.String(length=255), nullable=False),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('source_url', sa.String(length=500), nullable=True),
        sa.Column('deal_date', sa.Date(), nullable=False),
        sa.Column('category', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('normalized_title', sa.String(), nullable=False),
        sa.Column('brand', sa.String(length=255), nullable=True),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('brand_id', sa.Integer(), nullable=True),
        sa.Column('price_text', sa.String(length=255), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('identity_hash', sa.String(length=64), nullable=False),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('review_reason', sa.String(), nullable=True),
        sa.Column('is_placeholder', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['dispensary_id'], ['dispensaries.id']),
        sa.ForeignKeyConstraint(['brand_id'], ['brands.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dispensary_name', 'deal_date', 'identity_hash', name='uq_deals_source_date_hash')
    )
    op.create_index('ix_deals_dispensary_id', 'deals', ['dispensary_id'], unique=False)
    op.create_index('ix_deals_deal_date', 'deals', ['deal_date'], unique=False)
    op.create_index('ix_deals_category', 'deals', ['category'], unique=False)
    op.create_index('ix_deals_brand_id', 'deals', ['brand_id'], unique=False)
    op.create_index('ix_deals_identity_hash', 'deals', ['identity_hash'], unique=False)
    op.create_index('ix_deals_needs_review', 'deals', ['needs_review'], unique=False)
    op.create_index('ix_deals_created_at', 'deals', ['created_at'], unique=False)
    # Fuzzy duplicate lookup: same source + title within a date window
    op.create_index(
        'ix_deals_source_title_date', 'deals',
        ['dispensary_name', 'normalized_title', 'deal_date'], unique=False
    )

    op.create_table(
        'deal_reviews',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deal_id', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(), nullable=False),
        sa.Column('notes', sa.String(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_deal_reviews_deal_id', 'deal_reviews', ['deal_id'], unique=False)
    op.create_index('ix_deal_reviews_status', 'deal_reviews', ['status'], unique=False)


def downgrade() -> None:
    op.drop_table('deal_reviews')
    op.drop_table('deals')
    op.drop_table('brands')
    op.drop_table('notifications_outbox')
    op.drop_table('subscriptions')
    op.drop_table('zone_dispensaries')
    op.drop_table('dispensaries')
    op.drop_table('zones')
