"""Initial migration

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
    # Listings table (one current snapshot per listing_id, not enforced)
    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('asking_price', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('monthly_revenue', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('monthly_profit', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('profit_multiple', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('revenue_multiple', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('industry', sa.String(length=64), nullable=True),
        sa.Column('listing_status', sa.String(length=32), nullable=True),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('data_quality_score', sa.Float(), nullable=True),
        sa.Column('raw_snapshot', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('scraped_at', sa.DateTime(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_listings_listing_id', 'listings', ['listing_id'])
    op.create_index('ix_listings_category', 'listings', ['category'])
    op.create_index('ix_listings_industry', 'listings', ['industry'])
    op.create_index('ix_listings_scraped_at', 'listings', ['scraped_at'])

    # Append-only history of tracked field changes
    op.create_table(
        'listing_price_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.String(length=64), nullable=False),
        sa.Column('field_type', sa.String(length=32), nullable=False),
        sa.Column('old_value', sa.String(length=64), nullable=True),
        sa.Column('new_value', sa.String(length=64), nullable=True),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_listing_price_history_listing_id', 'listing_price_history', ['listing_id'])

    # Queue job mirror
    op.create_table(
        'scrape_jobs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('config', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('attempts_made', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scrape_jobs_job_type', 'scrape_jobs', ['job_type'])

    # Categories table
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('industry', sa.String(length=64), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('listing_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_scanned_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug')
    )

    # Daily industry statistics
    op.create_table(
        'industry_statistics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('industry', sa.String(length=64), nullable=False),
        sa.Column('stat_date', sa.Date(), nullable=False),
        sa.Column('listing_count', sa.Integer(), nullable=False),
        sa.Column('avg_asking_price', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('median_asking_price', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('min_asking_price', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('max_asking_price', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('avg_profit_multiple', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('median_profit_multiple', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('avg_revenue_multiple', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('median_revenue_multiple', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('verified_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('industry', 'stat_date', name='uq_industry_stat_date')
    )

    # Health monitor snapshots
    op.create_table(
        'health_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('metrics', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('alerts', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('recommendations', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_health_snapshots_created_at', 'health_snapshots', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_health_snapshots_created_at', table_name='health_snapshots')
    op.drop_table('health_snapshots')
    op.drop_table('industry_statistics')
    op.drop_table('categories')
    op.drop_index('ix_scrape_jobs_job_type', table_name='scrape_jobs')
    op.drop_table('scrape_jobs')
    op.drop_index('ix_listing_price_history_listing_id', table_name='listing_price_history')
    op.drop_table('listing_price_history')
    op.drop_index('ix_listings_scraped_at', table_name='listings')
    op.drop_index('ix_listings_industry', table_name='listings')
    op.drop_index('ix_listings_category', table_name='listings')
    op.drop_index('ix_listings_listing_id', table_name='listings')
    op.drop_table('listings')
