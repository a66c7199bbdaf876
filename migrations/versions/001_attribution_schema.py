"""attribution_schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'tracking_definitions',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('destination', sa.Text(), nullable=True),
        sa.Column('utm_source', sa.String(255), nullable=False),
        sa.Column('utm_medium', sa.String(255), nullable=False),
        sa.Column('utm_campaign', sa.String(255), nullable=False),
        sa.Column('utm_content', sa.String(255), nullable=True),
        sa.Column('utm_term', sa.String(255), nullable=True),
        sa.Column('status', sa.String(16), server_default='active', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("id ~ '^[a-f0-9]{64}$'", name='ck_tracking_definitions_id_hex'),
        sa.CheckConstraint("status IN ('active', 'inactive')", name='ck_tracking_definitions_status'),
    )
    op.create_index('ix_tracking_definitions_status', 'tracking_definitions', ['status'])

    op.create_table(
        'clicks',
        sa.Column('id', sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column('tracking_id', sa.String(64), nullable=False),
        sa.Column('clicked_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('utm_source', sa.String(255), nullable=True),
        sa.Column('utm_medium', sa.String(255), nullable=True),
        sa.Column('utm_campaign', sa.String(255), nullable=True),
        sa.Column('utm_content', sa.String(255), nullable=True),
        sa.Column('utm_term', sa.String(255), nullable=True),
        sa.Column('utm_id', sa.String(255), nullable=True),
        sa.Column('utm_source_platform', sa.String(255), nullable=True),
        sa.Column('session_ref', sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tracking_id'], ['tracking_definitions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_clicks_tracking_clicked', 'clicks', ['tracking_id', 'clicked_at'])

    op.create_table(
        'conversions',
        sa.Column('id', sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column('click_id', sa.BigInteger(), nullable=False),
        sa.Column('attribution', sa.Float(), nullable=False),
        sa.Column('converted_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['click_id'], ['clicks.id'], ondelete='CASCADE'),
        sa.CheckConstraint('attribution > 0 AND attribution <= 1', name='ck_conversions_attribution_range'),
    )
    op.create_index('ix_conversions_click_id', 'conversions', ['click_id'])
    op.create_index('ix_conversions_converted_at', 'conversions', ['converted_at'])

    op.create_table(
        'click_ids',
        sa.Column('id', sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column('tracking_id', sa.String(64), nullable=False),
        sa.Column('platform', sa.String(64), nullable=False),
        sa.Column('click_id', sa.String(255), nullable=False),
        sa.Column('clicked_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tracking_id'], ['tracking_definitions.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tracking_id', 'platform', name='uq_click_ids_tracking_platform'),
    )
    op.create_index('ix_click_ids_clicked_at', 'click_ids', ['clicked_at'])

    op.create_table(
        'report_queue',
        sa.Column('id', sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column('reporter', sa.String(100), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(16), server_default='pending', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('label', sa.String(255), nullable=True),
        # NULL -> global AD_ATTR_QUEUE_* default
        sa.Column('attempts_per_round', sa.Integer(), nullable=True),
        sa.Column('retry_delay', sa.Integer(), nullable=True),
        sa.Column('max_rounds', sa.Integer(), nullable=True),
        sa.Column('round_delay', sa.Integer(), nullable=True),
        sa.Column('retry_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'done', 'failed')",
            name='ck_report_queue_status'
        ),
    )
    op.create_index('ix_report_queue_status_retry', 'report_queue', ['status', 'retry_after', 'created_at'])
    op.create_index('ix_report_queue_processed_at', 'report_queue', ['processed_at'])


def downgrade():
    op.drop_index('ix_report_queue_processed_at', table_name='report_queue')
    op.drop_index('ix_report_queue_status_retry', table_name='report_queue')
    op.drop_table('report_queue')
    op.drop_index('ix_click_ids_clicked_at', table_name='click_ids')
    op.drop_table('click_ids')
    op.drop_index('ix_conversions_converted_at', table_name='conversions')
    op.drop_index('ix_conversions_click_id', table_name='conversions')
    op.drop_table('conversions')
    op.drop_index('ix_clicks_tracking_clicked', table_name='clicks')
    op.drop_table('clicks')
    op.drop_index('ix_tracking_definitions_status', table_name='tracking_definitions')
    op.drop_table('tracking_definitions')
