"""add_detection_jobs_table

Revision ID: 7c3e9a1f5b20
Revises:
Create Date: 2026-10-19 10:12:41.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7c3e9a1f5b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create detection_jobs table for the asynchronous detection pipeline"""
    op.create_table(
        'detection_jobs',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', sa.UUID(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='processing'),
        sa.Column('stage', sa.String(length=50), nullable=False, server_default='uploading'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('result', postgresql.JSONB(), nullable=True),
        sa.Column('error_code', sa.String(length=50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('analysis_metadata', postgresql.JSONB(), nullable=True),
        sa.Column('original_filename', sa.String(length=255), nullable=True),
        sa.Column('mime_type', sa.String(length=50), nullable=True),
        sa.Column('size_bytes', sa.Integer(), nullable=True),
        sa.Column('thumbnail', sa.Text(), nullable=True),
        sa.Column('storage_path', sa.String(length=500), nullable=True),
        sa.Column('storage_url', sa.Text(), nullable=True),
        sa.Column('storage_url_expires_at', sa.DateTime(), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(), nullable=True),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('delete_requested_at', sa.DateTime(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('progress >= 0 AND progress <= 100', name='ck_detection_jobs_progress_range'),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name='ck_detection_jobs_status',
        ),
    )

    # Create indexes for common queries
    op.create_index('ix_detection_jobs_owner_id', 'detection_jobs', ['owner_id'])
    op.create_index('ix_detection_jobs_status', 'detection_jobs', ['status'])
    op.create_index('ix_detection_jobs_error_code', 'detection_jobs', ['error_code'])
    op.create_index('ix_detection_jobs_consumed_at', 'detection_jobs', ['consumed_at'])
    op.create_index('ix_detection_jobs_delete_requested_at', 'detection_jobs', ['delete_requested_at'])
    op.create_index('ix_detection_jobs_is_deleted', 'detection_jobs', ['is_deleted'])
    op.create_index('ix_detection_jobs_created_at', 'detection_jobs', ['created_at'])

    # Timeout reaper scans processing jobs by staleness
    op.create_index(
        'ix_detection_jobs_processing_updated_at',
        'detection_jobs',
        ['updated_at'],
        postgresql_where=sa.text("status = 'processing'"),
    )


def downgrade() -> None:
    """Drop detection_jobs table and indexes"""
    op.drop_index('ix_detection_jobs_processing_updated_at', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_created_at', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_is_deleted', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_delete_requested_at', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_consumed_at', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_error_code', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_status', table_name='detection_jobs')
    op.drop_index('ix_detection_jobs_owner_id', table_name='detection_jobs')
    op.drop_table('detection_jobs')
