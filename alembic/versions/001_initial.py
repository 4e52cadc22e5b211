"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create upload_files table
    op.create_table(
        'upload_files',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(100), nullable=True, index=True),
        sa.Column('fingerprint', sa.String(255), nullable=True, index=True),
        sa.Column('batch_id', sa.String(64), nullable=False, index=True),
        sa.Column('tool_type', sa.String(50), nullable=False),
        sa.Column('storage_key', sa.Text(), nullable=False),
        sa.Column('original_file_name', sa.String(255), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('status', sa.Enum('uploaded', 'processing', 'processed', 'failed', name='filestatus'), nullable=False, default='uploaded'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('user_id IS NOT NULL OR fingerprint IS NOT NULL', name='ck_upload_files_owner'),
    )

    # Create processing_tasks table
    op.create_table(
        'processing_tasks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('upload_file_id', sa.Integer(), sa.ForeignKey('upload_files.id', ondelete='CASCADE'), nullable=False, unique=True, index=True),
        sa.Column('engine_task_id', sa.String(100), nullable=False, index=True),
        sa.Column('task_status', sa.String(20), nullable=False),
        sa.Column('task_message', sa.Text(), nullable=True),
        sa.Column('progress', sa.Float(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create processing_result_details table
    op.create_table(
        'processing_result_details',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('upload_file_id', sa.Integer(), sa.ForeignKey('upload_files.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('result_type', sa.String(255), nullable=False),
        sa.Column('storage_key', sa.Text(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('upload_file_id', 'result_type', name='uq_result_details_file_type'),
    )

    # Create usage_counters table
    op.create_table(
        'usage_counters',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('identity', sa.String(255), nullable=False),
        sa.Column('tool_code', sa.String(50), nullable=False),
        sa.Column('daily_limit', sa.Integer(), nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False, default=0),
        sa.Column('reset_date', sa.Date(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('identity', 'tool_code', name='uq_usage_counters_identity_tool'),
    )

    # Create indexes
    op.create_index('ix_upload_files_status', 'upload_files', ['status'])
    op.create_index('ix_upload_files_created_at', 'upload_files', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_upload_files_created_at')
    op.drop_index('ix_upload_files_status')
    op.drop_table('usage_counters')
    op.drop_table('processing_result_details')
    op.drop_table('processing_tasks')
    op.drop_table('upload_files')
    op.execute('DROP TYPE IF EXISTS filestatus')
