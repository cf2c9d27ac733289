"""Create publishing tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables may already exist if they were created by Base.metadata.create_all
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'contents' not in existing_tables:
        op.create_table(
            'contents',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('object_key', sa.String(length=512), nullable=False),
            sa.Column('filename', sa.String(length=255), nullable=False),
            sa.Column('content_type', sa.String(length=100), nullable=False, server_default='video/mp4'),
            sa.Column('file_size_bytes', sa.BigInteger(), nullable=True),
            sa.Column('title', sa.Text(), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('caption', sa.Text(), nullable=True),
            sa.Column('tags', sa.JSON(), nullable=True),
            sa.Column('cover_url', sa.String(length=1024), nullable=True),
            sa.Column('privacy_status', sa.String(length=20), nullable=False, server_default='public'),
            sa.Column('platform_options', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_contents_id', 'contents', ['id'])
        op.create_index('ix_contents_user_id', 'contents', ['user_id'])

    if 'platform_connections' not in existing_tables:
        op.create_table(
            'platform_connections',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('platform', sa.String(length=50), nullable=False),
            sa.Column('connected', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('account_id', sa.String(length=255), nullable=True),
            sa.Column('account_name', sa.String(length=255), nullable=True),
            sa.Column('account_handle', sa.String(length=255), nullable=True),
            sa.Column('access_token', sa.Text(), nullable=True),
            sa.Column('refresh_token', sa.Text(), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('scopes', sa.JSON(), nullable=True),
            sa.Column('extra_data', sa.JSON(), nullable=True),
            sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'platform', name='uq_platform_connections_user_platform')
        )
        op.create_index('ix_platform_connections_id', 'platform_connections', ['id'])
        op.create_index('ix_platform_connections_user_id', 'platform_connections', ['user_id'])

    if 'scheduled_jobs' not in existing_tables:
        op.create_table(
            'scheduled_jobs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('content_id', sa.Integer(), sa.ForeignKey('contents.id', ondelete='CASCADE'), nullable=False),
            sa.Column('platforms', sa.JSON(), nullable=False),
            sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='scheduled'),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resubmitted_from_id', sa.Integer(),
                      sa.ForeignKey('scheduled_jobs.id', ondelete='SET NULL'), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_scheduled_jobs_id', 'scheduled_jobs', ['id'])
        op.create_index('ix_scheduled_jobs_user_id', 'scheduled_jobs', ['user_id'])
        op.create_index('ix_scheduled_jobs_content_id', 'scheduled_jobs', ['content_id'])
        op.create_index('ix_scheduled_jobs_status_scheduled_for', 'scheduled_jobs', ['status', 'scheduled_for'])

    if 'publish_attempts' not in existing_tables:
        op.create_table(
            'publish_attempts',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('job_id', sa.Integer(), sa.ForeignKey('scheduled_jobs.id', ondelete='CASCADE'), nullable=False),
            sa.Column('platform', sa.String(length=50), nullable=False),
            sa.Column('success', sa.Boolean(), nullable=False),
            sa.Column('external_id', sa.String(length=255), nullable=True),
            sa.Column('url', sa.String(length=1024), nullable=True),
            sa.Column('error_type', sa.String(length=100), nullable=True),
            sa.Column('error_detail', sa.Text(), nullable=True),
            sa.Column('retryable', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('reconnect_required', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('job_id', 'platform', name='uq_publish_attempts_job_platform')
        )
        op.create_index('ix_publish_attempts_id', 'publish_attempts', ['id'])
        op.create_index('ix_publish_attempts_job_id', 'publish_attempts', ['job_id'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    # Reverse dependency order
    for table in ('publish_attempts', 'scheduled_jobs', 'platform_connections', 'contents', 'users'):
        if table in existing_tables:
            op.drop_table(table)
