"""snapshot storage schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # users
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('snapshot_retention_count', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # api tokens
    op.create_table(
        'api_tokens',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('token_hash', sa.String(), nullable=False),
        sa.Column('scopes', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('token_hash', name='uq_api_tokens_token_hash'),
    )
    op.create_index('ix_api_tokens_user_id', 'api_tokens', ['user_id'])
    op.create_index('ix_api_tokens_name', 'api_tokens', ['name'])

    # bookmarks (snapshot-facing columns)
    op.create_table(
        'bookmark',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('owner_user_id', sa.String(), nullable=False),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('snapshot_retention_count', sa.Integer(), nullable=True),
        sa.Column('snapshot_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('has_snapshot', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('latest_snapshot_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_bookmark_owner_user_id', 'bookmark', ['owner_user_id'])
    op.create_index('ix_bookmark_deleted_at', 'bookmark', ['deleted_at'])

    # snapshots
    op.create_table(
        'snapshot',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('bookmark_id', sa.String(), sa.ForeignKey('bookmark.id', ondelete='CASCADE'), nullable=False),
        sa.Column('owner_user_id', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('is_latest', sa.Boolean(), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('storage_key', sa.Text(), nullable=False),
        sa.Column('storage_size', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('format', sa.String(length=8), nullable=False, server_default='v1'),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('source_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('image_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('bookmark_id', 'version', name='uq_snapshot_bookmark_version'),
    )
    op.create_index('ix_snapshot_bookmark_id', 'snapshot', ['bookmark_id'])
    op.create_index('ix_snapshot_owner_user_id', 'snapshot', ['owner_user_id'])
    op.create_index('ix_snapshot_is_latest', 'snapshot', ['is_latest'])
    op.create_index('ix_snapshot_content_hash', 'snapshot', ['content_hash'])
    op.create_index('ix_snapshot_created_at', 'snapshot', ['created_at'])

    # image dedup ledger
    op.create_table(
        'snapshot_image',
        sa.Column('hash', sa.String(length=64), primary_key=True, nullable=False),
        sa.Column('storage_key', sa.Text(), nullable=False),
        sa.Column('key_scheme', sa.String(length=8), nullable=False, server_default='v2'),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('owner_user_id', sa.String(), nullable=True),
        sa.Column('bookmark_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_snapshot_image_owner_user_id', 'snapshot_image', ['owner_user_id'])
    op.create_index('ix_snapshot_image_bookmark_id', 'snapshot_image', ['bookmark_id'])
    op.create_index('ix_snapshot_image_created_at', 'snapshot_image', ['created_at'])

    op.create_table(
        'snapshot_image_ref',
        sa.Column('snapshot_id', sa.String(), sa.ForeignKey('snapshot.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('image_hash', sa.String(length=64), sa.ForeignKey('snapshot_image.hash', ondelete='CASCADE'), primary_key=True),
    )
    op.create_index('ix_snapshot_image_ref_image_hash', 'snapshot_image_ref', ['image_hash'])

    # jobs
    op.create_table(
        'job',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('owner_user_id', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('available_at', sa.Float(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_job_status', 'job', ['status'])
    op.create_index('ix_job_owner_user_id', 'job', ['owner_user_id'])
    op.create_index('ix_job_available_at', 'job', ['available_at'])

    op.create_table(
        'job_schedule',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('schedule_name', sa.String(length=255), nullable=False, unique=True),
        sa.Column('job_type', sa.String(length=255), nullable=False),
        sa.Column('owner_user_id', sa.String(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('frequency', sa.String(length=255), nullable=False),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_job_id', sa.String(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )
    op.create_index('ix_job_schedule_job_type', 'job_schedule', ['job_type'])
    op.create_index('ix_job_schedule_owner_user_id', 'job_schedule', ['owner_user_id'])
    op.create_index('ix_job_schedule_next_run_at', 'job_schedule', ['next_run_at'])
    op.create_index('ix_job_schedule_is_active', 'job_schedule', ['is_active'])

    # audit log
    op.create_table(
        'audit_log',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('owner_user_id', sa.String(), nullable=True),
        sa.Column('actor_user_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_audit_log_entity_type', 'audit_log', ['entity_type'])
    op.create_index('ix_audit_log_entity_id', 'audit_log', ['entity_id'])
    op.create_index('ix_audit_log_action', 'audit_log', ['action'])
    op.create_index('ix_audit_log_owner_user_id', 'audit_log', ['owner_user_id'])
    op.create_index('ix_audit_log_actor_user_id', 'audit_log', ['actor_user_id'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('job_schedule')
    op.drop_table('job')
    op.drop_table('snapshot_image_ref')
    op.drop_table('snapshot_image')
    op.drop_table('snapshot')
    op.drop_table('bookmark')
    op.drop_table('api_tokens')
    op.drop_table('users')
