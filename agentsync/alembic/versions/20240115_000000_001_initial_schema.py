"""Initial coordination schema

Revision ID: 001
Revises:
Create Date: 2024-01-15 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')

ENUMS = {
    'task_kind': ('request', 'response', 'notification', 'handoff', 'sync'),
    'task_status': ('pending', 'claimed', 'in_progress', 'completed', 'failed', 'cancelled'),
    'verification_status': ('unverified', 'verified', 'failed'),
    'learning_type': ('pattern', 'anti_pattern', 'optimization', 'tool_usage', 'communication', 'error_recovery'),
    'submission_status': ('pending', 'approved', 'rejected', 'needs_revision'),
    'notification_type': ('new_capability', 'update', 'deprecation'),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name)


def upgrade() -> None:
    # Work queue
    op.create_table('tasks',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', sa.String(length=255), nullable=True),
        sa.Column('target', sa.String(length=255), nullable=True),
        sa.Column('kind', _enum('task_kind'), nullable=False),
        sa.Column('payload', JSON_DOCUMENT, nullable=False),
        sa.Column('status', _enum('task_status'), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('claimed_by', sa.String(length=255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('result', JSON_DOCUMENT, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tasks_claim_scan', 'tasks', ['status', sa.text('priority DESC'), 'created_at'], unique=False)
    op.create_index('ix_tasks_target_status', 'tasks', ['target', 'status'], unique=False)
    op.create_index('ix_tasks_source', 'tasks', ['source'], unique=False)

    # Checkpoint log
    op.create_table('checkpoints',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('owner_role', sa.String(length=100), nullable=False),
        sa.Column('session_key', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('state_snapshot', JSON_DOCUMENT, nullable=False),
        sa.Column('verification_status', _enum('verification_status'), nullable=False),
        sa.Column('verified_by', sa.String(length=255), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_key', 'sequence_number', name='uq_checkpoint_session_sequence')
    )
    op.create_index('ix_checkpoints_session_recency', 'checkpoints',
                    ['session_key', sa.text('sequence_number DESC')], unique=False)
    op.create_index('ix_checkpoints_verification_status', 'checkpoints', ['verification_status'], unique=False)

    op.create_table('checkpoint_sequences',
        sa.Column('session_key', sa.String(length=255), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('session_key')
    )

    # Versioned state
    op.create_table('state_entries',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('value', JSON_DOCUMENT, nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key', 'version', name='uq_state_key_version')
    )
    op.create_index('ix_state_entries_lookup', 'state_entries',
                    ['key', 'is_active', sa.text('version DESC')], unique=False)
    # At most one active version per key
    op.create_index('uq_state_entries_active_key', 'state_entries', ['key'], unique=True,
                    postgresql_where=sa.text('is_active'), sqlite_where=sa.text('is_active'))

    # Learnings and review
    op.create_table('learnings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('learning_type', _enum('learning_type'), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('trigger_condition', sa.Text(), nullable=True),
        sa.Column('recommended_action', sa.Text(), nullable=True),
        sa.Column('examples', JSON_DOCUMENT, nullable=True),
        sa.Column('effectiveness_score', sa.Integer(), nullable=False),
        sa.Column('discovered_by', sa.String(length=255), nullable=True),
        sa.Column('discovered_in_context', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_learnings_type_active', 'learnings', ['learning_type', 'is_active'], unique=False)
    op.create_index('ix_learnings_active_score', 'learnings',
                    ['is_active', sa.text('effectiveness_score DESC')], unique=False)

    op.create_table('learning_submissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('learning_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('submitted_by', sa.String(length=255), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('status', _enum('submission_status'), nullable=False),
        sa.Column('reviewer', sa.String(length=255), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('revision_count', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['learning_id'], ['learnings.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_submissions_status', 'learning_submissions', ['status', 'submitted_at'], unique=False)

    # Consumers and notifications
    op.create_table('consumers',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('consumer_id', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('current_canon_version', sa.Integer(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('auto_sync_enabled', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('consumer_id')
    )

    op.create_table('capability_notifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('consumer_id', sa.String(length=255), nullable=False),
        sa.Column('learning_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('notification_type', _enum('notification_type'), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('is_dismissed', sa.Boolean(), nullable=False),
        sa.Column('is_applied', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['learning_id'], ['learnings.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('consumer_id', 'learning_id', 'notification_type',
                            name='uq_notification_consumer_learning')
    )
    op.create_index('ix_notifications_consumer_unread', 'capability_notifications',
                    ['consumer_id', 'is_read', 'is_dismissed'], unique=False)

    op.create_table('canon_versions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('learnings_snapshot', JSON_DOCUMENT, nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('version_number')
    )


def downgrade() -> None:
    op.drop_table('canon_versions')
    op.drop_index('ix_notifications_consumer_unread', table_name='capability_notifications')
    op.drop_table('capability_notifications')
    op.drop_table('consumers')
    op.drop_index('ix_submissions_status', table_name='learning_submissions')
    op.drop_table('learning_submissions')
    op.drop_index('ix_learnings_active_score', table_name='learnings')
    op.drop_index('ix_learnings_type_active', table_name='learnings')
    op.drop_table('learnings')
    op.drop_index('uq_state_entries_active_key', table_name='state_entries')
    op.drop_index('ix_state_entries_lookup', table_name='state_entries')
    op.drop_table('state_entries')
    op.drop_table('checkpoint_sequences')
    op.drop_index('ix_checkpoints_verification_status', table_name='checkpoints')
    op.drop_index('ix_checkpoints_session_recency', table_name='checkpoints')
    op.drop_table('checkpoints')
    op.drop_index('ix_tasks_source', table_name='tasks')
    op.drop_index('ix_tasks_target_status', table_name='tasks')
    op.drop_index('ix_tasks_claim_scan', table_name='tasks')
    op.drop_table('tasks')

    # Enum types outlive their tables on PostgreSQL
    bind = op.get_bind()
    for name in ENUMS:
        _enum(name).drop(bind, checkfirst=True)
