"""Initial SongStudio schema

Revision ID: a1c4e2f7b903
Revises: 
Create Date: 2026-10-19 10:12:31.418207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision: str = 'a1c4e2f7b903'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create projects table
    op.create_table(
        'projects',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('song_name', sa.String(255), nullable=False, server_default='פרויקט חדש'),
        sa.Column('project_type', sa.String(20), nullable=True),
        sa.Column('playback_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('current_stage', sa.String(50), nullable=True),
        sa.Column('verses', JSONB, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()'))
    )

    # Create recordings table
    op.create_table(
        'recordings',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True),
        sa.Column('song_name', sa.String(255), nullable=False),
        sa.Column('audio_url', sa.Text, nullable=False),
        sa.Column('duration', sa.String(16), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()'))
    )

    # Create provider_jobs table
    op.create_table(
        'provider_jobs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('job_id', sa.String(255), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('role', sa.String(50), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='processing'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('input_parameters', JSONB, nullable=True),
        sa.Column('output_url', sa.Text, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True)
    )

    # Create indexes
    op.create_index('ix_projects_user_id', 'projects', ['user_id'])
    op.create_index('ix_projects_user_status', 'projects', ['user_id', 'status', 'updated_at'])
    op.create_index('ix_recordings_user_id', 'recordings', ['user_id'])
    op.create_index('ix_recordings_project_id', 'recordings', ['project_id'])
    op.create_index('ix_provider_jobs_job_id', 'provider_jobs', ['provider', 'job_id'], unique=True)
    op.create_index('ix_provider_jobs_project_role', 'provider_jobs', ['project_id', 'role'])


def downgrade() -> None:
    op.drop_index('ix_provider_jobs_project_role')
    op.drop_index('ix_provider_jobs_job_id')
    op.drop_index('ix_recordings_project_id')
    op.drop_index('ix_recordings_user_id')
    op.drop_index('ix_projects_user_status')
    op.drop_index('ix_projects_user_id')

    op.drop_table('provider_jobs')
    op.drop_table('recordings')
    op.drop_table('projects')
