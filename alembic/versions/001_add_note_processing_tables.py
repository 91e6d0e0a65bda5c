"""Add notes, rate_limit_windows and project_knowledge tables.

Revision ID: 001_note_processing
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_note_processing'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # Notes with their processing lease
    op.create_table(
        'notes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('audio_url', sa.String(1000), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(), nullable=True),
        # Results
        sa.Column('transcription', sa.Text(), nullable=True),
        sa.Column('analysis', postgresql.JSONB(), nullable=True),
        # Lease and errors
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.current_timestamp()),
    )
    op.create_index('ix_notes_user_id', 'notes', ['user_id'])

    # Batch selection scans unprocessed notes by creation time
    op.create_index(
        'ix_notes_unprocessed', 'notes', ['created_at'],
        postgresql_where=sa.text('processed_at IS NULL'),
    )

    # Shared sliding windows for admission control
    op.create_table(
        'rate_limit_windows',
        sa.Column('service_name', sa.String(50), primary_key=True),
        sa.Column('requests', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.current_timestamp()),
    )

    # Per-user knowledge context
    op.create_table(
        'project_knowledge',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('content', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.current_timestamp()),
    )


def downgrade() -> None:
    op.drop_table('project_knowledge')
    op.drop_table('rate_limit_windows')
    op.drop_index('ix_notes_unprocessed', table_name='notes')
    op.drop_index('ix_notes_user_id', table_name='notes')
    op.drop_table('notes')
