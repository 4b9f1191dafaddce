"""Initial CaseCompass schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', sa.String(36), primary_key=True)


def _user_fk(nullable: bool = False):
    return sa.Column(
        'user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=nullable
    )


def _timestamp(name: str, nullable: bool = True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create users, evidence, timeline, legal, case memory and message tables."""

    # Users & sessions
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(255), nullable=True, unique=True),
        sa.Column('display_name', sa.String(100), nullable=True),
        _timestamp('created_at'),
        _timestamp('last_login'),
    )
    op.create_table(
        'auth_sessions',
        _id(),
        _user_fk(),
        sa.Column('token_hash', sa.String(64), nullable=False),
        _timestamp('created_at'),
        _timestamp('expires_at', nullable=False),
        _timestamp('last_activity'),
        sa.Column('revoked', sa.Boolean, default=False),
    )
    op.create_index('ix_auth_sessions_user_id', 'auth_sessions', ['user_id'])
    op.create_index('ix_auth_sessions_token_hash', 'auth_sessions', ['token_hash'], unique=True)

    # Evidence files & chunks
    op.create_table(
        'evidence_files',
        _id(),
        _user_fk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('storage_path', sa.String(500), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=True),
        sa.Column('size', sa.Integer, nullable=True),
        sa.Column('sha256', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), default='uploaded'),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('auto_category', sa.String(50), nullable=True),
        sa.Column('tags', sa.JSON, nullable=True),
        sa.Column('meta', sa.JSON, nullable=True),
        sa.Column('file_summary', sa.Text, nullable=True),
        sa.Column('section_summaries', sa.JSON, nullable=True),
        sa.Column('exhibit_code', sa.String(10), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.UniqueConstraint('user_id', 'storage_path', name='uq_evidence_user_path'),
    )
    op.create_index('ix_evidence_files_user_id', 'evidence_files', ['user_id'])
    op.create_index('ix_evidence_files_status', 'evidence_files', ['status'])
    op.create_index('ix_evidence_files_created_at', 'evidence_files', ['created_at'])

    op.create_table(
        'chunks',
        _id(),
        sa.Column('file_id', sa.String(36), sa.ForeignKey('evidence_files.id', ondelete='CASCADE'), nullable=False),
        sa.Column('seq', sa.Integer, nullable=False),
        sa.Column('text', sa.Text, nullable=False),
        sa.Column('meta', sa.JSON, nullable=True),
        sa.Column('embedding', sa.JSON, nullable=True),  # list of floats
        _timestamp('created_at'),
    )
    op.create_index('ix_chunks_file_id', 'chunks', ['file_id'])

    # Timeline
    op.create_table(
        'timeline_events',
        _id(),
        _user_fk(),
        sa.Column('file_id', sa.String(36), sa.ForeignKey('evidence_files.id', ondelete='CASCADE'), nullable=True),
        sa.Column('chunk_id', sa.String(36), sa.ForeignKey('chunks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_date', sa.Date, nullable=False),
        sa.Column('event_time', sa.String(8), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('context', sa.Text, nullable=True),
        sa.Column('category', sa.String(30), default='other'),
        sa.Column('confidence', sa.Float, default=0.5),
        sa.Column('verified', sa.Boolean, default=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('ix_timeline_events_user_id', 'timeline_events', ['user_id'])
    op.create_index('ix_timeline_events_file_id', 'timeline_events', ['file_id'])
    op.create_index('ix_timeline_events_event_date', 'timeline_events', ['event_date'])

    # Legal analysis
    op.create_table(
        'evidence_analyses',
        _id(),
        _user_fk(),
        sa.Column('file_id', sa.String(36), sa.ForeignKey('evidence_files.id', ondelete='CASCADE'), nullable=False),
        sa.Column('analysis_type', sa.String(40), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('legal_concepts', sa.JSON, nullable=True),
        sa.Column('confidence_score', sa.Float, nullable=True),
        sa.Column('relevant_citations', sa.JSON, nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_evidence_analyses_user_id', 'evidence_analyses', ['user_id'])
    op.create_index('ix_evidence_analyses_file_id', 'evidence_analyses', ['file_id'])
    op.create_index('ix_evidence_analyses_created_at', 'evidence_analyses', ['created_at'])

    op.create_table(
        'legal_sections',
        _id(),
        _user_fk(nullable=True),  # NULL for the shared library
        sa.Column('jurisdiction', sa.String(20), default='NSW'),
        sa.Column('act_title', sa.String(255), nullable=True),
        sa.Column('section_number', sa.String(30), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('citation_format', sa.String(255), nullable=True),
        sa.Column('legal_concepts', sa.JSON, nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_legal_sections_user_id', 'legal_sections', ['user_id'])
    op.create_index('ix_legal_sections_jurisdiction', 'legal_sections', ['jurisdiction'])

    op.create_table(
        'evidence_legal_connections',
        _id(),
        _user_fk(),
        sa.Column(
            'evidence_file_id', sa.String(36),
            sa.ForeignKey('evidence_files.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column(
            'legal_section_id', sa.String(36),
            sa.ForeignKey('legal_sections.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('connection_type', sa.String(20), nullable=False),
        sa.Column('relevance_score', sa.Float, nullable=False),
        sa.Column('explanation', sa.Text, nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_evidence_legal_connections_user_id', 'evidence_legal_connections', ['user_id'])
    op.create_index(
        'ix_evidence_legal_connections_evidence_file_id', 'evidence_legal_connections', ['evidence_file_id']
    )

    op.create_table(
        'legal_search_cache',
        _id(),
        sa.Column('query_hash', sa.String(64), nullable=False),
        sa.Column('query_text', sa.Text, nullable=False),
        sa.Column('search_type', sa.String(20), nullable=False),
        sa.Column('results', sa.JSON, nullable=True),
        sa.Column('hit_count', sa.Integer, default=0),
        _timestamp('last_accessed'),
        _timestamp('created_at'),
    )
    op.create_index('ix_legal_search_cache_query_hash', 'legal_search_cache', ['query_hash'], unique=True)

    # Case memory & planning
    op.create_table(
        'case_memory',
        _id(),
        sa.Column(
            'user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False, unique=True,
        ),
        sa.Column('primary_goal', sa.Text, nullable=True),
        sa.Column('goal_status', sa.String(20), nullable=True),
        _timestamp('goal_established_at'),
        sa.Column('active_case_plan_id', sa.String(36), nullable=True),
        sa.Column('evidence_index', sa.JSON, nullable=True),
        sa.Column('case_strength_score', sa.Float, nullable=True),
        sa.Column('case_strength_reasons', sa.JSON, nullable=True),
        sa.Column('thread_summary', sa.Text, nullable=True),
        sa.Column('timeline_summary', sa.JSON, nullable=True),
        sa.Column('parties', sa.JSON, nullable=True),
        sa.Column('issues', sa.JSON, nullable=True),
        sa.Column('facts', sa.Text, nullable=True),
        sa.Column('last_activity_type', sa.String(50), nullable=True),
        _timestamp('last_updated_at'),
    )

    op.create_table(
        'case_plans',
        _id(),
        _user_fk(),
        sa.Column('primary_goal', sa.Text, nullable=False),
        sa.Column('case_type', sa.String(50), nullable=True),
        sa.Column('milestones', sa.JSON, nullable=True),
        sa.Column('current_milestone_index', sa.Integer, default=0),
        sa.Column('overall_progress_percentage', sa.Integer, default=0),
        sa.Column('urgency_level', sa.String(20), default='normal'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('ix_case_plans_user_id', 'case_plans', ['user_id'])

    op.create_table(
        'milestone_progress',
        _id(),
        sa.Column(
            'case_plan_id', sa.String(36), sa.ForeignKey('case_plans.id', ondelete='CASCADE'), nullable=False
        ),
        sa.Column('milestone_index', sa.Integer, nullable=False),
        sa.Column('status', sa.String(20), default='not_started'),
        sa.Column('completion_percentage', sa.Integer, default=0),
        sa.Column('evidence_collected', sa.JSON, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        _timestamp('completed_at'),
        _timestamp('updated_at'),
    )
    op.create_index('ix_milestone_progress_case_plan_id', 'milestone_progress', ['case_plan_id'])

    # Assistant messages
    op.create_table(
        'messages',
        _id(),
        _user_fk(),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('citations', sa.JSON, nullable=True),
        sa.Column('meta', sa.JSON, nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_messages_user_id', 'messages', ['user_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])


def downgrade() -> None:
    """Drop all CaseCompass tables."""
    for table in (
        'messages',
        'milestone_progress',
        'case_plans',
        'case_memory',
        'legal_search_cache',
        'evidence_legal_connections',
        'legal_sections',
        'evidence_analyses',
        'timeline_events',
        'chunks',
        'evidence_files',
        'auth_sessions',
        'users',
    ):
        op.drop_table(table)
