"""Continuous case analysis and conversation summaries

Revision ID: 0002_case_analysis
Revises: 0001_initial_schema
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0002_case_analysis'
down_revision: Union[str, None] = '0001_initial_schema'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', sa.String(36), primary_key=True)


def _user_fk(unique: bool = False):
    return sa.Column(
        'user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=unique
    )


def _file_fk(name: str, nullable: bool = False, ondelete: str = 'CASCADE'):
    return sa.Column(
        name, sa.String(36), sa.ForeignKey('evidence_files.id', ondelete=ondelete), nullable=nullable
    )


def _timestamp(name: str, nullable: bool = True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create the legal strategy, pattern, relationship, history and conversation summary tables."""

    op.create_table(
        'legal_strategy',
        _id(),
        _user_fk(unique=True),
        sa.Column('case_strength_overall', sa.Float, default=0.0),
        sa.Column('strengths', sa.JSON, nullable=True),
        sa.Column('weaknesses', sa.JSON, nullable=True),
        sa.Column('evidence_gaps', sa.JSON, nullable=True),
        sa.Column('opposing_arguments', sa.JSON, nullable=True),
        sa.Column('next_steps', sa.JSON, nullable=True),
        sa.Column('legal_elements_status', sa.JSON, nullable=True),
        _timestamp('updated_at'),
    )

    op.create_table(
        'case_patterns',
        _id(),
        _user_fk(),
        sa.Column('pattern_type', sa.String(100), nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('pattern_strength', sa.Float, default=0.5),
        sa.Column('evidence_files', sa.JSON, nullable=True),
        sa.Column('legal_significance', sa.Text, nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_case_patterns_user_id', 'case_patterns', ['user_id'])

    op.create_table(
        'evidence_relationships',
        _id(),
        _user_fk(),
        _file_fk('source_file_id'),
        _file_fk('target_file_id'),
        sa.Column('relationship_type', sa.String(30), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('confidence', sa.Float, default=0.8),
        _timestamp('created_at'),
    )
    op.create_index('ix_evidence_relationships_user_id', 'evidence_relationships', ['user_id'])
    op.create_index('ix_evidence_relationships_source_file_id', 'evidence_relationships', ['source_file_id'])
    op.create_index('ix_evidence_relationships_target_file_id', 'evidence_relationships', ['target_file_id'])

    op.create_table(
        'case_analysis_history',
        _id(),
        _user_fk(),
        _file_fk('trigger_file_id', nullable=True, ondelete='SET NULL'),
        sa.Column('analysis_type', sa.String(40), nullable=False),
        sa.Column('previous_state', sa.JSON, nullable=True),
        sa.Column('new_state', sa.JSON, nullable=True),
        sa.Column('key_insights', sa.JSON, nullable=True),
        sa.Column('case_strength_change', sa.Float, default=0.0),
        _timestamp('created_at'),
    )
    op.create_index('ix_case_analysis_history_user_id', 'case_analysis_history', ['user_id'])
    op.create_index('ix_case_analysis_history_created_at', 'case_analysis_history', ['created_at'])

    op.create_table(
        'conversation_analysis',
        _id(),
        _user_fk(unique=True),
        sa.Column('analysis_data', sa.JSON, nullable=True),
        sa.Column('conversation_length', sa.Integer, default=0),
        _timestamp('analyzed_at'),
    )


def downgrade() -> None:
    """Drop the tables added by this revision."""
    for table in (
        'conversation_analysis',
        'case_analysis_history',
        'evidence_relationships',
        'case_patterns',
        'legal_strategy',
    ):
        op.drop_table(table)
