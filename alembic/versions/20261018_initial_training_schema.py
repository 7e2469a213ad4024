"""Initial training schema: users, scenarios, assignments, sessions, transcripts, evaluations, flags

Revision ID: 20261018_initial_training
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial_training'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', sa.Enum('counselor', 'supervisor', name='userrole'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_users_id', 'users', ['id'], unique=False)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'scenarios',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('mode', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('evaluator_context', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['created_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scenarios_account_id', 'scenarios', ['account_id'], unique=False)

    op.create_table(
        'assignments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('scenario_id', sa.String(), nullable=False),
        sa.Column('counselor_id', sa.String(), nullable=False),
        sa.Column('assigned_by', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('supervisor_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['scenario_id'], ['scenarios.id']),
        sa.ForeignKeyConstraint(['counselor_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['assigned_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_assignments_account_id', 'assignments', ['account_id'], unique=False)
    op.create_index('ix_assignments_counselor_status', 'assignments', ['counselor_id', 'status'], unique=False)
    # One open assignment per (counselor, scenario); completed rows are history
    op.create_index(
        'uq_active_assignment', 'assignments', ['counselor_id', 'scenario_id'], unique=True,
        postgresql_where=sa.text("status != 'completed'"),
        sqlite_where=sa.text("status != 'completed'"),
    )

    op.create_table(
        'sessions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('assignment_id', sa.String(), nullable=True),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('scenario_id', sa.String(), nullable=True),
        sa.Column('model_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('current_attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['assignment_id'], ['assignments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['scenario_id'], ['scenarios.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('assignment_id', name='sessions_assignment_id_key')
    )
    op.create_index('ix_sessions_user_id', 'sessions', ['user_id'], unique=False)

    op.create_table(
        'transcript_turns',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('turn_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id', 'attempt_number', 'turn_order', name='uq_transcript_turn_order')
    )
    op.create_index(
        'ix_transcript_turns_session_attempt', 'transcript_turns', ['session_id', 'attempt_number'], unique=False
    )

    op.create_table(
        'evaluations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('assignment_id', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('overall_score', sa.Float(), nullable=False),
        sa.Column('feedback_json', sa.Text(), nullable=False),
        sa.Column('strengths', sa.Text(), nullable=False),
        sa.Column('areas_to_improve', sa.Text(), nullable=False),
        sa.Column('raw_response', sa.Text(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['assignment_id'], ['assignments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['session_id'], ['sessions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('assignment_id', name='evaluations_assignment_id_key'),
        sa.UniqueConstraint('session_id', name='evaluations_session_id_key'),
        sa.CheckConstraint(
            "(assignment_id IS NOT NULL AND session_id IS NULL) OR "
            "(assignment_id IS NULL AND session_id IS NOT NULL)",
            name='ck_evaluation_single_parent'
        )
    )

    op.create_table(
        'session_flags',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('details', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('source', sa.String(), nullable=False, server_default='evaluation'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_session_flags_session_id', 'session_flags', ['session_id'], unique=False)
    op.create_index('ix_session_flags_status_severity', 'session_flags', ['status', 'severity'], unique=False)
    op.create_index('ix_session_flags_session_source', 'session_flags', ['session_id', 'source'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_session_flags_session_source', table_name='session_flags')
    op.drop_index('ix_session_flags_status_severity', table_name='session_flags')
    op.drop_index('ix_session_flags_session_id', table_name='session_flags')
    op.drop_table('session_flags')
    op.drop_table('evaluations')
    op.drop_index('ix_transcript_turns_session_attempt', table_name='transcript_turns')
    op.drop_table('transcript_turns')
    op.drop_index('ix_sessions_user_id', table_name='sessions')
    op.drop_table('sessions')
    op.drop_index('uq_active_assignment', table_name='assignments')
    op.drop_index('ix_assignments_counselor_status', table_name='assignments')
    op.drop_index('ix_assignments_account_id', table_name='assignments')
    op.drop_table('assignments')
    op.drop_index('ix_scenarios_account_id', table_name='scenarios')
    op.drop_table('scenarios')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')
    op.execute('DROP TYPE IF EXISTS userrole')
