from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_pipeline_schema'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_CANARY = "status IN ('ready', 'running')"


def upgrade():
    op.create_table(
        'telemetry',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('device_id', sa.String(128), nullable=False, index=True),
        sa.Column('user_id', sa.String(128), index=True),
        sa.Column('architecture', sa.String(32), nullable=False, index=True),
        sa.Column('memory_gb', sa.Float, nullable=False),
        sa.Column('core_count', sa.Integer),
        sa.Column('optimization_strategy', sa.String(64), nullable=False, index=True),
        sa.Column('target_app', sa.String(128), index=True),
        sa.Column('memory_freed_mb', sa.Float, nullable=False),
        sa.Column('speed_gain_percent', sa.Float, nullable=False),
        sa.Column('effectiveness_score', sa.Float, nullable=False),
        sa.Column('time_of_day', sa.Integer),
        sa.Column('day_of_week', sa.Integer),
        sa.Column('memory_pressure', sa.Float),
        sa.Column('cpu_usage', sa.Float),
        sa.Column('app_optimizations', sa.JSON, nullable=False),
        sa.Column('system_state_before', sa.JSON),
        sa.Column('system_state_after', sa.JSON),
        sa.Column('errors', sa.JSON, nullable=False),
        sa.Column('score_before', sa.Float),
        sa.Column('score_after', sa.Float),
        sa.Column('score_estimated', sa.Boolean, nullable=False),
        sa.Column('validation_confidence', sa.Float),
        sa.Column('validation_passed', sa.Boolean, nullable=False),
        sa.Column('low_trust', sa.Boolean, nullable=False, index=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_index('ix_telemetry_strategy_created', 'telemetry', ['optimization_strategy', 'created_at'])

    op.create_table(
        'aggregated_intelligence',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('intelligence_type', sa.String(32), nullable=False, index=True),
        sa.Column('intelligence_key', sa.String(128), nullable=False, index=True),
        sa.Column('version', sa.String(32), nullable=False, index=True),
        sa.Column('intelligence_data', sa.JSON, nullable=False),
        sa.Column('confidence_score', sa.Float, nullable=False),
        sa.Column('sample_size', sa.Integer, nullable=False),
        sa.Column('last_calculated_at', sa.DateTime, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False, index=True),
        sa.UniqueConstraint('intelligence_type', 'intelligence_key', 'version', name='uq_intelligence_type_key_version'),
    )

    op.create_table(
        'strategy_updates',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('app_id', sa.String(128), nullable=False, index=True),
        sa.Column('strategy_type', sa.String(64), nullable=False, index=True),
        sa.Column('update_type', sa.String(64), nullable=False),
        sa.Column('version', sa.String(64), nullable=False),
        sa.Column('base_strategy_version', sa.String(64), nullable=False),
        sa.Column('update_data', sa.JSON, nullable=False),
        sa.Column('estimated_impact', sa.JSON, nullable=False),
        sa.Column('sample_size', sa.Integer, nullable=False),
        sa.Column('confidence_score', sa.Float, nullable=False),
        sa.Column('statistical_significance', sa.Boolean, nullable=False),
        sa.Column('consistency_period_days', sa.Integer),
        sa.Column('risk_level', sa.String(16), nullable=False),
        sa.Column('safety_score', sa.Float, nullable=False),
        sa.Column('potential_issues', sa.JSON, nullable=False),
        sa.Column('status', sa.String(16), nullable=False, index=True),
        sa.Column('reviewed_by', sa.String(128)),
        sa.Column('reviewed_at', sa.DateTime),
        sa.Column('approval_notes', sa.Text),
        sa.Column('supersedes_update_id', sa.Integer, sa.ForeignKey('strategy_updates.id')),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('app_id', 'strategy_type', 'version', name='uq_strategy_update_version'),
    )

    op.create_table(
        'ab_tests',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('strategy_update_id', sa.Integer, sa.ForeignKey('strategy_updates.id'), nullable=False, index=True),
        sa.Column('test_name', sa.String(256), nullable=False),
        sa.Column('test_description', sa.Text),
        sa.Column('deployment_phase', sa.String(16), nullable=False),
        sa.Column('rollout_phases', sa.JSON, nullable=False),
        sa.Column('current_phase', sa.Integer, nullable=False),
        sa.Column('user_percentage', sa.Float, nullable=False),
        sa.Column('phase_duration_hours', sa.Integer, nullable=False),
        sa.Column('success_thresholds', sa.JSON, nullable=False),
        sa.Column('rollback_triggers', sa.JSON, nullable=False),
        sa.Column('status', sa.String(16), nullable=False, index=True),
        sa.Column('results', sa.JSON),
        sa.Column('conclusion', sa.String(32)),
        sa.Column('started_at', sa.DateTime),
        sa.Column('ended_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index(
        'uq_ab_tests_active_update', 'ab_tests', ['strategy_update_id'], unique=True,
        sqlite_where=sa.text(ACTIVE_CANARY), postgresql_where=sa.text(ACTIVE_CANARY),
    )

    op.create_table(
        'deployment_logs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('strategy_update_id', sa.Integer, sa.ForeignKey('strategy_updates.id'), nullable=False, index=True),
        sa.Column('ab_test_id', sa.Integer, sa.ForeignKey('ab_tests.id')),
        sa.Column('log_level', sa.String(16), nullable=False),
        sa.Column('log_message', sa.Text, nullable=False),
        sa.Column('log_data', sa.JSON, nullable=False),
        sa.Column('deployment_phase', sa.String(32)),
        sa.Column('user_percentage', sa.Float),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )

    op.create_table(
        'supported_apps',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('app_id', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('app_name', sa.String(256), nullable=False),
        sa.Column('user_count', sa.Integer, nullable=False),
        sa.Column('avg_memory_usage_mb', sa.Float, nullable=False),
        sa.Column('support_level', sa.String(16), nullable=False),
        sa.Column('strategies_available', sa.JSON, nullable=False),
        sa.Column('created_by', sa.String(128)),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )


def downgrade():
    op.drop_table('supported_apps')
    op.drop_table('deployment_logs')
    op.drop_index('uq_ab_tests_active_update', table_name='ab_tests')
    op.drop_table('ab_tests')
    op.drop_table('strategy_updates')
    op.drop_table('aggregated_intelligence')
    op.drop_index('ix_telemetry_strategy_created', table_name='telemetry')
    op.drop_table('telemetry')
