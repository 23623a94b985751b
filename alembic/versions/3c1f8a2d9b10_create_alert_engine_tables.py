"""create_alert_engine_tables

Revision ID: 3c1f8a2d9b10
Revises:
Create Date: 2026-10-18 09:12:41.208315

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1f8a2d9b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Authored rule definitions (read-only for the engine)
    op.create_table(
        'alert_rules',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('definition', sa.JSON(), nullable=False),
        sa.Column('condition_preset_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_alert_rules_id', 'alert_rules', ['id'])
    op.create_index('ix_alert_rules_condition_preset_id', 'alert_rules', ['condition_preset_id'])
    op.create_index('idx_alert_rule_active', 'alert_rules', ['is_active'])

    op.create_table(
        'enrollments',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('patient_id', sa.String(), nullable=False),
        sa.Column('clinician_id', sa.String(), nullable=True),
        sa.Column('condition_preset_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), default='ACTIVE'),  # ACTIVE, PAUSED, ENDED
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_enrollments_id', 'enrollments', ['id'])
    op.create_index('ix_enrollments_patient_id', 'enrollments', ['patient_id'])
    op.create_index('ix_enrollments_condition_preset_id', 'enrollments', ['condition_preset_id'])

    op.create_table(
        'metric_observations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('enrollment_id', sa.String(), nullable=False),
        sa.Column('metric_key', sa.String(), nullable=False),
        sa.Column('value_numeric', sa.Float(), nullable=True),
        sa.Column('value_text', sa.String(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_metric_observations_enrollment_id', 'metric_observations', ['enrollment_id'])
    op.create_index('ix_metric_observations_metric_key', 'metric_observations', ['metric_key'])
    op.create_index('idx_observation_lookup', 'metric_observations', ['enrollment_id', 'metric_key', 'recorded_at'])

    op.create_table(
        'care_team_contacts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('enrollment_id', sa.String(), nullable=True),  # NULL = organisation-wide
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
    )
    op.create_index('ix_care_team_contacts_enrollment_id', 'care_team_contacts', ['enrollment_id'])

    op.create_table(
        'alert_instances',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('rule_id', sa.String(), nullable=False),
        sa.Column('enrollment_id', sa.String(), nullable=False),
        sa.Column('patient_id', sa.String(), nullable=True),
        sa.Column('metric_key', sa.String(), nullable=True),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, default='PENDING'),

        # Dedupe: active_dedupe_key is set only while the instance is open
        sa.Column('dedupe_key', sa.String(), nullable=False),
        sa.Column('active_dedupe_key', sa.String(), nullable=True, unique=True),

        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('evidence', sa.JSON(), nullable=True),
        sa.Column('notify_roles', sa.JSON(), nullable=True),
        sa.Column('escalation_enabled', sa.Boolean(), default=True),
        sa.Column('auto_resolve', sa.Boolean(), default=False),
        sa.Column('reminder', sa.Boolean(), default=False),

        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=False),
        sa.Column('trigger_count', sa.Integer(), default=1),
        sa.Column('sla_breach_time', sa.DateTime(), nullable=True),

        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged_by', sa.String(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),

        sa.Column('snooze_until', sa.DateTime(), nullable=True),
        sa.Column('snoozed_from_status', sa.String(), nullable=True),

        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        sa.Column('escalation_level', sa.Integer(), default=0),

        sa.Column('cleared_since', sa.DateTime(), nullable=True),
        sa.Column('superseded_by', sa.String(), nullable=True),
    )
    op.create_index('ix_alert_instances_id', 'alert_instances', ['id'])
    op.create_index('ix_alert_instances_rule_id', 'alert_instances', ['rule_id'])
    op.create_index('ix_alert_instances_enrollment_id', 'alert_instances', ['enrollment_id'])
    op.create_index('ix_alert_instances_dedupe_key', 'alert_instances', ['dedupe_key'])
    op.create_index('idx_alert_instance_status', 'alert_instances', ['status'])
    op.create_index('idx_alert_instance_sla', 'alert_instances', ['status', 'sla_breach_time'])

    op.create_table(
        'alert_audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('alert_instance_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=True),
        sa.Column('actor', sa.String(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_alert_audit_log_alert_instance_id', 'alert_audit_log', ['alert_instance_id'])

    op.create_table(
        'notification_delivery_log',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('alert_instance_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('recipient_role', sa.String(), nullable=True),
        sa.Column('recipient_id', sa.String(), nullable=True),
        sa.Column('success', sa.Boolean(), default=False),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), default=0),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notification_delivery_log_alert_instance_id', 'notification_delivery_log', ['alert_instance_id'])


def downgrade():
    op.drop_table('notification_delivery_log')
    op.drop_table('alert_audit_log')
    op.drop_table('alert_instances')
    op.drop_table('care_team_contacts')
    op.drop_table('metric_observations')
    op.drop_table('enrollments')
    op.drop_table('alert_rules')
