"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates the correlated employee identity table, the six evidence tables and
the integrations/assets/policies tables they reference.
For databases where those three already exist, create the remaining tables
by hand and run `alembic stamp 001_initial`.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _employee_fk():
    return sa.Column(
        'correlated_employee_id', sa.Uuid(),
        sa.ForeignKey('correlated_employees.id', ondelete='CASCADE'),
        nullable=False
    )


def _index(table: str, *columns: str) -> None:
    for column in columns:
        op.create_index(f'ix_{table}_{column}', table, [column])


def upgrade() -> None:
    """Create initial database schema."""

    # Referenced entities owned by other subsystems
    op.create_table(
        'integrations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    _index('integrations', 'organization_id')

    op.create_table(
        'assets',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('asset_type', sa.String(100)),
        sa.Column('external_id', sa.String(255)),
        sa.Column('serial_number', sa.String(255)),
        *_timestamps(),
    )
    _index('assets', 'organization_id', 'external_id', 'serial_number')

    op.create_table(
        'policies',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('category', sa.String(100)),
        *_timestamps(),
    )
    _index('policies', 'organization_id')

    # Canonical identity, one row per (organization, email)
    op.create_table(
        'correlated_employees',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('source_integration_id', sa.Uuid()),
        sa.Column('external_id', sa.String(255)),
        sa.Column('first_name', sa.String(255)),
        sa.Column('last_name', sa.String(255)),
        sa.Column('department', sa.String(255)),
        sa.Column('job_title', sa.String(255)),
        sa.Column('manager_email', sa.String(255)),
        sa.Column('hire_date', sa.DateTime(timezone=True)),
        sa.Column('employment_status', sa.String(50)),
        sa.Column('employment_type', sa.String(50)),
        sa.Column('location', sa.String(255)),
        sa.Column('compliance_score', sa.Integer()),
        sa.Column('compliance_issues', JSON_TYPE),
        sa.Column('last_correlated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'email', name='uq_correlated_employee_org_email'),
        sa.CheckConstraint(
            'compliance_score IS NULL OR (compliance_score >= 0 AND compliance_score <= 100)',
            name='ck_correlated_employee_score_range'
        ),
    )
    _index('correlated_employees', 'organization_id', 'email', 'department', 'employment_status')
    op.create_index('ix_correlated_employee_org_status', 'correlated_employees',
                    ['organization_id', 'employment_status'])

    # Evidence tables
    op.create_table(
        'employee_background_checks',
        sa.Column('id', sa.Uuid(), primary_key=True),
        _employee_fk(),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('check_type', sa.String(100)),
        sa.Column('initiated_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('raw_data', JSON_TYPE),
        *_timestamps(),
        sa.UniqueConstraint('correlated_employee_id', 'integration_id', 'external_id',
                            name='uq_background_check_employee_integration_external'),
    )
    _index('employee_background_checks', 'correlated_employee_id', 'status', 'expires_at')

    op.create_table(
        'employee_training_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        _employee_fk(),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(255)),
        sa.Column('course_name', sa.String(500), nullable=False),
        sa.Column('course_type', sa.String(100)),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True)),
        sa.Column('due_date', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('score', sa.Float()),
        sa.Column('raw_data', JSON_TYPE),
        *_timestamps(),
    )
    _index('employee_training_records', 'correlated_employee_id', 'status', 'due_date')

    op.create_table(
        'employee_asset_assignments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        _employee_fk(),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('asset_id', sa.Uuid(), sa.ForeignKey('assets.id', ondelete='SET NULL')),
        sa.Column('external_asset_id', sa.String(255), nullable=False),
        sa.Column('device_type', sa.String(50), nullable=False),
        sa.Column('device_name', sa.String(255)),
        sa.Column('serial_number', sa.String(255)),
        sa.Column('model', sa.String(255)),
        sa.Column('manufacturer', sa.String(255)),
        sa.Column('os_version', sa.String(100)),
        sa.Column('is_compliant', sa.Boolean()),
        sa.Column('last_check_in', sa.DateTime(timezone=True)),
        sa.Column('assigned_at', sa.DateTime(timezone=True)),
        sa.Column('raw_data', JSON_TYPE),
        *_timestamps(),
        sa.UniqueConstraint('correlated_employee_id', 'integration_id', 'external_asset_id',
                            name='uq_asset_assignment_employee_integration_asset'),
    )
    _index('employee_asset_assignments', 'correlated_employee_id', 'serial_number', 'is_compliant')

    op.create_table(
        'employee_access_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        _employee_fk(),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('systems_access', JSON_TYPE, nullable=False),
        sa.Column('last_review_date', sa.DateTime(timezone=True)),
        sa.Column('review_status', sa.String(50)),
        sa.Column('reviewed_by', sa.String(255)),
        sa.Column('mfa_enabled', sa.Boolean()),
        sa.Column('raw_data', JSON_TYPE),
        *_timestamps(),
        sa.UniqueConstraint('correlated_employee_id', 'integration_id',
                            name='uq_access_record_employee_integration'),
    )
    _index('employee_access_records', 'correlated_employee_id', 'review_status')

    # History table: no updated_at
    op.create_table(
        'employee_security_scores',
        sa.Column('id', sa.Uuid(), primary_key=True),
        _employee_fk(),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('overall_score', sa.Integer(), nullable=False),
        sa.Column('risk_level', sa.String(20)),
        sa.Column('training_score', sa.Integer()),
        sa.Column('phishing_score', sa.Integer()),
        sa.Column('phishing_tests_sent', sa.Integer()),
        sa.Column('phishing_tests_clicked', sa.Integer()),
        sa.Column('phishing_tests_reported', sa.Integer()),
        sa.Column('score_period', sa.String(50)),
        sa.Column('raw_data', JSON_TYPE),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('overall_score >= 0 AND overall_score <= 100', name='ck_security_score_range'),
    )
    _index('employee_security_scores', 'correlated_employee_id', 'risk_level')

    op.create_table(
        'employee_attestations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        _employee_fk(),
        sa.Column('policy_id', sa.Uuid(), sa.ForeignKey('policies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('responded_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('ip_address', sa.String(45)),
        sa.Column('user_agent', sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint('correlated_employee_id', 'policy_id', name='uq_attestation_employee_policy'),
    )
    _index('employee_attestations', 'correlated_employee_id', 'policy_id', 'status')


def downgrade() -> None:
    """Drop all tables."""
    # Drop tables in reverse order
    op.drop_table('employee_attestations')
    op.drop_table('employee_security_scores')
    op.drop_table('employee_access_records')
    op.drop_table('employee_asset_assignments')
    op.drop_table('employee_training_records')
    op.drop_table('employee_background_checks')
    op.drop_table('correlated_employees')
    op.drop_table('policies')
    op.drop_table('assets')
    op.drop_table('integrations')
