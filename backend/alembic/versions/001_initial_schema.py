"""Initial schema: tenancy, identity, audit, frameworks, controls, risks, monitoring, alerts

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates:
  - organizations, users, refresh_tokens, audit_log
  - frameworks, framework_versions, requirements, org_frameworks, requirement_scopes
  - controls, control_mappings
  - risks, risk_assessments, risk_treatments, risk_controls
  - tests, test_runs, test_results
  - alert_rules, alerts
"""
from alembic import op
import sqlalchemy as sa

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", sa.String(36), primary_key=True)


def _org():
    return sa.Column("org_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=False)


def _user_fk(name):
    return sa.Column(name, sa.String(36), sa.ForeignKey("users.id"), nullable=True)


def _timestamps(updated=True):
    cols = [sa.Column("created_at", sa.DateTime(), nullable=False)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(), nullable=False))
    return cols


def upgrade() -> None:
    # ═══════════════════ TENANCY / IDENTITY ═══════════════════
    op.create_table(
        "organizations",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("domain", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("settings", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "users",
        _id(),
        _org(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("mfa_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_login_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "email", name="uq_users_org_email"),
    )
    op.create_index("ix_users_org_id", "users", ["org_id"])

    op.create_table(
        "refresh_tokens",
        _id(),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        _org(),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("user_agent", sa.String(500)),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("revoked_at", sa.DateTime()),
        *_timestamps(updated=False),
    )
    op.create_index("idx_refresh_tokens_user", "refresh_tokens", ["user_id"])

    op.create_table(
        "audit_log",
        _id(),
        sa.Column("org_id", sa.String(36)),
        sa.Column("actor_id", sa.String(36)),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(36)),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("user_agent", sa.String(500)),
        *_timestamps(updated=False),
    )
    op.create_index("idx_audit_log_org_created", "audit_log", ["org_id", "created_at"])
    op.create_index("idx_audit_log_resource", "audit_log", ["resource_type", "resource_id"])

    # ═══════════════════ FRAMEWORK CATALOG ═══════════════════
    op.create_table(
        "frameworks",
        _id(),
        sa.Column("identifier", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("website_url", sa.String(500)),
        sa.Column("is_custom", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "framework_versions",
        _id(),
        sa.Column("framework_id", sa.String(36), sa.ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.String(50), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("effective_date", sa.Date()),
        sa.Column("sunset_date", sa.Date()),
        sa.Column("changelog", sa.Text()),
        sa.Column("total_requirements", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("framework_id", "version", name="uq_framework_versions_version"),
    )

    op.create_table(
        "requirements",
        _id(),
        sa.Column("framework_version_id", sa.String(36),
                  sa.ForeignKey("framework_versions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("parent_id", sa.String(36), sa.ForeignKey("requirements.id", ondelete="CASCADE")),
        sa.Column("identifier", sa.String(100), nullable=False),
        sa.Column("title", sa.String(1000), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("guidance", sa.Text()),
        sa.Column("section_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_assessable", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("framework_version_id", "identifier", name="uq_requirements_identifier"),
    )
    op.create_index("idx_requirements_order", "requirements", ["framework_version_id", "depth", "section_order"])

    op.create_table(
        "org_frameworks",
        _id(),
        _org(),
        sa.Column("framework_id", sa.String(36), sa.ForeignKey("frameworks.id"), nullable=False),
        sa.Column("active_version_id", sa.String(36), sa.ForeignKey("framework_versions.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("target_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("activated_at", sa.DateTime(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "framework_id", name="uq_org_frameworks_framework"),
    )
    op.create_index("ix_org_frameworks_org_id", "org_frameworks", ["org_id"])

    op.create_table(
        "requirement_scopes",
        _id(),
        _org(),
        sa.Column("requirement_id", sa.String(36), sa.ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("in_scope", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("justification", sa.Text()),
        _user_fk("scoped_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "requirement_id", name="uq_requirement_scopes_requirement"),
    )
    op.create_index("ix_requirement_scopes_org_id", "requirement_scopes", ["org_id"])

    # ═══════════════════ CONTROLS ═══════════════════
    op.create_table(
        "controls",
        _id(),
        _org(),
        sa.Column("identifier", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("implementation_guidance", sa.Text()),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        _user_fk("owner_id"),
        _user_fk("secondary_owner_id"),
        sa.Column("is_custom", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_template_id", sa.String(100)),
        sa.Column("evidence_requirements", sa.Text()),
        sa.Column("test_criteria", sa.Text()),
        sa.Column("metadata", sa.JSON(), nullable=False),
        _user_fk("created_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "identifier", name="uq_controls_identifier"),
    )
    op.create_index("idx_controls_org_status", "controls", ["org_id", "status"])

    op.create_table(
        "control_mappings",
        _id(),
        _org(),
        sa.Column("control_id", sa.String(36), sa.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("requirement_id", sa.String(36), sa.ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("strength", sa.String(20), nullable=False, server_default="primary"),
        sa.Column("notes", sa.Text()),
        _user_fk("mapped_by"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("org_id", "control_id", "requirement_id", name="uq_control_mappings_pair"),
    )
    op.create_index("idx_control_mappings_requirement", "control_mappings", ["requirement_id"])

    # ═══════════════════ RISKS ═══════════════════
    op.create_table(
        "risks",
        _id(),
        _org(),
        sa.Column("identifier", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="identified"),
        _user_fk("owner_id"),
        _user_fk("secondary_owner_id"),
        sa.Column("inherent_likelihood", sa.String(20)),
        sa.Column("inherent_impact", sa.String(20)),
        sa.Column("inherent_score", sa.Integer()),
        sa.Column("residual_likelihood", sa.String(20)),
        sa.Column("residual_impact", sa.String(20)),
        sa.Column("residual_score", sa.Integer()),
        sa.Column("risk_appetite_threshold", sa.Integer()),
        sa.Column("accepted_at", sa.DateTime()),
        _user_fk("accepted_by"),
        sa.Column("acceptance_expiry", sa.Date()),
        sa.Column("acceptance_justification", sa.Text()),
        sa.Column("assessment_frequency_days", sa.Integer()),
        sa.Column("next_assessment_at", sa.DateTime()),
        sa.Column("last_assessed_at", sa.DateTime()),
        sa.Column("source", sa.String(100)),
        sa.Column("affected_assets", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("is_template", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        _user_fk("created_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "identifier", name="uq_risks_identifier"),
    )
    op.create_index("idx_risks_org_status", "risks", ["org_id", "status"])

    op.create_table(
        "risk_assessments",
        _id(),
        _org(),
        sa.Column("risk_id", sa.String(36), sa.ForeignKey("risks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assessment_type", sa.String(20), nullable=False),
        sa.Column("likelihood", sa.String(20), nullable=False),
        sa.Column("impact", sa.String(20), nullable=False),
        sa.Column("likelihood_score", sa.Integer(), nullable=False),
        sa.Column("impact_score", sa.Integer(), nullable=False),
        sa.Column("overall_score", sa.Integer(), nullable=False),
        sa.Column("scoring_formula", sa.String(50), nullable=False, server_default="likelihood_x_impact"),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("justification", sa.Text()),
        sa.Column("assumptions", sa.Text()),
        sa.Column("data_sources", sa.JSON(), nullable=False),
        _user_fk("assessed_by"),
        sa.Column("assessment_date", sa.Date(), nullable=False),
        sa.Column("valid_until", sa.Date()),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("superseded_by", sa.String(36), sa.ForeignKey("risk_assessments.id")),
        *_timestamps(updated=False),
    )
    op.create_index("idx_risk_assessments_risk", "risk_assessments", ["risk_id", "assessment_type"])
    op.create_index(
        "uq_risk_assessments_current", "risk_assessments", ["risk_id", "assessment_type"],
        unique=True,
        sqlite_where=sa.text("is_current = 1"),
        postgresql_where=sa.text("is_current"),
    )

    op.create_table(
        "risk_treatments",
        _id(),
        _org(),
        sa.Column("risk_id", sa.String(36), sa.ForeignKey("risks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("treatment_type", sa.String(20), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(20), nullable=False, server_default="planned"),
        sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
        _user_fk("owner_id"),
        sa.Column("estimated_effort_hours", sa.Numeric(10, 2)),
        sa.Column("actual_effort_hours", sa.Numeric(10, 2)),
        sa.Column("due_date", sa.Date()),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("target_control_id", sa.String(36), sa.ForeignKey("controls.id")),
        sa.Column("expected_residual_likelihood", sa.String(20)),
        sa.Column("expected_residual_impact", sa.String(20)),
        sa.Column("expected_residual_score", sa.Integer()),
        sa.Column("effectiveness_rating", sa.String(30)),
        sa.Column("effectiveness_notes", sa.Text()),
        sa.Column("effectiveness_reviewed_at", sa.DateTime()),
        _user_fk("effectiveness_reviewed_by"),
        sa.Column("notes", sa.Text()),
        _user_fk("created_by"),
        *_timestamps(),
    )
    op.create_index("idx_risk_treatments_risk", "risk_treatments", ["risk_id", "status"])

    op.create_table(
        "risk_controls",
        _id(),
        _org(),
        sa.Column("risk_id", sa.String(36), sa.ForeignKey("risks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("control_id", sa.String(36), sa.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("effectiveness", sa.String(30), nullable=False, server_default="not_assessed"),
        sa.Column("mitigation_percentage", sa.Integer()),
        sa.Column("notes", sa.Text()),
        _user_fk("linked_by"),
        sa.Column("last_effectiveness_review", sa.DateTime()),
        _user_fk("reviewed_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "risk_id", "control_id", name="uq_risk_controls_pair"),
    )

    # ═══════════════════ CONTINUOUS MONITORING ═══════════════════
    op.create_table(
        "tests",
        _id(),
        _org(),
        sa.Column("identifier", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("test_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("control_id", sa.String(36), sa.ForeignKey("controls.id"), nullable=False),
        sa.Column("schedule_cron", sa.String(100)),
        sa.Column("schedule_interval_min", sa.Integer()),
        sa.Column("next_run_at", sa.DateTime()),
        sa.Column("last_run_at", sa.DateTime()),
        sa.Column("test_config", sa.JSON(), nullable=False),
        sa.Column("test_script", sa.Text()),
        sa.Column("test_script_language", sa.String(20)),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_delay_seconds", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("tags", sa.JSON(), nullable=False),
        _user_fk("created_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "identifier", name="uq_tests_identifier"),
    )
    op.create_index("idx_tests_org_status", "tests", ["org_id", "status"])

    op.create_table(
        "test_runs",
        _id(),
        _org(),
        sa.Column("run_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("trigger_type", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("trigger_metadata", sa.JSON(), nullable=False),
        sa.Column("test_ids", sa.JSON(), nullable=False),
        sa.Column("total_tests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("passed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warnings", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("duration_ms", sa.Integer()),
        _user_fk("triggered_by"),
        sa.Column("worker_id", sa.String(100)),
        sa.Column("error_message", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "run_number", name="uq_test_runs_number"),
    )
    op.create_index(
        "uq_test_runs_in_flight", "test_runs", ["org_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'running')"),
        postgresql_where=sa.text("status IN ('pending', 'running')"),
    )

    op.create_table(
        "test_results",
        _id(),
        _org(),
        sa.Column("test_run_id", sa.String(36), sa.ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("test_id", sa.String(36), sa.ForeignKey("tests.id"), nullable=False),
        sa.Column("control_id", sa.String(36), sa.ForeignKey("controls.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("message", sa.Text()),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("output_log", sa.Text()),
        sa.Column("error_message", sa.Text()),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("duration_ms", sa.Integer()),
        sa.Column("alert_generated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("alert_id", sa.String(36)),
        *_timestamps(updated=False),
        sa.UniqueConstraint("test_run_id", "test_id", name="uq_test_results_run_test"),
    )
    op.create_index("idx_test_results_control", "test_results", ["org_id", "control_id", "created_at"])
    op.create_index("idx_test_results_test", "test_results", ["org_id", "test_id", "created_at"])

    # ═══════════════════ ALERTS ═══════════════════
    op.create_table(
        "alert_rules",
        _id(),
        _org(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("match_test_types", sa.JSON(), nullable=False),
        sa.Column("match_severities", sa.JSON(), nullable=False),
        sa.Column("match_result_statuses", sa.JSON(), nullable=False),
        sa.Column("match_control_ids", sa.JSON(), nullable=False),
        sa.Column("match_tags", sa.JSON(), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("alert_severity", sa.String(20), nullable=False),
        sa.Column("alert_title_template", sa.String(500)),
        _user_fk("auto_assign_to"),
        sa.Column("sla_hours", sa.Integer()),
        sa.Column("delivery_channels", sa.JSON(), nullable=False),
        sa.Column("slack_webhook_url", sa.String(500)),
        sa.Column("email_recipients", sa.JSON(), nullable=False),
        sa.Column("webhook_url", sa.String(500)),
        sa.Column("webhook_headers", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        _user_fk("created_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "name", name="uq_alert_rules_name"),
    )
    op.create_index("idx_alert_rules_org_priority", "alert_rules", ["org_id", "enabled", "priority"])

    op.create_table(
        "alerts",
        _id(),
        _org(),
        sa.Column("alert_number", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("test_id", sa.String(36), sa.ForeignKey("tests.id")),
        sa.Column("test_result_id", sa.String(36), sa.ForeignKey("test_results.id")),
        sa.Column("control_id", sa.String(36), sa.ForeignKey("controls.id"), nullable=False),
        sa.Column("alert_rule_id", sa.String(36), sa.ForeignKey("alert_rules.id", ondelete="SET NULL")),
        _user_fk("assigned_to"),
        sa.Column("assigned_at", sa.DateTime()),
        _user_fk("assigned_by"),
        sa.Column("sla_deadline", sa.DateTime()),
        sa.Column("sla_breached", sa.Boolean(), nullable=False, server_default=sa.false()),
        _user_fk("resolved_by"),
        sa.Column("resolved_at", sa.DateTime()),
        sa.Column("resolution_notes", sa.Text()),
        sa.Column("suppressed_until", sa.DateTime()),
        sa.Column("suppression_reason", sa.Text()),
        sa.Column("delivery_channels", sa.JSON(), nullable=False),
        sa.Column("delivered_at", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "alert_number", name="uq_alerts_number"),
    )
    op.create_index("idx_alerts_org_status", "alerts", ["org_id", "status"])
    op.create_index("idx_alerts_rule_control", "alerts", ["alert_rule_id", "control_id", "created_at"])


def downgrade() -> None:
    for table in (
        "alerts", "alert_rules",
        "test_results", "test_runs", "tests",
        "risk_controls", "risk_treatments", "risk_assessments", "risks",
        "control_mappings", "controls",
        "requirement_scopes", "org_frameworks", "requirements", "framework_versions", "frameworks",
        "audit_log", "refresh_tokens", "users", "organizations",
    ):
        op.drop_table(table)
