"""Baseline: Security-Schema

Revision ID: 001_security_baseline
Revises: None
Create Date: 2026-10-19

Erstellt die komplette Datenbankstruktur als Baseline.
Bestehende Datenbanken, die via create_all() angelegt wurden,
werden als "bereits migriert" markiert (alembic stamp head).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_security_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # RBAC
    op.create_table(
        "user",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("locked_until", sa.String(), nullable=True),
        sa.Column("failed_login_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_login_at", sa.String(), nullable=True),
    )
    op.create_index("ix_user_email", "user", ["email"], unique=True)

    op.create_table(
        "role",
        sa.Column("role_id", sa.String(), primary_key=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="1"),
    )

    op.create_table(
        "permission",
        sa.Column("perm_id", sa.String(), primary_key=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="1"),
    )

    op.create_table(
        "role_permission",
        sa.Column("role_id", sa.String(), sa.ForeignKey("role.role_id"), primary_key=True),
        sa.Column("perm_id", sa.String(), sa.ForeignKey("permission.perm_id"), primary_key=True),
    )

    op.create_table(
        "user_role",
        sa.Column("user_id", sa.String(), sa.ForeignKey("user.user_id"), primary_key=True),
        sa.Column("role_id", sa.String(), sa.ForeignKey("role.role_id"), primary_key=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
    )

    # Security-Log (Hash-Kette)
    op.create_table(
        "security_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False, server_default="INFO"),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("previous_hash", sa.String(), nullable=True),
        sa.Column("current_hash", sa.String(), nullable=False),
        sa.Column("hash_algorithm", sa.String(), nullable=False, server_default="SHA256"),
    )
    op.create_index("ix_security_log_sequence_number", "security_log", ["sequence_number"], unique=True)
    op.create_index("ix_security_log_event_created", "security_log", ["event_type", "created_at"])
    op.create_index("ix_security_log_user_created", "security_log", ["user_id", "created_at"])
    op.create_index("ix_security_log_ip_created", "security_log", ["ip_address", "created_at"])

    # Login-Versuche
    op.create_table(
        "login_attempt",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("device_type", sa.String(), nullable=True),
        sa.Column("browser", sa.String(), nullable=True),
        sa.Column("os", sa.String(), nullable=True),
        sa.Column("suspicious", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("attempt_at", sa.String(), nullable=False),
    )
    op.create_index("ix_login_attempt_email_at", "login_attempt", ["email", "attempt_at"])
    op.create_index("ix_login_attempt_ip_at", "login_attempt", ["ip_address", "attempt_at"])

    # Alerts
    op.create_table(
        "security_alert",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("rule_name", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("user_email", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("evidence", sa.Text(), nullable=True),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("correlated_alerts", sa.Text(), nullable=True),
        sa.Column("is_correlated", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("first_seen", sa.String(), nullable=False),
        sa.Column("last_seen", sa.String(), nullable=False),
        sa.Column("dispatch_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_dispatch_at", sa.String(), nullable=True),
        sa.Column("dispatched_at", sa.String(), nullable=True),
        sa.Column("dispatched_channels", sa.Text(), nullable=True),
        sa.Column("dispatch_error", sa.Text(), nullable=True),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("acknowledged_at", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.String(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("suppressed_until", sa.String(), nullable=True),
        sa.Column("suppression_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=False),
    )
    op.create_index("ix_security_alert_created", "security_alert", ["created_at"])
    op.create_index("ix_security_alert_correlation", "security_alert", ["correlation_id"])
    op.create_index("ix_security_alert_fingerprint", "security_alert", ["fingerprint"])

    # Threat-Regeln
    op.create_table(
        "threat_rule",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.String(), nullable=False, server_default="1.0.0"),
        sa.Column("status", sa.String(), nullable=False, server_default="INACTIVE"),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("condition_type", sa.String(), nullable=False),
        sa.Column("config", sa.Text(), nullable=True),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("threat_rule")
    op.drop_index("ix_security_alert_fingerprint", table_name="security_alert")
    op.drop_index("ix_security_alert_correlation", table_name="security_alert")
    op.drop_index("ix_security_alert_created", table_name="security_alert")
    op.drop_table("security_alert")
    op.drop_index("ix_login_attempt_ip_at", table_name="login_attempt")
    op.drop_index("ix_login_attempt_email_at", table_name="login_attempt")
    op.drop_table("login_attempt")
    op.drop_index("ix_security_log_ip_created", table_name="security_log")
    op.drop_index("ix_security_log_user_created", table_name="security_log")
    op.drop_index("ix_security_log_event_created", table_name="security_log")
    op.drop_index("ix_security_log_sequence_number", table_name="security_log")
    op.drop_table("security_log")
    op.drop_table("user_role")
    op.drop_table("role_permission")
    op.drop_table("permission")
    op.drop_table("role")
    op.drop_index("ix_user_email", table_name="user")
    op.drop_table("user")
