"""uat_core_tables

Creates the UAT review tables:
  - users                       : internal staff (API key → user)
  - uat_sessions                : review cycles
  - uat_guests                  : guest portal identities
  - uat_session_collaborators   : PM / developer portal identities
  - uat_checklist_items         : testable assertions
  - uat_checklist_item_steps    : ordered test / delay / info steps
  - uat_test_runs               : runs, at most one active per item
  - uat_test_step_results       : per-run, per-step outcome
  - uat_item_comments           : threaded item comments
  - uat_responses               : guest verdicts per item
  - email_logs                  : outbound email audit

Tables created conditionally (IF NOT EXISTS semantics) so databases that
already received them via db.create_all() can be stamped forward.

Revision ID: a1c0e7d2b9f4
Revises:
Create Date: 2026-10-19 09:12:41.518233
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c0e7d2b9f4'
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns(updated=True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return cols


def _fk(target, ondelete):
    return sa.ForeignKey(target, ondelete=ondelete)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("username", sa.String(length=100), nullable=False, unique=True),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            *_audit_columns(),
        )
        op.create_index("ix_users_email", "users", ["email"])

    if "uat_sessions" not in existing:
        op.create_table(
            "uat_sessions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="draft | active | closed"),
            sa.Column("priority", sa.String(length=10), nullable=True,
                      comment="low | medium | high"),
            sa.Column("invite_token", sa.String(length=64), nullable=False, unique=True),
            sa.Column("owner_id", sa.Integer(), _fk("users.id", "SET NULL"), nullable=True),
            sa.Column("created_by_id", sa.Integer(), _fk("users.id", "SET NULL"), nullable=True),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            *_audit_columns(),
        )
        op.create_index("ix_uat_sessions_owner_id", "uat_sessions", ["owner_id"])

    if "uat_guests" not in existing:
        op.create_table(
            "uat_guests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(), _fk("uat_sessions.id", "CASCADE"), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("access_token", sa.String(length=64), nullable=False),
            sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
            *_audit_columns(updated=False),
            sa.UniqueConstraint("session_id", "email", name="uq_uat_guest_session_email"),
        )
        op.create_index("ix_uat_guests_session_id", "uat_guests", ["session_id"])
        op.create_index("ix_uat_guests_access_token", "uat_guests", ["access_token"], unique=True)

    if "uat_session_collaborators" not in existing:
        op.create_table(
            "uat_session_collaborators",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(), _fk("uat_sessions.id", "CASCADE"), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False,
                      comment="pm | editor | viewer | developer"),
            sa.Column("access_token", sa.String(length=64), nullable=False),
            sa.Column("invited_by_id", sa.Integer(), _fk("users.id", "SET NULL"), nullable=True),
            sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
            *_audit_columns(updated=False),
            sa.UniqueConstraint("session_id", "email", name="uq_uat_collaborator_session_email"),
        )
        op.create_index("ix_uat_session_collaborators_session_id",
                        "uat_session_collaborators", ["session_id"])
        op.create_index("ix_uat_session_collaborators_access_token",
                        "uat_session_collaborators", ["access_token"], unique=True)

    if "uat_checklist_items" not in existing:
        op.create_table(
            "uat_checklist_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(), _fk("uat_sessions.id", "CASCADE"), nullable=False),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("instructions", sa.Text(), nullable=True),
            sa.Column("reference_url", sa.String(length=500), nullable=True),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("order", sa.Integer(), nullable=False),
            sa.Column("last_reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_reviewed_by_name", sa.String(length=200), nullable=True),
            sa.Column("last_reviewed_by_type", sa.String(length=20), nullable=True,
                      comment="internal | pm_collaborator | developer | guest"),
            sa.Column("last_resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_resolved_by_name", sa.String(length=200), nullable=True),
            *_audit_columns(),
        )
        op.create_index("ix_uat_checklist_items_session_id", "uat_checklist_items", ["session_id"])

    if "uat_checklist_item_steps" not in existing:
        op.create_table(
            "uat_checklist_item_steps",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.Integer(), _fk("uat_checklist_items.id", "CASCADE"), nullable=False),
            sa.Column("step_type", sa.String(length=10), nullable=False, comment="test | delay | info"),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("instructions", sa.Text(), nullable=True),
            sa.Column("expected_result", sa.Text(), nullable=True),
            sa.Column("link_url", sa.String(length=500), nullable=True),
            sa.Column("notes_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notes_prompt", sa.String(length=500), nullable=True),
            sa.Column("estimated_duration_minutes", sa.Integer(), nullable=True),
            sa.Column("order", sa.Integer(), nullable=False),
            *_audit_columns(),
        )
        op.create_index("ix_uat_checklist_item_steps_item_id", "uat_checklist_item_steps", ["item_id"])

    if "uat_test_runs" not in existing:
        op.create_table(
            "uat_test_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.Integer(), _fk("uat_checklist_items.id", "CASCADE"), nullable=False),
            sa.Column("run_number", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=10), nullable=False, comment="active | closed"),
            sa.Column("trigger_reason", sa.String(length=20), nullable=False, comment="initial | retest"),
            sa.Column("triggered_by_id", sa.Integer(), _fk("users.id", "SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("item_id", "run_number", name="uq_uat_test_run_item_number"),
        )
        op.create_index("ix_uat_test_runs_item_id", "uat_test_runs", ["item_id"])
        op.create_index(
            "uq_uat_test_run_one_active", "uat_test_runs", ["item_id"], unique=True,
            sqlite_where=sa.text("status = 'active'"),
            postgresql_where=sa.text("status = 'active'"),
        )

    if "uat_test_step_results" not in existing:
        op.create_table(
            "uat_test_step_results",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("run_id", sa.Integer(), _fk("uat_test_runs.id", "CASCADE"), nullable=False),
            sa.Column("step_id", sa.Integer(), _fk("uat_checklist_item_steps.id", "CASCADE"), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="pending | passed | failed | acknowledged"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("tester_type", sa.String(length=20), nullable=True),
            sa.Column("tester_id", sa.Integer(), nullable=True),
            sa.Column("tester_name", sa.String(length=200), nullable=True),
            sa.Column("tested_at", sa.DateTime(timezone=True), nullable=True),
            *_audit_columns(),
            sa.UniqueConstraint("run_id", "step_id", name="uq_uat_step_result_run_step"),
        )
        op.create_index("ix_uat_test_step_results_run_id", "uat_test_step_results", ["run_id"])
        op.create_index("ix_uat_test_step_results_step_id", "uat_test_step_results", ["step_id"])

    if "uat_item_comments" not in existing:
        op.create_table(
            "uat_item_comments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.Integer(), _fk("uat_checklist_items.id", "CASCADE"), nullable=False),
            sa.Column("parent_id", sa.Integer(), _fk("uat_item_comments.id", "CASCADE"), nullable=True),
            sa.Column("author_type", sa.String(length=20), nullable=False,
                      comment="internal | pm_collaborator | guest"),
            sa.Column("author_id", sa.Integer(), nullable=False),
            sa.Column("author_name", sa.String(length=200), nullable=False),
            sa.Column("body", sa.Text(), nullable=False),
            *_audit_columns(),
        )
        op.create_index("ix_uat_item_comments_item_id", "uat_item_comments", ["item_id"])
        op.create_index("ix_uat_item_comments_parent_id", "uat_item_comments", ["parent_id"])

    if "uat_responses" not in existing:
        op.create_table(
            "uat_responses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.Integer(), _fk("uat_checklist_items.id", "CASCADE"), nullable=False),
            sa.Column("guest_id", sa.Integer(), _fk("uat_guests.id", "CASCADE"), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="approved | changes_requested"),
            sa.Column("feedback", sa.Text(), nullable=True),
            *_audit_columns(),
            sa.UniqueConstraint("item_id", "guest_id", name="uq_uat_response_item_guest"),
        )
        op.create_index("ix_uat_responses_item_id", "uat_responses", ["item_id"])
        op.create_index("ix_uat_responses_guest_id", "uat_responses", ["guest_id"])

    if "email_logs" not in existing:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("recipients", sa.Text(), nullable=False, comment="Comma-separated addresses"),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True, comment="queued, sent, failed"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("session_id", sa.Integer(), _fk("uat_sessions.id", "SET NULL"), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            *_audit_columns(updated=False),
        )
        op.create_index("ix_email_logs_session_id", "email_logs", ["session_id"])


def downgrade():
    for table in (
        "email_logs",
        "uat_responses",
        "uat_item_comments",
        "uat_test_step_results",
        "uat_test_runs",
        "uat_checklist_item_steps",
        "uat_checklist_items",
        "uat_session_collaborators",
        "uat_guests",
        "uat_sessions",
        "users",
    ):
        op.drop_table(table)
