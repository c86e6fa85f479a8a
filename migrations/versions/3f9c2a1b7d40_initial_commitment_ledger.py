"""initial_commitment_ledger

Create organizations, users, clients, commitments, change_requests,
secure_links, approval_events, activity_logs and email_logs.

Revision ID: 3f9c2a1b7d40
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "3f9c2a1b7d40"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return cols


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("contact_email", sa.String(length=200), nullable=True),
            sa.Column("timezone", sa.String(length=64), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=True),
            sa.Column("plan", sa.String(length=30), nullable=False, server_default="AGENCY"),
            sa.Column("plan_status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("approval_defaults", sa.JSON(), nullable=True),
            sa.Column("notification_settings", sa.JSON(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )
        op.create_index("ix_organizations_plan", "organizations", ["plan"])
        op.create_index("ix_organizations_plan_status", "organizations", ["plan_status"])

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="FOUNDER"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("org_id", "email", name="uq_user_org_email"),
        )
        op.create_index("ix_users_org_id", "users", ["org_id"])
        op.create_index("ix_users_org_role", "users", ["org_id", "role"])

    if "clients" not in existing_tables:
        op.create_table(
            "clients",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("phone", sa.String(length=50), nullable=True),
            sa.Column("company_name", sa.String(length=200), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("org_id", "email", name="uq_client_org_email"),
        )
        op.create_index("ix_clients_org_id", "clients", ["org_id"])

    if "commitments" not in existing_tables:
        op.create_table(
            "commitments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("client_id", sa.Integer(), nullable=True),
            sa.Column("client_name_snapshot", sa.String(length=200), nullable=True),
            sa.Column("client_email_snapshot", sa.String(length=200), nullable=True),
            sa.Column("client_company_snapshot", sa.String(length=200), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("scope_title", sa.String(length=300), nullable=True),
            sa.Column("scope_description", sa.Text(), nullable=False),
            sa.Column("amount", sa.Numeric(14, 2), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
            sa.Column("payment_terms", sa.JSON(), nullable=False),
            sa.Column("milestones", sa.JSON(), nullable=False),
            sa.Column("deliverables", sa.JSON(), nullable=False),
            sa.Column("attachments", sa.JSON(), nullable=False),
            sa.Column("approval_rules", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="DRAFT"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("approval_sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("root_commitment_id", sa.Integer(), nullable=True),
            sa.Column("previous_commitment_id", sa.Integer(), nullable=True),
            sa.Column("change_request_id", sa.Integer(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.Column("assigned_to_user_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["root_commitment_id"], ["commitments.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["previous_commitment_id"], ["commitments.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["assigned_to_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_commitments_org_id", "commitments", ["org_id"])
        op.create_index("ix_commitments_status", "commitments", ["status"])
        op.create_index("ix_commitments_root_commitment_id", "commitments", ["root_commitment_id"])
        op.create_index("ix_commitments_previous_commitment_id", "commitments", ["previous_commitment_id"])
        op.create_index("ix_commitments_change_request_id", "commitments", ["change_request_id"])
        op.create_index("ix_commitments_org_status_updated", "commitments", ["org_id", "status", "updated_at"])
        op.create_index(
            "ix_commitments_org_assignee_status", "commitments", ["org_id", "assigned_to_user_id", "status"],
        )
        op.create_index("ix_commitments_org_client_updated", "commitments", ["org_id", "client_id", "updated_at"])

    if "change_requests" not in existing_tables:
        op.create_table(
            "change_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("commitment_id", sa.Integer(), nullable=False),
            sa.Column("commitment_version", sa.Integer(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="OPEN"),
            sa.Column("previous_status", sa.String(length=30), nullable=False),
            sa.Column("requested_by_type", sa.String(length=10), nullable=False),
            sa.Column("requested_by_user_id", sa.Integer(), nullable=True),
            sa.Column("requested_by_name", sa.String(length=200), nullable=True),
            sa.Column("requested_by_email", sa.String(length=200), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolved_by_user_id", sa.Integer(), nullable=True),
            sa.Column("resolution_note", sa.Text(), nullable=True),
            sa.Column("created_version_id", sa.Integer(), nullable=True),
            sa.Column("meta", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["commitment_id"], ["commitments.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_version_id"], ["commitments.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["requested_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["resolved_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_change_requests_org_id", "change_requests", ["org_id"])
        op.create_index("ix_change_requests_commitment_id", "change_requests", ["commitment_id"])
        op.create_index(
            "ix_change_requests_org_commitment_status_created",
            "change_requests",
            ["org_id", "commitment_id", "status", "created_at"],
        )
        op.create_index(
            "uq_change_requests_one_open",
            "change_requests",
            ["commitment_id"],
            unique=True,
            postgresql_where=sa.text("status = 'OPEN'"),
            sqlite_where=sa.text("status = 'OPEN'"),
        )

    if "secure_links" not in existing_tables:
        op.create_table(
            "secure_links",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("commitment_id", sa.Integer(), nullable=False),
            sa.Column("commitment_version", sa.Integer(), nullable=False),
            sa.Column("purpose", sa.String(length=20), nullable=False),
            sa.Column("token_hash", sa.String(length=64), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["commitment_id"], ["commitments.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("token_hash"),
        )
        op.create_index("ix_secure_links_org_id", "secure_links", ["org_id"])
        op.create_index(
            "ix_secure_links_org_commitment_purpose", "secure_links", ["org_id", "commitment_id", "purpose"],
        )

    if "approval_events" not in existing_tables:
        op.create_table(
            "approval_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("commitment_id", sa.Integer(), nullable=False),
            sa.Column("commitment_version", sa.Integer(), nullable=False),
            sa.Column("actor_type", sa.String(length=10), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_name", sa.String(length=200), nullable=True),
            sa.Column("actor_email", sa.String(length=200), nullable=True),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("meta", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["commitment_id"], ["commitments.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_events_org_id", "approval_events", ["org_id"])
        op.create_index(
            "ix_approval_events_org_commitment_created",
            "approval_events",
            ["org_id", "commitment_id", "created_at"],
        )

    if "activity_logs" not in existing_tables:
        op.create_table(
            "activity_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False, server_default="organization"),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("meta", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_logs_org_id", "activity_logs", ["org_id"])
        op.create_index("ix_activity_logs_org_created", "activity_logs", ["org_id", "created_at"])

    if "email_logs" not in existing_tables:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.Integer(), nullable=True),
            sa.Column("commitment_id", sa.Integer(), nullable=True),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["commitment_id"], ["commitments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_org_id", "email_logs", ["org_id"])
        op.create_index("ix_email_logs_commitment_id", "email_logs", ["commitment_id"])
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])


def downgrade():
    for table in (
        "email_logs",
        "activity_logs",
        "approval_events",
        "secure_links",
        "change_requests",
        "commitments",
        "clients",
        "users",
        "organizations",
    ):
        op.drop_table(table)
