"""initial_labops_schema

Create the task hierarchy (projects, workpackages), the funding ledger
(funding_accounts, funding_allocations, funding_transactions) and
audit_logs tables.

Revision ID: 7c1e0a9d4b21
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e0a9d4b21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="planning"),
            sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("team_member_ids", sa.JSON(), nullable=False),
            sa.Column("total_budget", sa.Float(), nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_projects_status", "projects", ["status"])

    if "workpackages" not in existing_tables:
        op.create_table(
            "workpackages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="planning"),
            sa.Column("importance", sa.String(length=20), nullable=False, server_default="medium"),
            sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("owner_id", sa.String(length=36), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tasks", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workpackages_project_id", "workpackages", ["project_id"])

    if "funding_accounts" not in existing_tables:
        op.create_table(
            "funding_accounts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("account_number", sa.String(length=60), nullable=True),
            sa.Column("project_id", sa.String(length=36), nullable=True),
            sa.Column("account_type", sa.String(length=20), nullable=False, server_default="main"),
            sa.Column("total_budget", sa.Float(), nullable=False, server_default="0"),
            sa.Column("committed_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("spent_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("remaining_budget", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_funding_accounts_account_number", "funding_accounts", ["account_number"])
        op.create_index("ix_funding_accounts_project_id", "funding_accounts", ["project_id"])

    if "funding_allocations" not in existing_tables:
        op.create_table(
            "funding_allocations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("funding_account_id", sa.String(length=36), nullable=False),
            sa.Column("type", sa.String(length=10), nullable=False, server_default="PROJECT"),
            sa.Column("person_id", sa.String(length=36), nullable=True),
            sa.Column("project_id", sa.String(length=36), nullable=True),
            sa.Column("allocated_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("soft_limit", sa.Float(), nullable=True),
            sa.Column("current_spent", sa.Float(), nullable=False, server_default="0"),
            sa.Column("current_committed", sa.Float(), nullable=False, server_default="0"),
            sa.Column("remaining_budget", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("low_balance_warning_threshold", sa.Float(), nullable=True),
            sa.Column("last_transaction_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["funding_account_id"], ["funding_accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_funding_allocations_funding_account_id", "funding_allocations", ["funding_account_id"])
        op.create_index("ix_funding_allocations_person_id", "funding_allocations", ["person_id"])
        op.create_index("ix_funding_allocations_project_id", "funding_allocations", ["project_id"])
        op.create_index("ix_funding_allocations_status", "funding_allocations", ["status"])

    if "funding_transactions" not in existing_tables:
        op.create_table(
            "funding_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("funding_account_id", sa.String(length=36), nullable=False),
            sa.Column("allocation_id", sa.String(length=36), nullable=True),
            sa.Column("order_id", sa.String(length=36), nullable=True),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
            sa.Column("type", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=12), nullable=False, server_default="PENDING"),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["funding_account_id"], ["funding_accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_funding_transactions_funding_account_id", "funding_transactions", ["funding_account_id"])
        op.create_index("ix_funding_transactions_allocation_id", "funding_transactions", ["allocation_id"])
        op.create_index("ix_funding_transactions_order_id", "funding_transactions", ["order_id"])
        op.create_index("idx_ftx_order_type_status", "funding_transactions", ["order_id", "type", "status"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_project_id", "audit_logs", ["project_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "audit_logs",
        "funding_transactions",
        "funding_allocations",
        "funding_accounts",
        "workpackages",
        "projects",
    ):
        if table in existing_tables:
            op.drop_table(table)
