"""recurring_billing_core

Creates the scheduling and billing engine tables:
  - tenants, customers, service_templates, task_templates
  - work_orders, periods, task_instances
  - numbering_configs, invoices, invoice_lines
  - audit_logs, scheduled_jobs

Tables created conditionally (IF NOT EXISTS semantics) so the revision can
run against a development database that already received them through
db.create_all().

Revision ID: 0001_recurring_billing_core
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "0001_recurring_billing_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _tenant_fk():
    return sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE")


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Tenant & catalog ──────────────────────────────────────────────────
    if "tenants" not in existing:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("default_income_account_ref", sa.String(length=64), nullable=True),
            sa.Column("default_receivable_account_ref", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "customers" not in existing:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("account_ref", sa.String(length=64), nullable=True,
                      comment="Receivable ledger account in the external chart of accounts"),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            _tenant_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_customers_tenant_id", "customers", ["tenant_id"])

    if "service_templates" not in existing:
        op.create_table(
            "service_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("default_price", sa.Numeric(12, 2), nullable=True),
            sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("income_account_ref", sa.String(length=64), nullable=True),
            sa.Column("payment_terms", sa.String(length=20), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            _tenant_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_service_templates_tenant_id", "service_templates", ["tenant_id"])

    if "task_templates" not in existing:
        op.create_table(
            "task_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_template_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("recurrence_frequency", sa.String(length=20), nullable=True),
            sa.Column("due_rule_type", sa.String(length=20), nullable=False,
                      server_default="period_end"),
            sa.Column("due_day", sa.Integer(), nullable=True),
            sa.Column("due_months_after", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("due_offset_value", sa.Integer(), nullable=True),
            sa.Column("due_offset_unit", sa.String(length=10), nullable=True),
            sa.Column("due_date_overrides", sa.JSON(), nullable=True),
            sa.Column("effective_from", sa.Date(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=True),
            sa.Column("default_assignee_ref", sa.String(length=64), nullable=True),
            sa.ForeignKeyConstraint(["service_template_id"], ["service_templates.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_task_templates_service_template_id", "task_templates",
                        ["service_template_id"])

    # ── Work orders, periods, tasks ───────────────────────────────────────
    if "work_orders" not in existing:
        op.create_table(
            "work_orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("service_template_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("recurrence_pattern", sa.String(length=20), nullable=False,
                      server_default="monthly"),
            sa.Column("period_offset_mode", sa.String(length=10), nullable=False,
                      server_default="current"),
            sa.Column("anchor_start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("assignee_ref", sa.String(length=64), nullable=True),
            sa.Column("billing_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("auto_bill", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("last_materialized_end", sa.Date(), nullable=True),
            *_timestamps(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["service_template_id"], ["service_templates.id"],
                                    ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_work_orders_tenant_id", "work_orders", ["tenant_id"])
        op.create_index("ix_work_orders_customer_id", "work_orders", ["customer_id"])
        op.create_index("ix_work_orders_service_template_id", "work_orders",
                        ["service_template_id"])

    if "periods" not in existing:
        op.create_table(
            "periods",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("work_order_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=60), nullable=False),
            sa.Column("period_key", sa.String(length=20), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("total_tasks", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_tasks", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("billing_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("billed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("invoice_id", sa.Integer(), nullable=True),
            sa.Column("billing_note", sa.String(length=500), nullable=True),
            *_timestamps(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("work_order_id", "start_date", "end_date",
                                name="uq_period_work_order_range"),
            sa.CheckConstraint("start_date <= end_date", name="ck_period_range"),
        )
        op.create_index("ix_periods_tenant_id", "periods", ["tenant_id"])
        op.create_index("ix_periods_work_order_id", "periods", ["work_order_id"])
        op.create_index("ix_periods_invoice_id", "periods", ["invoice_id"])

    if "task_instances" not in existing:
        op.create_table(
            "task_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("period_id", sa.Integer(), nullable=False),
            sa.Column("task_template_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=250), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("assignee_ref", sa.String(length=64), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["period_id"], ["periods.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["task_template_id"], ["task_templates.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("period_id", "task_template_id", "due_date",
                                name="uq_task_instance_period_template_due"),
        )
        op.create_index("ix_task_instances_tenant_id", "task_instances", ["tenant_id"])
        op.create_index("ix_task_instances_period_id", "task_instances", ["period_id"])
        op.create_index("ix_task_instances_task_template_id", "task_instances",
                        ["task_template_id"])

    # ── Billing ───────────────────────────────────────────────────────────
    if "numbering_configs" not in existing:
        op.create_table(
            "numbering_configs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("document_type", sa.String(length=20), nullable=False,
                      server_default="invoice"),
            sa.Column("prefix", sa.String(length=20), nullable=False, server_default="INV-"),
            sa.Column("suffix", sa.String(length=20), nullable=False, server_default=""),
            sa.Column("zero_pad_width", sa.Integer(), nullable=False, server_default="6"),
            sa.Column("pad_with_zeros", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("starting_number", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("issued_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            _tenant_fk(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "document_type", name="uq_numbering_tenant_doctype"),
            sa.CheckConstraint("starting_number >= 1", name="ck_numbering_starting_number"),
            sa.CheckConstraint("zero_pad_width >= 1 AND zero_pad_width <= 12",
                               name="ck_numbering_pad_width"),
        )
        op.create_index("ix_numbering_configs_tenant_id", "numbering_configs", ["tenant_id"])

    if "invoices" not in existing:
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("work_order_id", sa.Integer(), nullable=True),
            sa.Column("period_id", sa.Integer(), nullable=True),
            sa.Column("number", sa.String(length=60), nullable=False),
            sa.Column("issue_date", sa.Date(), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("income_account_ref", sa.String(length=64), nullable=False),
            sa.Column("receivable_account_ref", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
            _tenant_fk(),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["work_order_id"], ["work_orders.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["period_id"], ["periods.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("work_order_id", "period_id", name="uq_invoice_work_order_period"),
            sa.UniqueConstraint("tenant_id", "number", name="uq_invoice_tenant_number"),
        )
        op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])
        op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])
        op.create_index("ix_invoices_work_order_id", "invoices", ["work_order_id"])
        op.create_index("ix_invoices_period_id", "invoices", ["period_id"])

    if "invoice_lines" not in existing:
        op.create_table(
            "invoice_lines",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("invoice_id", sa.Integer(), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=False),
            sa.Column("quantity", sa.Numeric(12, 2), nullable=False, server_default="1"),
            sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("service_template_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["service_template_id"], ["service_templates.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])

    # ── Observability ─────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("cron", sa.String(length=100), nullable=False),
            sa.Column("is_enabled", sa.Boolean(), nullable=False),
            sa.Column("run_count", sa.Integer(), nullable=False),
            sa.Column("failure_count", sa.Integer(), nullable=False),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("last_failure", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs", "audit_logs", "invoice_lines", "invoices", "numbering_configs",
        "task_instances", "periods", "work_orders", "task_templates", "service_templates",
        "customers", "tenants",
    ):
        op.drop_table(table)
