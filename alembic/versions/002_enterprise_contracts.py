"""enterprise contracts

Revision ID: 002_enterprise_contracts
Revises: 001_billing_engine
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "002_enterprise_contracts"
down_revision = "001_billing_engine"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "enterprise_contracts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column("base_price_cents", sa.Integer(), nullable=False),
        sa.Column(
            "billing_cycle",
            sa.Enum("monthly", "annual", name="billingcycle", create_type=False),
            nullable=True,
        ),
        sa.Column("storage_gb", sa.Float(), nullable=True),
        sa.Column("api_calls_per_month", sa.Integer(), nullable=True),
        sa.Column("documents_per_month", sa.Integer(), nullable=True),
        sa.Column("seats", sa.Integer(), nullable=True),
        sa.Column("volume_discounts", sa.JSON(), nullable=True),
        sa.Column("contract_start", sa.Date(), nullable=False),
        sa.Column("contract_end", sa.Date(), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=True),
        sa.Column(
            "support_level",
            sa.Enum("enterprise", "premium", "dedicated", name="supportlevel"),
            nullable=True,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_enterprise_contracts_customer_id", "enterprise_contracts", ["customer_id"]
    )
    op.create_index(
        "uq_enterprise_contracts_active_customer",
        "enterprise_contracts",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )


def downgrade() -> None:
    op.drop_index(
        "uq_enterprise_contracts_active_customer", table_name="enterprise_contracts"
    )
    op.drop_index("ix_enterprise_contracts_customer_id", table_name="enterprise_contracts")
    op.drop_table("enterprise_contracts")
    sa.Enum(name="supportlevel").drop(op.get_bind(), checkfirst=True)
