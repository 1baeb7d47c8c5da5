"""catalog, stock and prescription tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 10:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "catalog_entries",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("canonical_name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), server_default="Geral", nullable=False),
        sa.Column("reference_price", sa.Numeric(precision=12, scale=2), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_catalog_entries_canonical_name_lower",
        "catalog_entries",
        [sa.text("lower(canonical_name)")],
        unique=False,
        postgresql_using="btree",
    )

    op.create_table(
        "stock_items",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("pharmacy_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("unit_price", sa.Numeric(precision=12, scale=2), server_default="0", nullable=False),
        sa.Column("quantity_on_hand", sa.Integer(), server_default="0", nullable=False),
        sa.Column("unit_type", sa.String(), server_default="Unidade", nullable=False),
        sa.Column("requires_prescription", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("linked_catalog_entry_id", sa.UUID(), nullable=True),
        sa.ForeignKeyConstraint(["linked_catalog_entry_id"], ["catalog_entries.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_stock_items_pharmacy_id"), "stock_items", ["pharmacy_id"], unique=False)

    op.create_table(
        "prescriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("image_ref", sa.String(), nullable=False),
        sa.Column("image_hash", sa.String(), server_default="", nullable=False),
        sa.Column("target_pharmacy_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("ai_analysis", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("validated_items", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("validated_by", sa.String(), nullable=True),
        sa.Column("triaged_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("quote", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=False), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_prescriptions_customer_id"), "prescriptions", ["customer_id"], unique=False)
    op.create_index(op.f("ix_prescriptions_target_pharmacy_id"), "prescriptions", ["target_pharmacy_id"], unique=False)
    op.create_index(op.f("ix_prescriptions_status"), "prescriptions", ["status"], unique=False)
    op.create_index(
        "ix_prescriptions_customer_image_hash", "prescriptions", ["customer_id", "image_hash"], unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_prescriptions_customer_image_hash", table_name="prescriptions")
    op.drop_index(op.f("ix_prescriptions_status"), table_name="prescriptions")
    op.drop_index(op.f("ix_prescriptions_target_pharmacy_id"), table_name="prescriptions")
    op.drop_index(op.f("ix_prescriptions_customer_id"), table_name="prescriptions")
    op.drop_table("prescriptions")
    op.drop_index(op.f("ix_stock_items_pharmacy_id"), table_name="stock_items")
    op.drop_table("stock_items")
    op.drop_index("ix_catalog_entries_canonical_name_lower", table_name="catalog_entries")
    op.drop_table("catalog_entries")
