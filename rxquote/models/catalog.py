from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlmodel import Field, SQLModel

DEFAULT_UNIT_TYPE = "Unidade"
DEFAULT_CATEGORY = "Geral"


class CatalogEntry(SQLModel, table=True):
    """Network-wide reference medication, maintained by the operator."""

    __tablename__ = "catalog_entries"
    __table_args__ = (
        Index("ix_catalog_entries_canonical_name_lower", text("lower(canonical_name)"), postgresql_using="btree"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(PGUUID(as_uuid=True), primary_key=True),
    )
    canonical_name: str = Field(sa_column=Column(String, nullable=False))
    category: str = Field(default=DEFAULT_CATEGORY, sa_column=Column(String, nullable=False, server_default=DEFAULT_CATEGORY))
    reference_price: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False, server_default="0"))


class StockItem(SQLModel, table=True):
    """
    Inventory record owned by one pharmacy.

    ``quantity_on_hand`` is decremented by order fulfillment elsewhere; the
    quoting pipeline only reads it.
    """

    __tablename__ = "stock_items"

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(PGUUID(as_uuid=True), primary_key=True),
    )
    pharmacy_id: str = Field(sa_column=Column(String, nullable=False, index=True))
    name: str = Field(sa_column=Column(String, nullable=False))
    unit_price: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False, server_default="0"))
    quantity_on_hand: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    unit_type: str = Field(default=DEFAULT_UNIT_TYPE, sa_column=Column(String, nullable=False, server_default=DEFAULT_UNIT_TYPE))
    requires_prescription: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, server_default="false"))
    # Optional link to the global catalog (set when the pharmacy accepted a suggestion)
    linked_catalog_entry_id: UUID | None = Field(
        default=None,
        sa_column=Column(PGUUID(as_uuid=True), ForeignKey("catalog_entries.id", ondelete="SET NULL"), nullable=True),
    )
