"""Prescription request, quote and AI-analysis models.

Domain values are frozen pydantic models; workflow transitions return new
instances instead of mutating.  ``PrescriptionRecord`` is the persisted row:
the AI analysis, the pharmacy-corrected item list and the quote are stored as
JSONB documents on the request itself (a request has at most one quote).

Lifecycle
---------
    WAITING_FOR_QUOTES ─┬─► QUOTED
          ▲             ├─► ILLEGIBLE
          │             └─► EXPIRED
    UNDER_REVIEW ───────┬─► ILLEGIBLE
                        └─► EXPIRED
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlmodel import Field as SQLField
from sqlmodel import SQLModel

from rxquote.models.catalog import DEFAULT_UNIT_TYPE


class PrescriptionStatus(str, Enum):
    WAITING_FOR_QUOTES = "WAITING_FOR_QUOTES"
    UNDER_REVIEW = "UNDER_REVIEW"
    ILLEGIBLE = "ILLEGIBLE"
    EXPIRED = "EXPIRED"
    QUOTED = "QUOTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    PrescriptionStatus.ILLEGIBLE,
    PrescriptionStatus.EXPIRED,
    PrescriptionStatus.QUOTED,
})


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; aware values are converted, naive ones kept as is."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Vision-service output
# ---------------------------------------------------------------------------

class SuggestedItem(BaseModel):
    """One medication line read off the prescription (or corrected by a pharmacist)."""

    raw_name: str = Field(min_length=1)
    quantity: int = Field(default=1)

    model_config = {"frozen": True}

    @field_validator("raw_name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("raw_name must not be blank")
        return value

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, value: Any) -> int:
        # The vision model sometimes omits or zeroes the quantity.
        try:
            quantity = int(value)
        except (TypeError, ValueError):
            return 1
        return quantity if quantity > 0 else 1


class AIAnalysisResult(BaseModel):
    confidence: float = Field(default=0.0)
    extracted_text: str = ""
    suggested_items: list[SuggestedItem] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            return 0.0
        if confidence != confidence:  # NaN
            return 0.0
        return min(max(confidence, 0.0), 1.0)


# ---------------------------------------------------------------------------
# Quote
# ---------------------------------------------------------------------------

class QuoteLineItem(BaseModel):
    name: str
    quantity: int
    unit_price: Decimal
    unit_type: str = DEFAULT_UNIT_TYPE
    linked_stock_item_id: Optional[UUID] = None
    # quantity_on_hand when the line was built; display/warning only
    stock_snapshot: Optional[int] = None
    is_matched: bool = False

    model_config = {"frozen": True}

    @property
    def is_linked(self) -> bool:
        return self.linked_stock_item_id is not None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Quote(BaseModel):
    pharmacy_id: str
    pharmacy_name: str
    items: list[QuoteLineItem]
    total_value: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    note: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def sync_total_value(self) -> "Quote":
        object.__setattr__(self, "total_value", sum((i.line_total for i in self.items), Decimal("0")))
        return self


# ---------------------------------------------------------------------------
# Prescription request (domain)
# ---------------------------------------------------------------------------

class PrescriptionRequest(BaseModel):
    """
    Design invariant
    ----------------
    ``quote`` is set if and only if ``status == QUOTED``; a request therefore
    never carries a quote while ILLEGIBLE or EXPIRED, and never more than one.
    """

    id: UUID = Field(default_factory=uuid4)
    customer_id: str
    image_ref: str
    image_hash: str = ""
    target_pharmacy_id: str
    status: PrescriptionStatus
    ai_analysis: Optional[AIAnalysisResult] = None
    validated_items: Optional[list[SuggestedItem]] = None
    validated_by: Optional[str] = None
    triaged_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    quote: Optional[Quote] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @field_validator("created_at", "triaged_at", "expires_at", mode="after")
    @classmethod
    def store_as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def check_quote_matches_status(self) -> "PrescriptionRequest":
        if self.quote is not None and self.status != PrescriptionStatus.QUOTED:
            raise ValueError(f"a quote cannot be attached to a {self.status.value} request")
        if self.quote is None and self.status == PrescriptionStatus.QUOTED:
            raise ValueError("a QUOTED request must carry its quote")
        return self

    @property
    def suggested_items(self) -> list[SuggestedItem]:
        """Authoritative item list: pharmacist corrections win over the AI reading."""
        if self.validated_items is not None:
            return list(self.validated_items)
        if self.ai_analysis is not None:
            return list(self.ai_analysis.suggested_items)
        return []


# ---------------------------------------------------------------------------
# Persisted row
# ---------------------------------------------------------------------------

class PrescriptionRecord(SQLModel, table=True):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index("ix_prescriptions_customer_image_hash", "customer_id", "image_hash"),
    )

    id: UUID = SQLField(
        default_factory=uuid4,
        sa_column=Column(PGUUID(as_uuid=True), primary_key=True),
    )
    customer_id: str = SQLField(sa_column=Column(String, nullable=False, index=True))
    image_ref: str = SQLField(sa_column=Column(String, nullable=False))
    image_hash: str = SQLField(default="", sa_column=Column(String, nullable=False, server_default=""))
    target_pharmacy_id: str = SQLField(sa_column=Column(String, nullable=False, index=True))
    status: str = SQLField(
        default=PrescriptionStatus.WAITING_FOR_QUOTES.value,
        sa_column=Column(String, nullable=False, index=True),
    )
    ai_analysis: dict[str, Any] | None = SQLField(default=None, sa_column=Column(JSONB, nullable=True))
    validated_items: list[dict[str, Any]] | None = SQLField(default=None, sa_column=Column(JSONB, nullable=True))
    validated_by: str | None = SQLField(default=None, sa_column=Column(String, nullable=True))
    triaged_at: datetime | None = SQLField(default=None, sa_column=Column(DateTime(timezone=False), nullable=True))
    rejection_reason: str | None = SQLField(default=None, sa_column=Column(String, nullable=True))
    quote: dict[str, Any] | None = SQLField(default=None, sa_column=Column(JSONB, nullable=True))
    notes: str | None = SQLField(default=None, sa_column=Column(String, nullable=True))
    created_at: datetime = SQLField(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=False), nullable=False),
    )
    expires_at: datetime | None = SQLField(default=None, sa_column=Column(DateTime(timezone=False), nullable=True))

    @classmethod
    def from_domain(cls, request: PrescriptionRequest) -> "PrescriptionRecord":
        return cls(id=request.id, **record_values(request))

    def to_domain(self) -> PrescriptionRequest:
        return PrescriptionRequest(
            id=self.id,
            customer_id=self.customer_id,
            image_ref=self.image_ref,
            image_hash=self.image_hash or "",
            target_pharmacy_id=self.target_pharmacy_id,
            status=PrescriptionStatus(self.status),
            ai_analysis=AIAnalysisResult.model_validate(self.ai_analysis) if self.ai_analysis else None,
            validated_items=(
                [SuggestedItem.model_validate(i) for i in self.validated_items]
                if self.validated_items is not None else None
            ),
            validated_by=self.validated_by,
            triaged_at=self.triaged_at,
            rejection_reason=self.rejection_reason,
            quote=Quote.model_validate(self.quote) if self.quote else None,
            notes=self.notes,
            created_at=self.created_at,
            expires_at=self.expires_at,
        )


def record_values(request: PrescriptionRequest) -> dict[str, Any]:
    """Column values for *request*, JSON documents dumped in JSON mode (Decimal → str)."""
    return {
        "customer_id": request.customer_id,
        "image_ref": request.image_ref,
        "image_hash": request.image_hash,
        "target_pharmacy_id": request.target_pharmacy_id,
        "status": request.status.value,
        "ai_analysis": request.ai_analysis.model_dump(mode="json") if request.ai_analysis else None,
        "validated_items": (
            [i.model_dump(mode="json") for i in request.validated_items]
            if request.validated_items is not None else None
        ),
        "validated_by": request.validated_by,
        "triaged_at": request.triaged_at,
        "rejection_reason": request.rejection_reason,
        "quote": request.quote.model_dump(mode="json") if request.quote else None,
        "notes": request.notes,
        "created_at": request.created_at,
        "expires_at": request.expires_at,
    }
