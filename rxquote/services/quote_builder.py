"""Quote line assembly and pre-submission validation.

Lines come from three places: the stock linker (AI suggestions matched to
inventory), stock picked by hand, and free-text manual entry.  Only lines
linked to a stock item ever decrement inventory, so only those are checked
against live quantities.

``validate`` never stops at the first problem: the pharmacy UI shows every
violation at once.  ``build_quote`` refuses lines that do not validate.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel

from rxquote.models.catalog import DEFAULT_UNIT_TYPE, StockItem
from rxquote.models.prescription import Quote, QuoteLineItem
from rxquote.services.normalizer import format_for_customer

logger = logging.getLogger(__name__)

StockLookup = Union[Callable[[UUID], Optional[StockItem]], Mapping[UUID, StockItem]]

DEFAULT_QUOTE_NOTE = "Quote sent."


class ViolationKind(str, Enum):
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


class Violation(BaseModel):
    kind: ViolationKind
    item_name: str
    message: str
    requested: Optional[int] = None
    available: Optional[int] = None

    model_config = {"frozen": True}


class QuoteValidationError(ValueError):
    """Raised by ``build_quote`` when the lines still carry violations."""

    def __init__(self, violations: list[Violation], message: Optional[str] = None) -> None:
        self.violations = violations
        if message is None:
            summary = "; ".join(v.message for v in violations)
            message = f"{len(violations)} quote violation(s): {summary}"
        super().__init__(message)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


# ---------------------------------------------------------------------------
# Line construction
# ---------------------------------------------------------------------------

def add_manual_line(
    name: str,
    quantity: int,
    price: Any,
    unit_type: str = DEFAULT_UNIT_TYPE,
) -> QuoteLineItem:
    """Free-text line.  Unlinked by construction, so it never touches inventory."""
    return QuoteLineItem(
        name=(name or "").strip(),
        quantity=int(quantity),
        unit_price=_to_decimal(price),
        unit_type=unit_type or DEFAULT_UNIT_TYPE,
        linked_stock_item_id=None,
        stock_snapshot=None,
        is_matched=False,
    )


def add_from_stock(stock_item: StockItem, quantity: int = 1) -> QuoteLineItem:
    """Line linked to *stock_item*, priced and snapshotted from it."""
    return QuoteLineItem(
        name=format_for_customer(stock_item.name),
        quantity=int(quantity),
        unit_price=_to_decimal(stock_item.unit_price),
        unit_type=stock_item.unit_type or DEFAULT_UNIT_TYPE,
        linked_stock_item_id=stock_item.id,
        stock_snapshot=int(stock_item.quantity_on_hand or 0),
        is_matched=True,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def stock_lookup_from(items: Iterable[StockItem]) -> Callable[[UUID], Optional[StockItem]]:
    """Build a lookup over a freshly-read stock list."""
    by_id = {item.id: item for item in items}
    return by_id.get


def _resolve(lookup: Optional[StockLookup], stock_item_id: UUID) -> Optional[StockItem]:
    if lookup is None:
        return None
    if isinstance(lookup, Mapping):
        return lookup.get(stock_item_id)
    return lookup(stock_item_id)


def validate(line_items: Iterable[QuoteLineItem], live_stock_lookup: Optional[StockLookup]) -> list[Violation]:
    """
    Return every problem with *line_items*, in line order.

    - quantity <= 0                                → INVALID_QUANTITY
    - unit_price <= 0                              → INVALID_PRICE
    - linked and quantity > live quantity_on_hand  → INSUFFICIENT_STOCK

    A linked stock item that the lookup no longer knows counts as 0 on hand.
    An empty list means the quote can be submitted.
    """
    violations: list[Violation] = []
    for item in line_items:
        if item.quantity <= 0:
            violations.append(Violation(
                kind=ViolationKind.INVALID_QUANTITY,
                item_name=item.name,
                message=f"invalid quantity for {item.name!r}: {item.quantity}",
                requested=item.quantity,
            ))
        if item.unit_price <= 0:
            violations.append(Violation(
                kind=ViolationKind.INVALID_PRICE,
                item_name=item.name,
                message=f"invalid price for {item.name!r}: {item.unit_price}",
            ))
        if item.linked_stock_item_id is None or item.quantity <= 0:
            continue

        live = _resolve(live_stock_lookup, item.linked_stock_item_id)
        available = int(live.quantity_on_hand or 0) if live is not None else 0
        if item.quantity > available:
            violations.append(Violation(
                kind=ViolationKind.INSUFFICIENT_STOCK,
                item_name=item.name,
                message=f"insufficient stock for {item.name!r}: requested {item.quantity}, available {available}",
                requested=item.quantity,
                available=available,
            ))

    if violations:
        logger.debug("validate: %d violation(s) %s", len(violations), [v.kind.value for v in violations])
    return violations


def build_quote(
    pharmacy_id: str,
    pharmacy_name: str,
    line_items: list[QuoteLineItem],
    note: str = "",
    live_stock_lookup: Optional[StockLookup] = None,
    delivery_fee: Any = 0,
) -> Quote:
    """
    Assemble the quote.  ``total_value`` is derived (Σ quantity × unit_price)
    and the delivery fee is kept apart from it.

    Raises :class:`QuoteValidationError` if *line_items* is empty or still
    has violations.  Without *live_stock_lookup* linked lines are checked
    against their build-time snapshot.
    """
    if not line_items:
        raise QuoteValidationError([], "a quote needs at least one line")

    lookup = live_stock_lookup
    if lookup is None:
        lookup = {
            item.linked_stock_item_id: StockItem(
                id=item.linked_stock_item_id,
                pharmacy_id=pharmacy_id,
                name=item.name,
                quantity_on_hand=item.stock_snapshot or 0,
            )
            for item in line_items
            if item.linked_stock_item_id is not None
        }

    violations = validate(line_items, lookup)
    if violations:
        raise QuoteValidationError(violations)

    return Quote(
        pharmacy_id=pharmacy_id,
        pharmacy_name=pharmacy_name,
        items=list(line_items),
        delivery_fee=_to_decimal(delivery_fee),
        note=(note or "").strip() or DEFAULT_QUOTE_NOTE,
    )
