"""Links AI-extracted medication names to a pharmacy's own stock.

For each item the vision service read off the prescription, the
NUMERIC_AWARE policy picks the single best stock item ("which of *my* items
is this text about").  Dosage numbers weigh heavily: "Coartem 6" must not
be linked to "Coartem 12".

Matched lines are pre-filled from stock (price, unit type, on-hand snapshot)
and linked, so fulfilling the quote decrements that stock item.  Unmatched
lines keep the AI name at price 0 and stay unlinked: the pharmacist prices
them by hand and they never touch inventory.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from rxquote.models.catalog import DEFAULT_UNIT_TYPE, StockItem
from rxquote.models.prescription import QuoteLineItem, SuggestedItem
from rxquote.services.normalizer import MatchPolicy, best_match, normalize
from rxquote.services.quote_builder import add_from_stock, add_manual_line

logger = logging.getLogger(__name__)

#: Minimum typed length before manual stock lookup kicks in.
STOCK_SEARCH_MIN_LENGTH = 2


def find_stock_match(raw_name: str, pharmacy_stock: Sequence[StockItem]) -> Optional[StockItem]:
    return best_match(raw_name, pharmacy_stock, key=lambda item: item.name, policy=MatchPolicy.NUMERIC_AWARE)


def link_suggested_items(
    ai_suggested_items: Iterable[SuggestedItem],
    pharmacy_stock: Sequence[StockItem],
) -> list[QuoteLineItem]:
    """
    One proposed quote line per suggested item, in input order.

    Returns an empty list when there are no suggestions; never raises on
    an empty stock list (every line is then unmatched).
    """
    lines: list[QuoteLineItem] = []
    for suggestion in ai_suggested_items:
        match = find_stock_match(suggestion.raw_name, pharmacy_stock)
        if match is not None:
            logger.debug("link: %r → stock %s (%r)", suggestion.raw_name, match.id, match.name)
            lines.append(add_from_stock(match, suggestion.quantity))
        else:
            logger.debug("link: %r unmatched", suggestion.raw_name)
            lines.append(add_manual_line(suggestion.raw_name, suggestion.quantity, 0, DEFAULT_UNIT_TYPE))
    return lines


def search_stock(term: str, pharmacy_stock: Sequence[StockItem], limit: int = 5) -> list[StockItem]:
    """Plain normalized substring lookup used while a pharmacist types a manual line."""
    needle = normalize(term)
    if len(needle) < STOCK_SEARCH_MIN_LENGTH:
        return []
    hits = [item for item in pharmacy_stock if needle in normalize(item.name)]
    return hits[: max(limit, 0)]
