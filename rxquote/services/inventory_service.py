from __future__ import annotations

import logging
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from rxquote.models.catalog import CatalogEntry, StockItem

logger = logging.getLogger(__name__)


def _inventory_statement(pharmacy_id: str):
    return (
        select(StockItem)
        .where(StockItem.pharmacy_id == pharmacy_id)
        .order_by(StockItem.name)
    )


def _stock_items_statement(stock_item_ids: list[UUID], pharmacy_id: Optional[str] = None):
    statement = select(StockItem).where(StockItem.id.in_(stock_item_ids))
    if pharmacy_id is not None:
        statement = statement.where(StockItem.pharmacy_id == pharmacy_id)
    return statement


def _catalog_statement(search_term: Optional[str]):
    statement = select(CatalogEntry)
    term = (search_term or "").strip()
    if term:
        statement = statement.where(func.lower(CatalogEntry.canonical_name).contains(term.lower()))
    return statement.order_by(CatalogEntry.canonical_name)


async def fetch_pharmacy_inventory(session: AsyncSession, pharmacy_id: str) -> list[StockItem]:
    return list((await session.exec(_inventory_statement(pharmacy_id))).all())


async def fetch_stock_items(
    session: AsyncSession,
    stock_item_ids: Iterable[UUID],
    pharmacy_id: Optional[str] = None,
) -> list[StockItem]:
    """
    Live re-read of the given stock items, used right before a quote is
    validated.  With *pharmacy_id* only that pharmacy's items come back.
    """
    ids = list(dict.fromkeys(stock_item_ids))
    if not ids:
        return []
    items = list((await session.exec(_stock_items_statement(ids, pharmacy_id))).all())
    if len(items) != len(ids):
        logger.warning(
            "fetch_stock_items: %d of %d stock item(s) missing for pharmacy %s",
            len(ids) - len(items), len(ids), pharmacy_id or "*",
        )
    return items


async def fetch_catalog(session: AsyncSession, search_term: Optional[str] = None) -> list[CatalogEntry]:
    return list((await session.exec(_catalog_statement(search_term))).all())


async def fetch_existing_names(session: AsyncSession, pharmacy_id: Optional[str] = None) -> list[str]:
    """
    Names a bulk import is checked against: the pharmacy's stock when
    *pharmacy_id* is given, the global catalog otherwise.
    """
    if pharmacy_id:
        statement = select(StockItem.name).where(StockItem.pharmacy_id == pharmacy_id)
    else:
        statement = select(CatalogEntry.canonical_name)
    return [name for name in (await session.exec(statement)).all() if name]
