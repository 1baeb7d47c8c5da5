"""
Persistence boundary for prescription requests.

Each operation loads the stored request, lets the pure workflow / quote
functions decide, and writes the outcome back.  Writes that change status
go through a guarded UPDATE::

    UPDATE prescriptions SET ... WHERE id = :id AND status = :expected

so that of two pharmacies (or two tabs) racing on the same request only one
write lands; the loser gets ``INVALID_TRANSITION``.  Database errors are
reported as ``error="persistence_failed"`` and never retried here.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from rxquote.models.catalog import CatalogEntry, DEFAULT_UNIT_TYPE, StockItem
from rxquote.models.prescription import (
    AIAnalysisResult,
    PrescriptionRecord,
    PrescriptionRequest,
    PrescriptionStatus,
    QuoteLineItem,
    SuggestedItem,
    TERMINAL_STATUSES,
    as_naive_utc,
    record_values,
)
from rxquote.services.catalog_dedup import ImportRow
from rxquote.services.inventory_service import fetch_pharmacy_inventory, fetch_stock_items
from rxquote.services.prescription_workflow import (
    Action,
    Expire,
    InvalidTargetError,
    Reject,
    ReviseAndValidate,
    TransitionError,
    TransitionResult,
    compute_image_hash,
    create_request,
    expire_if_overdue,
    find_recent_duplicate,
    transition,
    validate_and_quote,
)
from rxquote.services.quote_builder import QuoteValidationError, Violation, build_quote, stock_lookup_from
from rxquote.services.stock_linker import link_suggested_items

logger = logging.getLogger(__name__)

ERROR_NOT_FOUND = "not_found"
ERROR_INVALID_TARGET = "invalid_target"
ERROR_DUPLICATE_SUBMISSION = "duplicate_submission"
ERROR_VALIDATION_FAILED = "validation_failed"
ERROR_PERSISTENCE_FAILED = "persistence_failed"

# Rows imported without a quantity column start out of stock until counted.
IMPORT_DEFAULT_QUANTITY: int = int(os.getenv("RX_IMPORT_DEFAULT_QUANTITY", "0"))


class PersistenceFailedError(RuntimeError):
    """Raised by the batch operations that return counts instead of an outcome."""

    def __init__(self, message: str):
        super().__init__(message)
        self.error = ERROR_PERSISTENCE_FAILED


@dataclass
class OperationOutcome:
    ok: bool
    request: Optional[PrescriptionRequest] = None
    violations: list[Violation] = field(default_factory=list)
    error: Optional[str] = None
    detail: Optional[str] = None


def _failed(error: Union[str, TransitionError], request: Optional[PrescriptionRequest] = None, **kwargs: Any) -> OperationOutcome:
    code = error.value if isinstance(error, TransitionError) else error
    return OperationOutcome(ok=False, request=request, error=code, **kwargs)


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def _build_guarded_update(request: PrescriptionRequest, expected_status: PrescriptionStatus):
    values = record_values(request)
    values.pop("created_at")
    return (
        update(PrescriptionRecord)
        .where(PrescriptionRecord.id == request.id)
        .where(PrescriptionRecord.status == expected_status.value)
        .values(**values)
    )


def _same_image_statement(customer_id: str, image_hash: str):
    return (
        select(PrescriptionRecord)
        .where(PrescriptionRecord.customer_id == customer_id)
        .where(PrescriptionRecord.image_hash == image_hash)
        .order_by(PrescriptionRecord.created_at.desc())
    )


def _overdue_statement(now: datetime):
    return (
        select(PrescriptionRecord)
        .where(PrescriptionRecord.status.not_in([s.value for s in TERMINAL_STATUSES]))
        .where(PrescriptionRecord.expires_at.is_not(None))
        .where(PrescriptionRecord.expires_at <= now)
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_request(session: AsyncSession, request_id: UUID) -> Optional[PrescriptionRequest]:
    record = await session.get(PrescriptionRecord, request_id)
    return record.to_domain() if record is not None else None


async def list_requests_for_pharmacy(
    session: AsyncSession,
    pharmacy_id: str,
    status: Optional[PrescriptionStatus] = None,
) -> list[PrescriptionRequest]:
    statement = select(PrescriptionRecord).where(PrescriptionRecord.target_pharmacy_id == pharmacy_id)
    if status is not None:
        statement = statement.where(PrescriptionRecord.status == status.value)
    statement = statement.order_by(PrescriptionRecord.created_at.desc())
    return [record.to_domain() for record in (await session.exec(statement)).all()]


async def propose_quote_lines(session: AsyncSession, request_id: UUID) -> Optional[list[QuoteLineItem]]:
    """Lines the target pharmacy starts from, linked to its inventory.  ``None`` if the request is unknown."""
    request = await get_request(session, request_id)
    if request is None:
        return None
    inventory = await fetch_pharmacy_inventory(session, request.target_pharmacy_id)
    return link_suggested_items(request.suggested_items, inventory)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def create_prescription_request(
    session: AsyncSession,
    customer_id: str,
    image_ref: str,
    target_pharmacy_ids: Union[str, Sequence[str]],
    ai_analysis: Optional[AIAnalysisResult] = None,
    notes: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> OperationOutcome:
    now = as_naive_utc(now or datetime.utcnow())
    try:
        request = create_request(
            customer_id,
            image_ref,
            target_pharmacy_ids,
            ai_analysis=ai_analysis,
            notes=notes,
            expires_at=expires_at,
            now=now,
        )
    except InvalidTargetError as exc:
        return _failed(ERROR_INVALID_TARGET, detail=str(exc))

    try:
        same_image = (await session.exec(
            _same_image_statement(customer_id, compute_image_hash(image_ref))
        )).all()
        recent = find_recent_duplicate(customer_id, image_ref, [r.to_domain() for r in same_image], now)
        if recent is not None:
            logger.info("create: duplicate image from customer %s (existing request %s)", customer_id, recent.id)
            return _failed(ERROR_DUPLICATE_SUBMISSION, request=recent)

        session.add(PrescriptionRecord.from_domain(request))
        await session.commit()
    except SQLAlchemyError:
        logger.exception("create: could not store prescription request for customer %s", customer_id)
        await session.rollback()
        return _failed(ERROR_PERSISTENCE_FAILED)
    return OperationOutcome(ok=True, request=request)


async def _store_transition(
    session: AsyncSession,
    before: PrescriptionRequest,
    result: TransitionResult,
) -> OperationOutcome:
    if not result.ok:
        return _failed(result.error, request=before, detail=result.detail)
    try:
        written = await session.execute(_build_guarded_update(result.request, before.status))
        await session.commit()
    except SQLAlchemyError:
        logger.exception("transition: could not store request %s", before.id)
        await session.rollback()
        return _failed(ERROR_PERSISTENCE_FAILED, request=before)

    if written.rowcount == 0:
        logger.warning(
            "transition: request %s left %s before this write landed",
            before.id, before.status.value,
        )
        current = await get_request(session, before.id)
        return _failed(
            TransitionError.INVALID_TRANSITION,
            request=current or before,
            detail="request was changed concurrently",
        )
    return OperationOutcome(ok=True, request=result.request)


async def apply_action(session: AsyncSession, request_id: UUID, action: Action) -> OperationOutcome:
    try:
        request = await get_request(session, request_id)
    except SQLAlchemyError:
        logger.exception("apply_action: could not load request %s", request_id)
        return _failed(ERROR_PERSISTENCE_FAILED)
    if request is None:
        return _failed(ERROR_NOT_FOUND)
    return await _store_transition(session, request, transition(request, action))


async def revise_request(
    session: AsyncSession,
    request_id: UUID,
    corrected_items: Iterable[SuggestedItem],
    pharmacy_id: Optional[str] = None,
) -> OperationOutcome:
    return await apply_action(
        session, request_id, ReviseAndValidate(tuple(corrected_items), pharmacy_id, datetime.utcnow()),
    )


async def reject_request(
    session: AsyncSession,
    request_id: UUID,
    reason: str = "",
    pharmacy_id: Optional[str] = None,
) -> OperationOutcome:
    return await apply_action(session, request_id, Reject(reason, pharmacy_id))


async def expire_request(session: AsyncSession, request_id: UUID) -> OperationOutcome:
    return await apply_action(session, request_id, Expire())


async def submit_quote_for_request(
    session: AsyncSession,
    request_id: UUID,
    pharmacy_id: str,
    pharmacy_name: str,
    line_items: list[QuoteLineItem],
    note: str = "",
    delivery_fee: Any = Decimal("0"),
) -> OperationOutcome:
    """
    Re-read live stock for every linked line, build and validate the quote,
    then record it.  A request still UNDER_REVIEW is validated with the
    quoted lines in the same write.
    """
    try:
        request = await get_request(session, request_id)
        if request is None:
            return _failed(ERROR_NOT_FOUND)
        linked_ids = [line.linked_stock_item_id for line in line_items if line.linked_stock_item_id is not None]
        live_stock = await fetch_stock_items(session, linked_ids, pharmacy_id)
    except SQLAlchemyError:
        logger.exception("submit_quote: could not load request %s", request_id)
        return _failed(ERROR_PERSISTENCE_FAILED)

    try:
        quote = build_quote(
            pharmacy_id,
            pharmacy_name,
            line_items,
            note=note,
            live_stock_lookup=stock_lookup_from([s for s in live_stock if s.pharmacy_id == pharmacy_id]),
            delivery_fee=delivery_fee,
        )
    except QuoteValidationError as exc:
        logger.info("submit_quote: %s refused with %d violation(s)", request_id, len(exc.violations))
        return _failed(ERROR_VALIDATION_FAILED, request=request, violations=exc.violations, detail=str(exc))

    return await _store_transition(session, request, validate_and_quote(request, quote, datetime.utcnow()))


async def expire_overdue_requests(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Expire every open request whose ``expires_at`` has passed.  Returns how many were expired."""
    now = as_naive_utc(now or datetime.utcnow())
    try:
        records = (await session.exec(_overdue_statement(now))).all()
    except SQLAlchemyError:
        logger.exception("expire_overdue_requests: could not load overdue requests")
        await session.rollback()
        raise PersistenceFailedError("could not load overdue requests")
    expired = 0
    for record in records:
        request = record.to_domain()
        result = expire_if_overdue(request, now)
        if result is None:
            continue
        outcome = await _store_transition(session, request, result)
        if outcome.ok:
            expired += 1
    logger.info("expire_overdue_requests: %d of %d overdue request(s) expired", expired, len(records))
    return expired


async def commit_import_rows(
    session: AsyncSession,
    rows: Sequence[ImportRow],
    pharmacy_id: Optional[str] = None,
    default_quantity: Optional[int] = None,
) -> int:
    """
    Insert previewed rows as stock items of *pharmacy_id*, or as global
    catalog entries when no pharmacy is given.  Returns the inserted count.

    Stock rows without a quantity get *default_quantity*
    (``RX_IMPORT_DEFAULT_QUANTITY`` when omitted).  Raises
    :class:`PersistenceFailedError` if the batch cannot be stored; nothing
    of the batch is kept in that case.
    """
    if default_quantity is None:
        default_quantity = IMPORT_DEFAULT_QUANTITY
    for row in rows:
        if pharmacy_id:
            session.add(StockItem(
                pharmacy_id=pharmacy_id,
                name=row.name,
                unit_price=row.price,
                quantity_on_hand=row.quantity if row.quantity is not None else default_quantity,
                unit_type=DEFAULT_UNIT_TYPE,
            ))
        else:
            session.add(CatalogEntry(canonical_name=row.name, reference_price=row.price))
    try:
        await session.commit()
    except SQLAlchemyError:
        logger.exception("commit_import_rows: could not store %d row(s)", len(rows))
        await session.rollback()
        raise PersistenceFailedError(f"could not store {len(rows)} imported row(s)")
    logger.info("commit_import_rows: %d row(s) into %s", len(rows), f"stock of {pharmacy_id}" if pharmacy_id else "catalog")
    return len(rows)
