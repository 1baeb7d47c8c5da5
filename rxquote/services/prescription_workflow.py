"""Prescription request lifecycle.

Every state change goes through :func:`transition`, driven by the
``ALLOWED_SOURCES`` table.  Callers never assign ``status`` themselves.

    action              allowed from                         to
    ------------------  -----------------------------------  ------------------
    ReviseAndValidate   UNDER_REVIEW                         WAITING_FOR_QUOTES
    SubmitQuote         WAITING_FOR_QUOTES                   QUOTED
    Reject              WAITING_FOR_QUOTES, UNDER_REVIEW     ILLEGIBLE
    Expire              WAITING_FOR_QUOTES, UNDER_REVIEW     EXPIRED

An illegal action returns ``TransitionResult(ok=False, error=...)`` and the
original request untouched.  Because SubmitQuote is only legal from
WAITING_FOR_QUOTES, a second submit on a QUOTED request is refused; the
persistence layer repeats the same check in its UPDATE predicate.

Expiration is never started here: ``expire`` and ``expire_if_overdue`` are
called by whoever owns the clock.
"""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional, Sequence, Union

from rxquote.models.prescription import (
    AIAnalysisResult,
    PrescriptionRequest,
    PrescriptionStatus,
    Quote,
    SuggestedItem,
    as_naive_utc,
)

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD: float = float(os.getenv("RX_CONFIDENCE_THRESHOLD", "0.6"))
DUPLICATE_WINDOW_HOURS: float = float(os.getenv("RX_DUPLICATE_WINDOW_HOURS", "24"))

DEFAULT_REJECTION_REASON = "Receita ilegível ou incompleta."


class InvalidTargetError(ValueError):
    """A request must target exactly one pharmacy."""


class TransitionError(str, Enum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    WRONG_PHARMACY = "WRONG_PHARMACY"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReviseAndValidate:
    corrected_items: tuple[SuggestedItem, ...]
    pharmacy_id: Optional[str] = None
    at: Optional[datetime] = None


@dataclass(frozen=True)
class SubmitQuote:
    quote: Quote


@dataclass(frozen=True)
class Reject:
    reason: str = ""
    pharmacy_id: Optional[str] = None


@dataclass(frozen=True)
class Expire:
    pass


Action = Union[ReviseAndValidate, SubmitQuote, Reject, Expire]

_WAITING = PrescriptionStatus.WAITING_FOR_QUOTES
_REVIEW = PrescriptionStatus.UNDER_REVIEW

ALLOWED_SOURCES: dict[type, frozenset[PrescriptionStatus]] = {
    ReviseAndValidate: frozenset({_REVIEW}),
    SubmitQuote: frozenset({_WAITING}),
    Reject: frozenset({_WAITING, _REVIEW}),
    Expire: frozenset({_WAITING, _REVIEW}),
}

TARGET_STATUS: dict[type, PrescriptionStatus] = {
    ReviseAndValidate: _WAITING,
    SubmitQuote: PrescriptionStatus.QUOTED,
    Reject: PrescriptionStatus.ILLEGIBLE,
    Expire: PrescriptionStatus.EXPIRED,
}


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    request: PrescriptionRequest
    error: Optional[TransitionError] = None
    detail: Optional[str] = None


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def initial_status(
    ai_analysis: Optional[AIAnalysisResult],
    confidence_threshold: float = CONFIDENCE_THRESHOLD,
) -> PrescriptionStatus:
    if ai_analysis is None or ai_analysis.confidence >= confidence_threshold:
        return _WAITING
    return _REVIEW


def create_request(
    customer_id: str,
    image_ref: str,
    target_pharmacy_ids: Union[str, Sequence[str]],
    ai_analysis: Optional[AIAnalysisResult] = None,
    confidence_threshold: float = CONFIDENCE_THRESHOLD,
    notes: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> PrescriptionRequest:
    """
    Build a new request.  Raises :class:`InvalidTargetError` unless exactly
    one non-blank pharmacy id is given.
    """
    targets = [target_pharmacy_ids] if isinstance(target_pharmacy_ids, str) else list(target_pharmacy_ids)
    targets = [t.strip() for t in targets if t and t.strip()]
    if len(targets) != 1:
        raise InvalidTargetError(f"a request needs exactly one target pharmacy, got {len(targets)}")

    status = initial_status(ai_analysis, confidence_threshold)
    request = PrescriptionRequest(
        customer_id=customer_id,
        image_ref=image_ref,
        image_hash=compute_image_hash(image_ref),
        target_pharmacy_id=targets[0],
        status=status,
        ai_analysis=ai_analysis,
        notes=notes,
        created_at=now or datetime.utcnow(),
        expires_at=expires_at,
    )
    logger.info(
        "create_request: %s customer=%s pharmacy=%s status=%s confidence=%s",
        request.id, customer_id, request.target_pharmacy_id, status.value,
        ai_analysis.confidence if ai_analysis else None,
    )
    return request


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def _rebuild(request: PrescriptionRequest, **changes: Any) -> PrescriptionRequest:
    # model_copy skips validation; the quote/status invariant must be re-checked
    return PrescriptionRequest.model_validate({**dict(request), **changes})


def _refuse(request: PrescriptionRequest, error: TransitionError, detail: str) -> TransitionResult:
    logger.warning("transition refused for %s: %s (%s)", request.id, error.value, detail)
    return TransitionResult(ok=False, request=request, error=error, detail=detail)


def _acting_pharmacy(action: Action) -> Optional[str]:
    if isinstance(action, SubmitQuote):
        return action.quote.pharmacy_id
    if isinstance(action, (ReviseAndValidate, Reject)):
        return action.pharmacy_id
    return None


def transition(request: PrescriptionRequest, action: Action) -> TransitionResult:
    action_type = type(action)
    allowed = ALLOWED_SOURCES.get(action_type)
    if allowed is None:
        raise TypeError(f"unknown action {action_type.__name__}")

    if request.status not in allowed:
        return _refuse(
            request,
            TransitionError.INVALID_TRANSITION,
            f"{action_type.__name__} not allowed from {request.status.value}",
        )

    pharmacy_id = _acting_pharmacy(action)
    if pharmacy_id is not None and pharmacy_id != request.target_pharmacy_id:
        return _refuse(
            request,
            TransitionError.WRONG_PHARMACY,
            f"pharmacy {pharmacy_id} is not the target of this request",
        )

    target = TARGET_STATUS[action_type]
    changes: dict[str, Any] = {"status": target}
    if isinstance(action, ReviseAndValidate):
        changes.update(
            validated_items=list(action.corrected_items),
            validated_by=action.pharmacy_id,
            triaged_at=action.at or datetime.utcnow(),
        )
    elif isinstance(action, SubmitQuote):
        changes["quote"] = action.quote
    elif isinstance(action, Reject):
        changes["rejection_reason"] = (action.reason or "").strip() or DEFAULT_REJECTION_REASON

    updated = _rebuild(request, **changes)
    logger.info("transition %s: %s -> %s", request.id, request.status.value, target.value)
    return TransitionResult(ok=True, request=updated)


def revise_and_validate(
    request: PrescriptionRequest,
    corrected_items: Iterable[SuggestedItem],
    pharmacy_id: Optional[str] = None,
    at: Optional[datetime] = None,
) -> TransitionResult:
    return transition(request, ReviseAndValidate(tuple(corrected_items), pharmacy_id, at))


def submit_quote(request: PrescriptionRequest, quote: Quote) -> TransitionResult:
    return transition(request, SubmitQuote(quote))


def reject(request: PrescriptionRequest, reason: str = "", pharmacy_id: Optional[str] = None) -> TransitionResult:
    return transition(request, Reject(reason, pharmacy_id))


def expire(request: PrescriptionRequest) -> TransitionResult:
    return transition(request, Expire())


def validate_and_quote(request: PrescriptionRequest, quote: Quote, at: Optional[datetime] = None) -> TransitionResult:
    """
    Quote a request straight from UNDER_REVIEW: the quoted line names become
    the validated item set, then the quote is submitted.  From
    WAITING_FOR_QUOTES this is a plain submit.
    """
    if request.status != _REVIEW:
        return submit_quote(request, quote)
    corrected = [SuggestedItem(raw_name=line.name, quantity=line.quantity) for line in quote.items]
    revised = revise_and_validate(request, corrected, quote.pharmacy_id, at)
    if not revised.ok:
        return revised
    return submit_quote(revised.request, quote)


def is_overdue(request: PrescriptionRequest, now: datetime) -> bool:
    return request.expires_at is not None and request.expires_at <= as_naive_utc(now)


def expire_if_overdue(request: PrescriptionRequest, now: datetime) -> Optional[TransitionResult]:
    """
    Expire *request* when its caller-supplied ``expires_at`` has passed.

    Returns ``None`` when there is nothing to do (no deadline, not yet due,
    or already terminal).
    """
    if request.status.is_terminal or not is_overdue(request, now):
        return None
    return expire(request)


# ---------------------------------------------------------------------------
# Duplicate submission guard
# ---------------------------------------------------------------------------

def compute_image_hash(image_ref: str) -> str:
    return hashlib.sha256((image_ref or "").strip().encode("utf-8")).hexdigest()[:32]


def find_recent_duplicate(
    customer_id: str,
    image_ref: str,
    previous: Iterable[PrescriptionRequest],
    now: Optional[datetime] = None,
    window_hours: float = DUPLICATE_WINDOW_HOURS,
) -> Optional[PrescriptionRequest]:
    """The request in which *customer_id* already sent this image inside the window, if any."""
    image_hash = compute_image_hash(image_ref)
    cutoff = as_naive_utc(now or datetime.utcnow()) - timedelta(hours=window_hours)
    for p in previous:
        if p.customer_id == customer_id and p.image_hash == image_hash and p.created_at > cutoff:
            return p
    return None
