"""Reserve-on-start and settle-or-refund-on-completion for generation jobs."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from credits.exceptions import DuplicateTask, InsufficientCredits
from credits.models import LedgerEntry, Reservation
from credits.observability.logging import log_credit_event
from credits.observability.metrics import REFUND_COUNT, REFUNDED_CREDITS, RESERVATION_COUNT
from credits.policy import get_credit_policy
from credits.services.ledger import _apply_entry, lock_account

logger = logging.getLogger(__name__)

Seconds = Union[int, float, Decimal, str]


@dataclass(frozen=True)
class ReservationResult:
    task_id: str
    reserved_credits: int
    balance: int


@dataclass(frozen=True)
class SettlementResult:
    used_credits: int
    refund_credits: int


@dataclass(frozen=True)
class RefundResult:
    refund_credits: int


def generate_task_id() -> str:
    return f"task_{uuid.uuid4().hex}"


def reserve(user_id: str, requested_seconds: Seconds, task_id: Optional[str] = None) -> ReservationResult:
    """Hold credits for ``requested_seconds`` of generation under ``task_id``."""

    policy = get_credit_policy()
    needed = policy.credits_for_seconds(requested_seconds)
    task_id = task_id or generate_task_id()

    try:
        with transaction.atomic():
            account = lock_account(user_id)
            if Reservation.objects.filter(task_id=task_id).exists():
                raise DuplicateTask(task_id)
            if account.balance < needed:
                raise InsufficientCredits(needed=needed, balance=account.balance)

            entry = _apply_entry(
                account=account,
                delta=-needed,
                kind=LedgerEntry.Kind.JOB_RESERVE,
                reason=f"Reserved {needed} credits for {requested_seconds}s",
                external_ref={"task_id": task_id},
            )
            try:
                with transaction.atomic():
                    Reservation.objects.create(
                        task_id=task_id,
                        account=account,
                        reserved_credits=needed,
                        requested_seconds=Decimal(str(requested_seconds)),
                    )
            except IntegrityError as exc:
                raise DuplicateTask(task_id) from exc
    except InsufficientCredits:
        RESERVATION_COUNT.labels(outcome="insufficient").inc()
        raise
    except DuplicateTask:
        RESERVATION_COUNT.labels(outcome="duplicate").inc()
        raise

    RESERVATION_COUNT.labels(outcome="reserved").inc()
    log_credit_event(
        message="Credits reserved",
        user_id=user_id,
        task_id=task_id,
        extra={"reserved_credits": needed, "balance": entry.balance_after},
    )
    return ReservationResult(task_id=task_id, reserved_credits=needed, balance=entry.balance_after)


def settle(task_id: str, actual_seconds: Seconds, *, user_id: Optional[str] = None) -> SettlementResult:
    """Close a reservation with the actual duration and return unused credits.

    Unknown or already closed reservations are a no-op returning zeros. When
    ``user_id`` is given, reservations owned by another user count as unknown.
    """

    policy = get_credit_policy()
    used = policy.credits_for_seconds(actual_seconds)

    with transaction.atomic():
        reservation = _lock_open_reservation(task_id, user_id)
        if reservation is None:
            return SettlementResult(used_credits=0, refund_credits=0)

        used = min(used, reservation.reserved_credits)
        refund = reservation.reserved_credits - used
        if refund > 0:
            account = lock_account(reservation.account.user_id)
            _apply_entry(
                account=account,
                delta=refund,
                kind=LedgerEntry.Kind.JOB_REFUND,
                reason=f"Unused credits for {actual_seconds}s of {reservation.requested_seconds}s",
                external_ref={"task_id": task_id},
            )
        _close(reservation, Reservation.CloseReason.SETTLED, used=used, refunded=refund)

    if refund > 0:
        REFUND_COUNT.labels(kind=LedgerEntry.Kind.JOB_REFUND).inc()
        REFUNDED_CREDITS.labels(kind=LedgerEntry.Kind.JOB_REFUND).inc(refund)
    log_credit_event(
        message="Reservation settled",
        user_id=reservation.account.user_id,
        task_id=task_id,
        extra={"used_credits": used, "refund_credits": refund},
    )
    return SettlementResult(used_credits=used, refund_credits=refund)


def refund_all(task_id: str, reason: str = "failed", *, user_id: Optional[str] = None) -> RefundResult:
    """Return the whole reservation to the user after a failed job."""

    with transaction.atomic():
        reservation = _lock_open_reservation(task_id, user_id)
        if reservation is None:
            return RefundResult(refund_credits=0)
        refund = _refund_reservation(reservation, reason, Reservation.CloseReason.FAILED)

    REFUND_COUNT.labels(kind=LedgerEntry.Kind.JOB_FAIL_REFUND).inc()
    REFUNDED_CREDITS.labels(kind=LedgerEntry.Kind.JOB_FAIL_REFUND).inc(refund)
    log_credit_event(
        message="Reservation refunded",
        user_id=reservation.account.user_id,
        task_id=task_id,
        extra={"refund_credits": refund, "reason": reason},
    )
    return RefundResult(refund_credits=refund)


def expire_stale_reservations(max_age: Optional[timedelta] = None, now: Optional[datetime] = None,
                              limit: Optional[int] = None) -> int:
    """Fully refund reservations left open longer than ``max_age``; returns how many closed."""

    if max_age is None:
        max_age = timedelta(hours=getattr(settings, "RESERVATION_MAX_AGE_HOURS", 24))
    cutoff = (now or timezone.now()) - max_age

    with transaction.atomic():
        queryset = (
            Reservation.objects.select_for_update(skip_locked=True)
            .filter(status=Reservation.Status.OPEN, created_at__lt=cutoff)
            .order_by("created_at")
        )
        if limit:
            queryset = queryset[:limit]
        expired = 0
        refunded_total = 0
        for reservation in queryset:
            refunded_total += _refund_reservation(reservation, "expired", Reservation.CloseReason.EXPIRED)
            expired += 1

    if expired:
        REFUND_COUNT.labels(kind=LedgerEntry.Kind.JOB_FAIL_REFUND).inc(expired)
        REFUNDED_CREDITS.labels(kind=LedgerEntry.Kind.JOB_FAIL_REFUND).inc(refunded_total)
        log_credit_event(
            message="Stale reservations expired",
            extra={"expired": expired, "refunded_credits": refunded_total, "cutoff": cutoff.isoformat()},
        )
    return expired


def _lock_open_reservation(task_id: str, user_id: Optional[str]) -> Optional[Reservation]:
    reservation = (
        Reservation.objects.select_for_update()
        .filter(task_id=task_id)
        .first()
    )
    if reservation is None or not reservation.is_open:
        logger.debug("No open reservation for task %s; nothing to close.", task_id)
        return None
    if user_id is not None and reservation.account.user_id != user_id:
        logger.debug("Task %s is not owned by the caller; nothing to close.", task_id)
        return None
    return reservation


def _refund_reservation(reservation: Reservation, reason: str, close_reason: str) -> int:
    account = lock_account(reservation.account.user_id)
    _apply_entry(
        account=account,
        delta=reservation.reserved_credits,
        kind=LedgerEntry.Kind.JOB_FAIL_REFUND,
        reason=reason,
        external_ref={"task_id": reservation.task_id},
    )
    _close(reservation, close_reason, used=0, refunded=reservation.reserved_credits)
    return reservation.reserved_credits


def _close(reservation: Reservation, close_reason: str, *, used: int, refunded: int) -> None:
    reservation.status = Reservation.Status.CLOSED
    reservation.close_reason = close_reason
    reservation.used_credits = used
    reservation.refunded_credits = refunded
    reservation.closed_at = timezone.now()
    reservation.save(update_fields=["status", "close_reason", "used_credits", "refunded_credits", "closed_at"])
