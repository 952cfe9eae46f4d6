"""Idempotent processing of normalised billing events (renewals, top-ups, upgrades, grants)."""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Tuple, Union

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from credits.exceptions import BillingEventError
from credits.models import LedgerEntry, ProcessedEvent
from credits.observability.logging import log_credit_event
from credits.observability.metrics import BILLING_EVENT_COUNT
from credits.policy import NO_PLAN, get_credit_policy, resolve_plan_name
from credits.services.ledger import _apply_entry, lock_account

logger = logging.getLogger(__name__)

Days = Union[int, float, Decimal, str]


@dataclass(frozen=True)
class EventOutcome:
    event_id: str
    event_type: str
    already_processed: bool = False
    credited: int = 0
    balance: Optional[int] = None


@dataclass(frozen=True)
class RenewalEvent:
    event_type: ClassVar[str] = "renewal"

    event_id: str
    user_id: str
    plan_id: str
    period_start: datetime
    period_end: datetime
    plan_name: Optional[str] = None
    customer_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = _base_payload(self)
        payload["period_start"] = self.period_start.isoformat()
        payload["period_end"] = self.period_end.isoformat()
        return payload


@dataclass(frozen=True)
class TopupEvent:
    event_type: ClassVar[str] = "topup"

    event_id: str
    user_id: str
    pack_sku: str

    def to_payload(self) -> Dict[str, Any]:
        return _base_payload(self)


@dataclass(frozen=True)
class UpgradeEvent:
    event_type: ClassVar[str] = "upgrade"

    event_id: str
    user_id: str
    old_plan_id: str
    new_plan_id: str
    remaining_days: Days
    cycle_days: Days

    def to_payload(self) -> Dict[str, Any]:
        payload = _base_payload(self)
        payload["remaining_days"] = str(self.remaining_days)
        payload["cycle_days"] = str(self.cycle_days)
        return payload


@dataclass(frozen=True)
class ManualGrantEvent:
    event_type: ClassVar[str] = "manual_grant"

    event_id: str
    user_id: str
    credits: int
    reason: str = field(default="Manual grant")

    def to_payload(self) -> Dict[str, Any]:
        return _base_payload(self)


BillingEvent = Union[RenewalEvent, TopupEvent, UpgradeEvent, ManualGrantEvent]

EVENT_TYPES = {
    RenewalEvent.event_type: RenewalEvent,
    TopupEvent.event_type: TopupEvent,
    UpgradeEvent.event_type: UpgradeEvent,
    ManualGrantEvent.event_type: ManualGrantEvent,
}


def _base_payload(event: BillingEvent) -> Dict[str, Any]:
    payload = {"type": event.event_type}
    payload.update(asdict(event))
    return payload


def event_from_payload(payload: Mapping[str, Any]) -> BillingEvent:
    """Rebuild a billing event from its queued ``to_payload()`` form."""

    if not isinstance(payload, Mapping):
        raise BillingEventError("Billing event payload must be a mapping.")
    event_type = payload.get("type")
    event_cls = EVENT_TYPES.get(event_type)
    if event_cls is None:
        raise BillingEventError(f"Unsupported billing event type '{event_type}'.")

    event_id = _required(payload, "event_id")
    user_id = _required(payload, "user_id")

    if event_cls is RenewalEvent:
        return RenewalEvent(
            event_id=event_id,
            user_id=user_id,
            plan_id=_required(payload, "plan_id"),
            period_start=_parse_timestamp(payload, "period_start"),
            period_end=_parse_timestamp(payload, "period_end"),
            plan_name=payload.get("plan_name") or None,
            customer_id=payload.get("customer_id") or None,
        )
    if event_cls is TopupEvent:
        return TopupEvent(event_id=event_id, user_id=user_id, pack_sku=_required(payload, "pack_sku"))
    if event_cls is UpgradeEvent:
        return UpgradeEvent(
            event_id=event_id,
            user_id=user_id,
            old_plan_id=_required(payload, "old_plan_id"),
            new_plan_id=_required(payload, "new_plan_id"),
            remaining_days=_parse_decimal(payload, "remaining_days"),
            cycle_days=_parse_decimal(payload, "cycle_days"),
        )
    try:
        credits = int(payload.get("credits"))
    except (TypeError, ValueError) as exc:
        raise BillingEventError("Manual grant requires an integer 'credits' value.") from exc
    return ManualGrantEvent(
        event_id=event_id,
        user_id=user_id,
        credits=credits,
        reason=payload.get("reason") or "Manual grant",
    )


def dispatch_event(payload: Mapping[str, Any]) -> EventOutcome:
    """Deserialize and process a queued billing event."""

    return process_event(event_from_payload(payload))


def process_event(event: BillingEvent) -> EventOutcome:
    handler = {
        RenewalEvent: _apply_renewal,
        TopupEvent: _apply_topup,
        UpgradeEvent: _apply_upgrade,
        ManualGrantEvent: _apply_manual_grant,
    }.get(type(event))
    if handler is None:
        raise BillingEventError(f"No handler for billing event {type(event).__name__}.")
    return _process_once(event, handler)


def process_renewal(event_id: str, user_id: str, plan_id: str, period_start: datetime, period_end: datetime,
                    plan_name: Optional[str] = None, customer_id: Optional[str] = None) -> EventOutcome:
    return process_event(
        RenewalEvent(
            event_id=event_id,
            user_id=user_id,
            plan_id=plan_id,
            period_start=period_start,
            period_end=period_end,
            plan_name=plan_name,
            customer_id=customer_id,
        )
    )


def process_topup(event_id: str, user_id: str, pack_sku: str) -> EventOutcome:
    return process_event(TopupEvent(event_id=event_id, user_id=user_id, pack_sku=pack_sku))


def process_upgrade(event_id: str, user_id: str, old_plan_id: str, new_plan_id: str,
                    remaining_days: Days, cycle_days: Days) -> EventOutcome:
    return process_event(
        UpgradeEvent(
            event_id=event_id,
            user_id=user_id,
            old_plan_id=old_plan_id,
            new_plan_id=new_plan_id,
            remaining_days=remaining_days,
            cycle_days=cycle_days,
        )
    )


def process_manual_grant(event_id: str, user_id: str, credits: int, reason: str = "Manual grant") -> EventOutcome:
    if credits <= 0:
        raise ValueError("Manual grants must be a positive number of credits.")
    return process_event(ManualGrantEvent(event_id=event_id, user_id=user_id, credits=credits, reason=reason))


def _process_once(event: BillingEvent, apply: Callable[[BillingEvent], Tuple[int, Optional[int]]]) -> EventOutcome:
    payload = event.to_payload()
    record, already_processed = _claim_event(event.event_id, event.event_type, payload)
    if already_processed:
        return _skipped(event)

    try:
        with transaction.atomic():
            locked = ProcessedEvent.objects.select_for_update().get(pk=record.pk)
            if locked.status == ProcessedEvent.Status.PROCESSED:
                return _skipped(event)
            credited, balance = apply(event)
            locked.status = ProcessedEvent.Status.PROCESSED
            locked.processed_at = timezone.now()
            locked.last_error = ""
            locked.save(update_fields=["status", "processed_at", "last_error", "updated_at"])
    except Exception as exc:
        _mark_event_failed(record.pk, str(exc) or exc.__class__.__name__)
        BILLING_EVENT_COUNT.labels(event_type=event.event_type, status="failed").inc()
        logger.exception("Billing event %s (%s) failed", event.event_id, event.event_type)
        raise

    BILLING_EVENT_COUNT.labels(event_type=event.event_type, status="processed").inc()
    log_credit_event(
        message="Billing event processed",
        user_id=event.user_id,
        event_id=event.event_id,
        extra={"event_type": event.event_type, "credited": credited, "balance": balance},
    )
    return EventOutcome(
        event_id=event.event_id,
        event_type=event.event_type,
        credited=credited,
        balance=balance,
    )


def _skipped(event: BillingEvent) -> EventOutcome:
    BILLING_EVENT_COUNT.labels(event_type=event.event_type, status="duplicate").inc()
    logger.info("Skipping billing event %s (%s); already processed.", event.event_id, event.event_type)
    return EventOutcome(event_id=event.event_id, event_type=event.event_type, already_processed=True)


def _claim_event(event_id: str, event_type: str, payload: Dict[str, Any]) -> Tuple[ProcessedEvent, bool]:
    if not event_id:
        raise BillingEventError("Billing events require an event id.")
    payload_hash = hash_event_payload(payload)

    with transaction.atomic():
        record = ProcessedEvent.objects.select_for_update().filter(event_id=event_id).first()
        if record is None:
            record, created = ProcessedEvent.objects.get_or_create(
                event_id=event_id,
                defaults={
                    "event_type": event_type,
                    "status": ProcessedEvent.Status.PROCESSING,
                    "payload": payload,
                    "payload_hash": payload_hash,
                    "attempts": 1,
                },
            )
            if created:
                return record, False
            record = ProcessedEvent.objects.select_for_update().get(pk=record.pk)

        if record.status == ProcessedEvent.Status.PROCESSED:
            return record, True

        if record.payload_hash and record.payload_hash != payload_hash:
            logger.warning("Billing event %s was redelivered with a different payload.", event_id)
        record.event_type = event_type
        record.status = ProcessedEvent.Status.PROCESSING
        record.payload = payload
        record.payload_hash = payload_hash
        record.attempts = (record.attempts or 0) + 1
        record.save(update_fields=["event_type", "status", "payload", "payload_hash", "attempts", "updated_at"])
        return record, False


def _mark_event_failed(record_pk: int, error: str) -> None:
    ProcessedEvent.objects.filter(pk=record_pk).exclude(status=ProcessedEvent.Status.PROCESSED).update(
        status=ProcessedEvent.Status.FAILED,
        last_error=error[:2000],
        updated_at=timezone.now(),
    )


def hash_event_payload(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _apply_renewal(event: RenewalEvent) -> Tuple[int, Optional[int]]:
    policy = get_credit_policy()
    base = policy.base_credits_for_plan(event.plan_id)

    account = lock_account(event.user_id)
    account.plan_id = event.plan_id
    account.plan_name = event.plan_name or resolve_plan_name(event.plan_id)
    account.cycle_start = event.period_start
    account.cycle_end = event.period_end
    updates = ["plan_id", "plan_name", "cycle_start", "cycle_end", "updated_at"]
    if event.customer_id:
        account.external_customer_id = event.customer_id
        updates.append("external_customer_id")
    account.save(update_fields=updates)

    if base <= 0:
        return 0, account.balance
    entry = _apply_entry(
        account=account,
        delta=base,
        kind=LedgerEntry.Kind.BASE_RESET,
        reason=f"Plan {event.plan_id} renewal",
        external_ref={"event_id": event.event_id, "plan_id": event.plan_id},
    )
    return base, entry.balance_after


def _apply_topup(event: TopupEvent) -> Tuple[int, Optional[int]]:
    credits = get_credit_policy().credits_for_pack(event.pack_sku)
    account = lock_account(event.user_id)
    if credits <= 0:
        log_credit_event(
            message="Top-up pack granted no credits",
            user_id=event.user_id,
            event_id=event.event_id,
            level=logging.WARNING,
            extra={"pack_sku": event.pack_sku},
        )
        return 0, account.balance
    entry = _apply_entry(
        account=account,
        delta=credits,
        kind=LedgerEntry.Kind.TOPUP,
        reason=f"Top-up {event.pack_sku}",
        external_ref={"event_id": event.event_id, "pack_sku": event.pack_sku},
    )
    return credits, entry.balance_after


def _apply_upgrade(event: UpgradeEvent) -> Tuple[int, Optional[int]]:
    policy = get_credit_policy()
    # Coming from no plan, the whole new allotment is prorated.
    if not event.old_plan_id or event.old_plan_id == NO_PLAN:
        old_base = 0
    else:
        old_base = policy.base_credits_for_plan(event.old_plan_id)
    bonus = policy.upgrade_bonus(
        old_base,
        policy.base_credits_for_plan(event.new_plan_id),
        event.remaining_days,
        event.cycle_days,
    )

    account = lock_account(event.user_id)
    account.plan_id = event.new_plan_id
    account.plan_name = resolve_plan_name(event.new_plan_id)
    account.save(update_fields=["plan_id", "plan_name", "updated_at"])

    if bonus <= 0:
        return 0, account.balance
    entry = _apply_entry(
        account=account,
        delta=bonus,
        kind=LedgerEntry.Kind.TIER_UPGRADE_BONUS,
        reason=f"Upgrade {event.old_plan_id} -> {event.new_plan_id}",
        external_ref={
            "event_id": event.event_id,
            "old_plan_id": event.old_plan_id,
            "new_plan_id": event.new_plan_id,
        },
    )
    return bonus, entry.balance_after


def _apply_manual_grant(event: ManualGrantEvent) -> Tuple[int, Optional[int]]:
    if event.credits <= 0:
        raise BillingEventError("Manual grants must be a positive number of credits.")
    account = lock_account(event.user_id)
    entry = _apply_entry(
        account=account,
        delta=event.credits,
        kind=LedgerEntry.Kind.TOPUP,
        reason=event.reason,
        external_ref={"event_id": event.event_id, "source": "manual_grant"},
    )
    return event.credits, entry.balance_after


def _required(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value in (None, ""):
        raise BillingEventError(f"Billing event is missing '{key}'.")
    return str(value)


def _parse_timestamp(payload: Mapping[str, Any], key: str) -> datetime:
    value = payload.get(key)
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value)) if value else None
    if parsed is None:
        raise BillingEventError(f"Billing event field '{key}' is not a valid timestamp.")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


def _parse_decimal(payload: Mapping[str, Any], key: str) -> Decimal:
    value = payload.get(key)
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError, TypeError) as exc:
        raise BillingEventError(f"Billing event field '{key}' must be numeric.") from exc
