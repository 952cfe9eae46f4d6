"""Celery tasks for billing-event processing and ledger housekeeping."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from celery import shared_task
from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from credits.exceptions import BillingEventError
from credits.models import ProcessedEvent
from credits.services.billing_events import dispatch_event
from credits.services.reservations import expire_stale_reservations

logger = logging.getLogger(__name__)


@shared_task(bind=True, queue="credits", autoretry_for=(DatabaseError,), retry_backoff=True, max_retries=5)
def process_billing_event_async(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a queued billing event exactly once; store errors are retried with backoff."""

    event_id = payload.get("event_id") if isinstance(payload, dict) else None
    try:
        outcome = dispatch_event(payload)
    except BillingEventError as exc:
        logger.warning("Rejected billing event %s: %s", event_id, exc)
        return {"status": "failed", "event_id": event_id, "detail": str(exc)}

    if outcome.already_processed:
        return {"status": "skipped", "event_id": outcome.event_id}

    logger.info(
        "Processed billing event %s (%s): credited=%s",
        outcome.event_id,
        outcome.event_type,
        outcome.credited,
    )
    return {
        "status": "processed",
        "event_id": outcome.event_id,
        "credited": outcome.credited,
        "balance": outcome.balance,
    }


@shared_task(queue="credits")
def expire_stale_reservations_task(max_age_hours: Optional[int] = None) -> Dict[str, int]:
    """Refund reservations whose completion callback never arrived."""

    max_age = timedelta(hours=max_age_hours) if max_age_hours else None
    expired = expire_stale_reservations(max_age=max_age)
    if expired:
        logger.info("Expired %s stale reservations.", expired)
    return {"expired": expired}


@shared_task(queue="maintenance")
def cleanup_processed_events(days: Optional[int] = None) -> int:
    """Drop stored payloads of processed events older than ``days`` days.

    The rows themselves stay so a late redelivery is still recognised.
    """

    if days is None:
        days = getattr(settings, "PROCESSED_EVENT_RETENTION_DAYS", 30)
    cutoff = timezone.now() - timedelta(days=days)
    compacted = (
        ProcessedEvent.objects.filter(
            status=ProcessedEvent.Status.PROCESSED,
            processed_at__lt=cutoff,
        )
        .exclude(payload={})
        .update(payload={}, updated_at=timezone.now())
    )

    logger.info("Compacted %s processed billing events older than %s days.", compacted, days)
    return compacted
