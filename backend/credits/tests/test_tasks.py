from datetime import timedelta
from unittest import mock

import pytest
from django.db import DatabaseError
from django.utils import timezone

from credits.models import ProcessedEvent, Reservation
from credits.services.billing_events import TopupEvent, process_topup
from credits.services.ledger import get_balance
from credits.services.reservations import reserve
from credits.tasks import (
    cleanup_processed_events,
    expire_stale_reservations_task,
    process_billing_event_async,
)


@pytest.mark.django_db
def test_process_billing_event_async_applies_event_once(user_id):
    payload = TopupEvent(event_id="evt-t", user_id=user_id, pack_sku="credits_1000").to_payload()

    first = process_billing_event_async.apply(args=(payload,)).get()
    second = process_billing_event_async.apply(args=(payload,)).get()

    assert first == {"status": "processed", "event_id": "evt-t", "credited": 1000, "balance": 1000}
    assert second == {"status": "skipped", "event_id": "evt-t"}
    assert get_balance(user_id) == 1000


@pytest.mark.django_db
def test_process_billing_event_async_reports_malformed_payload():
    result = process_billing_event_async.apply(args=({"type": "topup", "event_id": "evt-bad"},)).get()

    assert result["status"] == "failed"
    assert "user_id" in result["detail"]


@pytest.mark.django_db
def test_process_billing_event_async_retries_store_errors(user_id):
    payload = TopupEvent(event_id="evt-r", user_id=user_id, pack_sku="credits_1000").to_payload()

    with mock.patch("credits.tasks.dispatch_event", side_effect=DatabaseError("deadlock")) as dispatch:
        with mock.patch.object(process_billing_event_async, "retry", side_effect=DatabaseError("retry")) as retry:
            with pytest.raises(DatabaseError):
                process_billing_event_async.run(payload)

    dispatch.assert_called_once_with(payload)
    retry.assert_called_once()


@pytest.mark.django_db
def test_expire_stale_reservations_task_uses_override(user_id, fund):
    fund(user_id, 100)
    reserve(user_id, 2, "t1")
    Reservation.objects.filter(task_id="t1").update(created_at=timezone.now() - timedelta(hours=5))

    assert expire_stale_reservations_task.apply(kwargs={"max_age_hours": 6}).get() == {"expired": 0}
    assert expire_stale_reservations_task.apply(kwargs={"max_age_hours": 4}).get() == {"expired": 1}
    assert get_balance(user_id) == 100


@pytest.mark.django_db
def test_cleanup_processed_events_keeps_rows_and_failed_payloads(user_id):
    process_topup("evt-old", user_id, "credits_1000")
    ProcessedEvent.objects.filter(event_id="evt-old").update(processed_at=timezone.now() - timedelta(days=45))
    ProcessedEvent.objects.create(
        event_id="evt-failed",
        event_type="topup",
        status=ProcessedEvent.Status.FAILED,
        payload={"type": "topup"},
    )

    assert cleanup_processed_events.apply().get() == 1

    old = ProcessedEvent.objects.get(event_id="evt-old")
    assert old.payload == {}
    assert old.status == ProcessedEvent.Status.PROCESSED
    assert ProcessedEvent.objects.get(event_id="evt-failed").payload == {"type": "topup"}
    assert process_topup("evt-old", user_id, "credits_1000").already_processed
