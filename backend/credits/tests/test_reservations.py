from datetime import timedelta

import pytest
from django.db.models import Sum
from django.utils import timezone

from credits.exceptions import DuplicateTask, InsufficientCredits
from credits.models import CreditAccount, LedgerEntry, Reservation
from credits.services.ledger import get_balance
from credits.services.reservations import expire_stale_reservations, refund_all, reserve, settle


def _kinds(user_id):
    return list(
        LedgerEntry.objects.filter(account__user_id=user_id).order_by("id").values_list("kind", "delta")
    )


def _assert_ledger_matches_cache(user_id):
    account = CreditAccount.objects.get(user_id=user_id)
    assert (account.entries.aggregate(total=Sum("delta"))["total"] or 0) == account.balance


@pytest.mark.django_db
def test_reserve_with_empty_balance_is_rejected(user_id):
    with pytest.raises(InsufficientCredits) as exc:
        reserve(user_id, 5, "t1")

    assert (exc.value.needed, exc.value.balance) == (75, 0)
    assert get_balance(user_id) == 0
    assert not LedgerEntry.objects.exists()
    assert not Reservation.objects.exists()


@pytest.mark.django_db
def test_reserve_debits_and_opens_reservation(user_id, fund):
    fund(user_id, 100)

    result = reserve(user_id, 5, "t1")

    assert (result.task_id, result.reserved_credits, result.balance) == ("t1", 75, 25)
    assert get_balance(user_id) == 25
    assert _kinds(user_id)[-1] == (LedgerEntry.Kind.JOB_RESERVE, -75)
    reservation = Reservation.objects.get(task_id="t1")
    assert reservation.is_open
    assert reservation.reserved_credits == 75


@pytest.mark.django_db
def test_settle_refunds_unused_credits_once(user_id, fund):
    fund(user_id, 100)
    reserve(user_id, 5, "t1")

    result = settle("t1", 3)

    assert (result.used_credits, result.refund_credits) == (45, 30)
    assert get_balance(user_id) == 55
    assert _kinds(user_id)[-1] == (LedgerEntry.Kind.JOB_REFUND, 30)
    reservation = Reservation.objects.get(task_id="t1")
    assert reservation.status == Reservation.Status.CLOSED
    assert reservation.close_reason == Reservation.CloseReason.SETTLED
    assert (reservation.used_credits, reservation.refunded_credits) == (45, 30)

    again = settle("t1", 1)
    assert (again.used_credits, again.refund_credits) == (0, 0)
    assert get_balance(user_id) == 55
    _assert_ledger_matches_cache(user_id)


@pytest.mark.django_db
def test_refund_all_restores_balance_and_is_idempotent(user_id, fund):
    fund(user_id, 100)
    reserve(user_id, 5, "t1")

    assert refund_all("t1").refund_credits == 75
    assert get_balance(user_id) == 100
    assert Reservation.objects.get(task_id="t1").close_reason == Reservation.CloseReason.FAILED

    assert refund_all("t1").refund_credits == 0
    assert settle("t1", 2).refund_credits == 0
    assert get_balance(user_id) == 100
    assert [kind for kind, _ in _kinds(user_id)].count(LedgerEntry.Kind.JOB_FAIL_REFUND) == 1
    _assert_ledger_matches_cache(user_id)


@pytest.mark.django_db
def test_refund_after_settle_is_a_no_op(user_id, fund):
    fund(user_id, 100)
    reserve(user_id, 5, "t1")
    settle("t1", 5)

    assert refund_all("t1").refund_credits == 0
    assert get_balance(user_id) == 25


@pytest.mark.django_db
def test_settle_never_charges_beyond_reservation(user_id, fund):
    fund(user_id, 200)
    reserve(user_id, 2, "t1")

    result = settle("t1", 10)

    assert (result.used_credits, result.refund_credits) == (30, 0)
    assert get_balance(user_id) == 170
    assert _kinds(user_id)[-1] == (LedgerEntry.Kind.JOB_RESERVE, -30)


@pytest.mark.django_db
def test_duplicate_task_is_rejected_without_second_debit(user_id, fund):
    fund(user_id, 500)
    reserve(user_id, 5, "t1")

    with pytest.raises(DuplicateTask) as exc:
        reserve(user_id, 5, "t1")

    assert exc.value.task_id == "t1"
    assert get_balance(user_id) == 425
    assert Reservation.objects.filter(task_id="t1").count() == 1


@pytest.mark.django_db
def test_reserve_generates_task_id_when_missing(user_id, fund):
    fund(user_id, 100)

    result = reserve(user_id, "1.2")

    assert result.task_id.startswith("task_")
    assert Reservation.objects.filter(task_id=result.task_id).exists()


@pytest.mark.django_db
def test_unknown_task_settle_and_refund_are_no_ops(user_id, fund):
    fund(user_id, 100)

    assert settle("missing", 3).refund_credits == 0
    assert refund_all("missing").refund_credits == 0
    assert get_balance(user_id) == 100


@pytest.mark.django_db
def test_other_users_cannot_close_a_reservation(user_id, fund):
    fund(user_id, 100)
    reserve(user_id, 5, "t1")

    assert settle("t1", 1, user_id="mallory@example.com").refund_credits == 0
    assert refund_all("t1", user_id="mallory@example.com").refund_credits == 0
    assert Reservation.objects.get(task_id="t1").is_open
    assert get_balance(user_id) == 25


@pytest.mark.django_db
def test_expire_stale_reservations_refunds_old_holds_only(user_id, fund):
    fund(user_id, 300)
    reserve(user_id, 5, "old")
    reserve(user_id, 5, "fresh")
    Reservation.objects.filter(task_id="old").update(created_at=timezone.now() - timedelta(hours=30))

    assert expire_stale_reservations() == 1

    old = Reservation.objects.get(task_id="old")
    assert old.status == Reservation.Status.CLOSED
    assert old.close_reason == Reservation.CloseReason.EXPIRED
    assert Reservation.objects.get(task_id="fresh").is_open
    assert get_balance(user_id) == 225
    assert expire_stale_reservations() == 0
    _assert_ledger_matches_cache(user_id)


@pytest.mark.django_db
def test_expire_stale_reservations_honours_custom_age(user_id, fund):
    fund(user_id, 100)
    reserve(user_id, 1, "t1")

    now = timezone.now() + timedelta(hours=2)

    assert expire_stale_reservations(max_age=timedelta(hours=3), now=now) == 0
    assert expire_stale_reservations(max_age=timedelta(hours=1), now=now) == 1
    assert get_balance(user_id) == 100


@pytest.mark.django_db
def test_balance_never_goes_negative_across_a_job_sequence(user_id, fund):
    fund(user_id, 160)
    reserve(user_id, 4, "a")
    reserve(user_id, 4, "b")
    with pytest.raises(InsufficientCredits):
        reserve(user_id, 4, "c")
    settle("a", 1)
    refund_all("b")
    reserve(user_id, 6, "c")

    assert get_balance(user_id) == 160 - 15 - 90
    _assert_ledger_matches_cache(user_id)
