import pytest
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Sum
from django.db.transaction import TransactionManagementError

from credits.exceptions import InsufficientCredits
from credits.models import CreditAccount, LedgerEntry
from credits.policy import NO_PLAN
from credits.services.ledger import (
    append_and_adjust,
    get_balance,
    get_balance_for_update,
    get_credit_summary,
    recent_entries,
    verify_account_balance,
)


@pytest.mark.django_db
def test_append_and_adjust_updates_cache_and_snapshots_balance(user_id):
    assert append_and_adjust(user_id, 500, LedgerEntry.Kind.TOPUP, reason="pack") == 500
    assert append_and_adjust(user_id, -120, LedgerEntry.Kind.JOB_RESERVE) == 380

    account = CreditAccount.objects.get(user_id=user_id)
    assert account.balance == 380
    assert list(account.entries.order_by("id").values_list("delta", "balance_after")) == [(500, 500), (-120, 380)]
    assert account.entries.aggregate(total=Sum("delta"))["total"] == account.balance


@pytest.mark.django_db
def test_append_and_adjust_rejects_overdraft_without_writing(user_id, fund):
    fund(user_id, 50)

    with pytest.raises(InsufficientCredits) as exc:
        append_and_adjust(user_id, -75, LedgerEntry.Kind.JOB_RESERVE)

    assert exc.value.needed == 75
    assert exc.value.balance == 50
    assert get_balance(user_id) == 50
    assert LedgerEntry.objects.filter(account__user_id=user_id).count() == 1


@pytest.mark.django_db
@pytest.mark.parametrize("delta", [0, 1.5, True])
def test_append_and_adjust_rejects_invalid_delta(user_id, delta):
    with pytest.raises(ValueError):
        append_and_adjust(user_id, delta, LedgerEntry.Kind.TOPUP)

    assert not LedgerEntry.objects.exists()


@pytest.mark.django_db
def test_append_and_adjust_rejects_unknown_kind(user_id):
    with pytest.raises(ValueError):
        append_and_adjust(user_id, 10, "BONUS")


@pytest.mark.django_db
def test_get_balance_for_unknown_user_is_zero_and_creates_nothing():
    assert get_balance("nobody@example.com") == 0
    assert not CreditAccount.objects.filter(user_id="nobody@example.com").exists()


@pytest.mark.django_db(transaction=True)
def test_get_balance_for_update_requires_atomic_block(user_id, fund):
    fund(user_id, 30)

    with pytest.raises(TransactionManagementError):
        get_balance_for_update(user_id)

    with transaction.atomic():
        assert get_balance_for_update(user_id) == 30


@pytest.mark.django_db
def test_get_balance_for_update_creates_account_under_lock():
    with transaction.atomic():
        assert get_balance_for_update("new@example.com") == 0

    assert CreditAccount.objects.filter(user_id="new@example.com").exists()


@pytest.mark.django_db
def test_credit_summary_for_unknown_user_has_no_plan():
    summary = get_credit_summary("ghost@example.com")

    assert summary.balance == 0
    assert summary.plan_id == NO_PLAN
    assert summary.cycle_start is None
    assert summary.percentage_used is None


@pytest.mark.django_db
def test_credit_summary_reports_percentage_used(user_id, fund):
    fund(user_id, 1000)
    CreditAccount.objects.filter(user_id=user_id).update(plan_id="tier2", plan_name="Studio")

    summary = get_credit_summary(user_id)

    assert summary.balance == 1000
    assert summary.plan_name == "Studio"
    assert summary.percentage_used == 60.0


@pytest.mark.django_db
def test_recent_entries_are_newest_first_and_limited(user_id, fund):
    for amount in (10, 20, 30):
        fund(user_id, amount)

    entries = recent_entries(user_id, limit=2)

    assert [entry.delta for entry in entries] == [30, 20]


@pytest.mark.django_db
def test_verify_account_balance_detects_drift(user_id, fund):
    fund(user_id, 100)
    assert verify_account_balance(user_id).ok

    CreditAccount.objects.filter(user_id=user_id).update(balance=90)
    check = verify_account_balance(user_id)

    assert not check.ok
    assert check.drift == -10
    assert check.ledger_balance == 100


@pytest.mark.django_db
def test_ledger_rows_are_immutable(user_id, fund):
    fund(user_id, 100)
    entry = LedgerEntry.objects.get(account__user_id=user_id)
    account = CreditAccount.objects.get(user_id=user_id)

    entry.delta = 1000
    with pytest.raises(ValidationError):
        entry.save()
    with pytest.raises(ValidationError):
        entry.delete()
    with pytest.raises(ValidationError):
        account.delete()

    assert LedgerEntry.objects.get(pk=entry.pk).delta == 100
