"""Credit ledger helpers: the only code path that mutates a cached account balance."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import Sum
from django.db.transaction import TransactionManagementError

from credits.exceptions import InsufficientCredits
from credits.models import CreditAccount, LedgerEntry
from credits.policy import get_credit_policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditSummary:
    balance: int
    plan_id: str
    plan_name: str
    cycle_start: Optional[datetime]
    cycle_end: Optional[datetime]
    percentage_used: Optional[float]


@dataclass(frozen=True)
class BalanceCheck:
    user_id: str
    cached_balance: int
    ledger_balance: int

    @property
    def drift(self) -> int:
        return self.cached_balance - self.ledger_balance

    @property
    def ok(self) -> bool:
        return self.drift == 0


def append_and_adjust(
    user_id: str,
    delta: int,
    kind: str,
    reason: str = "",
    external_ref: Optional[Dict[str, Any]] = None,
) -> int:
    """Append one ledger entry for ``user_id`` and return the new balance.

    Debits that would take the balance below zero raise ``InsufficientCredits``
    and leave nothing written.
    """

    with transaction.atomic():
        account = lock_account(user_id)
        entry = _apply_entry(
            account=account,
            delta=delta,
            kind=kind,
            reason=reason,
            external_ref=external_ref,
        )
        return entry.balance_after


def get_balance(user_id: str) -> int:
    balance = (
        CreditAccount.objects.filter(user_id=user_id)
        .values_list("balance", flat=True)
        .first()
    )
    return balance or 0


def get_balance_for_update(user_id: str) -> int:
    """Balance read under the account lock; call inside ``transaction.atomic()``."""

    if not transaction.get_connection().in_atomic_block:
        raise TransactionManagementError("get_balance_for_update requires an atomic block.")
    return lock_account(user_id).balance


def lock_account(user_id: str) -> CreditAccount:
    account, _ = CreditAccount.objects.get_or_create(user_id=user_id)
    return CreditAccount.objects.select_for_update().get(pk=account.pk)


def get_credit_summary(user_id: str) -> CreditSummary:
    account = CreditAccount.objects.filter(user_id=user_id).first()
    if account is None:
        account = CreditAccount(user_id=user_id)
    policy = get_credit_policy()
    return CreditSummary(
        balance=account.balance,
        plan_id=account.plan_id,
        plan_name=account.plan_name,
        cycle_start=account.cycle_start,
        cycle_end=account.cycle_end,
        percentage_used=policy.percentage_used(account.plan_id, account.balance),
    )


def recent_entries(user_id: str, limit: int = 50) -> List[LedgerEntry]:
    return list(
        LedgerEntry.objects.filter(account__user_id=user_id).order_by("-created_at", "-id")[:limit]
    )


def verify_account_balance(user_id: str) -> BalanceCheck:
    account = CreditAccount.objects.get(user_id=user_id)
    total = account.entries.aggregate(total=Sum("delta"))["total"] or 0
    return BalanceCheck(
        user_id=user_id,
        cached_balance=account.balance,
        ledger_balance=total,
    )


def _apply_entry(
    *,
    account: CreditAccount,
    delta: int,
    kind: str,
    reason: str = "",
    external_ref: Optional[Dict[str, Any]] = None,
) -> LedgerEntry:
    """Write an entry against an account row the caller already holds locked."""

    if not isinstance(delta, int) or isinstance(delta, bool):
        raise ValueError("Ledger delta must be an integer.")
    if delta == 0:
        raise ValueError("Ledger delta must be non-zero.")
    if kind not in LedgerEntry.Kind.values:
        raise ValueError(f"Unknown ledger entry kind '{kind}'.")

    new_balance = (account.balance or 0) + delta
    if new_balance < 0:
        raise InsufficientCredits(needed=-delta, balance=account.balance)

    account.balance = new_balance
    account.save(update_fields=["balance", "updated_at"])

    entry = LedgerEntry.objects.create(
        account=account,
        delta=delta,
        kind=kind,
        reason=reason or "",
        external_ref=external_ref or {},
        balance_after=new_balance,
    )
    logger.debug(
        "Ledger entry %s %s for account %s; balance now %s.",
        kind,
        delta,
        account.pk,
        new_balance,
    )
    return entry
