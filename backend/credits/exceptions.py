"""Exception types raised by the credit ledger."""
from __future__ import annotations


class CreditLedgerError(Exception):
    """Base exception for credit ledger operations."""


class InsufficientCredits(CreditLedgerError):
    """Raised when a debit would exceed the available balance."""

    code = "insufficient_credits"

    def __init__(self, needed: int, balance: int):
        self.needed = needed
        self.balance = balance
        super().__init__(f"Insufficient credits. Required: {needed}, available: {balance}.")


class DuplicateTask(CreditLedgerError):
    """Raised when a reservation already exists for the task identifier."""

    code = "duplicate_task"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"A reservation already exists for task {task_id}.")


class BillingEventError(CreditLedgerError):
    """Raised when a billing event payload cannot be interpreted."""
