"""Credit ledger models: accounts, immutable ledger entries, job reservations and processed billing events."""
import uuid

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q

from credits.policy import NO_PLAN


class CreditAccount(models.Model):
    """Per-user cached balance and subscription state."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stable opaque user identifier (normalised e-mail)",
    )
    balance = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Cached sum of all ledger entry deltas",
    )
    plan_id = models.CharField(max_length=100, default=NO_PLAN)
    plan_name = models.CharField(max_length=100, default=NO_PLAN)
    cycle_start = models.DateTimeField(null=True, blank=True)
    cycle_end = models.DateTimeField(null=True, blank=True)
    external_customer_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Billing provider customer reference when known",
    )
    deactivated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credits_account"
        verbose_name = "Credit account"
        verbose_name_plural = "Credit accounts"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(balance__gte=0),
                name="credit_account_balance_non_negative",
            ),
        ]

    def delete(self, *args, **kwargs):
        raise ValidationError("CreditAccount records cannot be deleted; deactivate them instead.")

    @property
    def has_plan(self) -> bool:
        return bool(self.plan_id) and self.plan_id != NO_PLAN

    def __str__(self):
        return f"CreditAccount<{self.user_id}:{self.balance}>"


class LedgerEntry(models.Model):
    """Immutable audit trail for all credit balance changes."""

    class Kind(models.TextChoices):
        BASE_RESET = "BASE_RESET", "Base reset"
        TOPUP = "TOPUP", "Top-up"
        JOB_RESERVE = "JOB_RESERVE", "Job reserve"
        JOB_REFUND = "JOB_REFUND", "Job refund"
        JOB_FAIL_REFUND = "JOB_FAIL_REFUND", "Job failure refund"
        TIER_UPGRADE_BONUS = "TIER_UPGRADE_BONUS", "Tier upgrade bonus"

    id = models.BigAutoField(primary_key=True)
    account = models.ForeignKey(
        CreditAccount,
        on_delete=models.PROTECT,
        related_name="entries",
    )
    delta = models.IntegerField(help_text="Signed credit amount; positive for credits, negative for debits")
    kind = models.CharField(max_length=32, choices=Kind.choices)
    reason = models.TextField(blank=True)
    external_ref = models.JSONField(
        default=dict,
        blank=True,
        help_text="Order, task or event identifiers that caused this entry",
    )
    balance_after = models.IntegerField(help_text="Cached balance immediately after this entry")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = "credits_ledger_entry"
        verbose_name = "Ledger entry"
        verbose_name_plural = "Ledger entries"
        ordering = ["-created_at", "-id"]
        constraints = [
            models.CheckConstraint(condition=~Q(delta=0), name="ledger_entry_non_zero"),
        ]
        indexes = [
            models.Index(fields=["account", "kind"], name="ledger_entry_account_kind_idx"),
        ]

    def save(self, *args, **kwargs):
        if self.pk and LedgerEntry.objects.filter(pk=self.pk).exists():
            raise ValidationError("LedgerEntry records are immutable and cannot be updated.")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("LedgerEntry records are immutable and cannot be deleted.")

    def __str__(self):
        return f"LedgerEntry<{self.kind}:{self.delta} for {self.account_id}>"


class Reservation(models.Model):
    """Credit hold for one in-flight generation job."""

    class Status(models.TextChoices):
        OPEN = "open", "Open"
        CLOSED = "closed", "Closed"

    class CloseReason(models.TextChoices):
        SETTLED = "settled", "Settled"
        FAILED = "failed", "Failed"
        EXPIRED = "expired", "Expired"

    id = models.BigAutoField(primary_key=True)
    task_id = models.CharField(max_length=255, unique=True)
    account = models.ForeignKey(
        CreditAccount,
        on_delete=models.PROTECT,
        related_name="reservations",
    )
    reserved_credits = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    requested_seconds = models.DecimalField(max_digits=10, decimal_places=3, null=True, blank=True)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.OPEN)
    close_reason = models.CharField(max_length=10, choices=CloseReason.choices, blank=True)
    used_credits = models.PositiveIntegerField(null=True, blank=True)
    refunded_credits = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "credits_reservation"
        verbose_name = "Reservation"
        verbose_name_plural = "Reservations"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="reservation_status_age_idx"),
        ]

    def delete(self, *args, **kwargs):
        raise ValidationError("Reservation records are closed, never deleted.")

    @property
    def is_open(self) -> bool:
        return self.status == self.Status.OPEN

    def __str__(self):
        return f"Reservation<{self.task_id}:{self.status}>"


class ProcessedEvent(models.Model):
    """Keeps track of billing events to guarantee idempotent processing."""

    class Status(models.TextChoices):
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=64, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PROCESSING,
    )
    payload = models.JSONField(
        default=dict,
        blank=True,
        help_text="Normalised event payload, kept so failed events can be replayed.",
    )
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the normalised payload for drift detection.",
    )
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "credits_processed_event"
        verbose_name = "Processed event"
        verbose_name_plural = "Processed events"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="processed_event_status_idx"),
            models.Index(fields=["event_type"], name="processed_event_type_idx"),
        ]

    def __str__(self):
        return f"ProcessedEvent<{self.event_id}:{self.status}>"
