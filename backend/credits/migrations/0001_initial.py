import uuid

import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="CreditAccount",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "user_id",
                    models.CharField(
                        help_text="Stable opaque user identifier (normalised e-mail)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "balance",
                    models.IntegerField(
                        default=0,
                        help_text="Cached sum of all ledger entry deltas",
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("plan_id", models.CharField(default="none", max_length=100)),
                ("plan_name", models.CharField(default="none", max_length=100)),
                ("cycle_start", models.DateTimeField(blank=True, null=True)),
                ("cycle_end", models.DateTimeField(blank=True, null=True)),
                (
                    "external_customer_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Billing provider customer reference when known",
                        max_length=255,
                    ),
                ),
                ("deactivated_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Credit account",
                "verbose_name_plural": "Credit accounts",
                "db_table": "credits_account",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(balance__gte=0),
                        name="credit_account_balance_non_negative",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="ProcessedEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[("processing", "Processing"), ("processed", "Processed"), ("failed", "Failed")],
                        default="processing",
                        max_length=20,
                    ),
                ),
                (
                    "payload",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Normalised event payload, kept so failed events can be replayed.",
                    ),
                ),
                (
                    "payload_hash",
                    models.CharField(
                        blank=True,
                        help_text="SHA256 of the normalised payload for drift detection.",
                        max_length=64,
                    ),
                ),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Processed event",
                "verbose_name_plural": "Processed events",
                "db_table": "credits_processed_event",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status"], name="processed_event_status_idx"),
                    models.Index(fields=["event_type"], name="processed_event_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "delta",
                    models.IntegerField(help_text="Signed credit amount; positive for credits, negative for debits"),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("BASE_RESET", "Base reset"),
                            ("TOPUP", "Top-up"),
                            ("JOB_RESERVE", "Job reserve"),
                            ("JOB_REFUND", "Job refund"),
                            ("JOB_FAIL_REFUND", "Job failure refund"),
                            ("TIER_UPGRADE_BONUS", "Tier upgrade bonus"),
                        ],
                        max_length=32,
                    ),
                ),
                ("reason", models.TextField(blank=True)),
                (
                    "external_ref",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Order, task or event identifiers that caused this entry",
                    ),
                ),
                ("balance_after", models.IntegerField(help_text="Cached balance immediately after this entry")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="entries",
                        to="credits.creditaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger entry",
                "verbose_name_plural": "Ledger entries",
                "db_table": "credits_ledger_entry",
                "ordering": ["-created_at", "-id"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("delta", 0), _negated=True), name="ledger_entry_non_zero")
                ],
                "indexes": [
                    models.Index(fields=["account", "kind"], name="ledger_entry_account_kind_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Reservation",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("task_id", models.CharField(max_length=255, unique=True)),
                (
                    "reserved_credits",
                    models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)]),
                ),
                (
                    "requested_seconds",
                    models.DecimalField(blank=True, decimal_places=3, max_digits=10, null=True),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("open", "Open"), ("closed", "Closed")],
                        default="open",
                        max_length=10,
                    ),
                ),
                (
                    "close_reason",
                    models.CharField(
                        blank=True,
                        choices=[("settled", "Settled"), ("failed", "Failed"), ("expired", "Expired")],
                        max_length=10,
                    ),
                ),
                ("used_credits", models.PositiveIntegerField(blank=True, null=True)),
                ("refunded_credits", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reservations",
                        to="credits.creditaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Reservation",
                "verbose_name_plural": "Reservations",
                "db_table": "credits_reservation",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="reservation_status_age_idx"),
                ],
            },
        ),
    ]
