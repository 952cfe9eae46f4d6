from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import CreditAccount, LedgerEntry, ProcessedEvent, Reservation


class ReadOnlyAdminMixin:
    """Ledger rows change only through the credit services."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CreditAccount)
class CreditAccountAdmin(admin.ModelAdmin):
    """Expose per-user balances and subscription state."""

    list_display = ("user_id", "balance", "plan_id", "plan_name", "cycle_end", "deactivated_at", "updated_at")
    search_fields = ("user_id", "external_customer_id")
    list_filter = ("plan_id", "created_at")
    readonly_fields = ("id", "user_id", "balance", "created_at", "updated_at")
    ordering = ("-created_at",)

    fieldsets = (
        ("Owner", {"fields": ("id", "user_id", "external_customer_id")}),
        ("Balance", {"fields": ("balance",)}),
        ("Plan", {"fields": ("plan_id", "plan_name", "cycle_start", "cycle_end")}),
        ("Lifecycle", {"fields": ("deactivated_at", "created_at", "updated_at")}),
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Read-only audit trail for credit movements."""

    list_display = ("id", "account_link", "kind", "delta", "balance_after", "created_at")
    search_fields = ("account__user_id", "reason")
    list_filter = ("kind", "created_at")
    readonly_fields = ("id", "account", "kind", "delta", "balance_after", "reason", "external_ref", "created_at")
    ordering = ("-created_at", "-id")
    list_select_related = ("account",)

    @admin.display(description="Account")
    def account_link(self, obj):
        url = reverse("admin:credits_creditaccount_change", args=[obj.account.pk])
        return format_html('<a href="{}">{}</a>', url, obj.account.user_id)


@admin.register(Reservation)
class ReservationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "task_id",
        "account",
        "reserved_credits",
        "status",
        "close_reason",
        "used_credits",
        "refunded_credits",
        "created_at",
        "closed_at",
    )
    search_fields = ("task_id", "account__user_id")
    list_filter = ("status", "close_reason", "created_at")
    readonly_fields = list_display + ("requested_seconds",)
    ordering = ("-created_at",)
    list_select_related = ("account",)


@admin.register(ProcessedEvent)
class ProcessedEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Billing event idempotency log; failed rows are replayed with ``replay_failed_events``."""

    list_display = ("event_id", "event_type", "status", "attempts", "processed_at", "updated_at")
    search_fields = ("event_id",)
    list_filter = ("status", "event_type")
    readonly_fields = (
        "event_id",
        "event_type",
        "status",
        "attempts",
        "last_error",
        "payload",
        "payload_hash",
        "created_at",
        "updated_at",
        "processed_at",
    )
    ordering = ("-created_at",)
