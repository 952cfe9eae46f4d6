"""DRF serializers for credit reservations, balances, ledger history and billing-event intake."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from credits.models import LedgerEntry, Reservation
from credits.services.billing_events import (
    EVENT_TYPES,
    ManualGrantEvent,
    RenewalEvent,
    TopupEvent,
    UpgradeEvent,
)

SECONDS_FIELD_OPTIONS = {"max_digits": 10, "decimal_places": 3, "min_value": Decimal("0")}


class ReservationRequestSerializer(serializers.Serializer):
    requested_seconds = serializers.DecimalField(**SECONDS_FIELD_OPTIONS)
    task_id = serializers.CharField(required=False, max_length=255)


class SettlementRequestSerializer(serializers.Serializer):
    actual_seconds = serializers.DecimalField(**SECONDS_FIELD_OPTIONS)


class RefundRequestSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255, default="failed")


class ReservationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Reservation
        fields = (
            "task_id",
            "reserved_credits",
            "requested_seconds",
            "status",
            "close_reason",
            "used_credits",
            "refunded_credits",
            "created_at",
            "closed_at",
        )
        read_only_fields = fields


class LedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = LedgerEntry
        fields = (
            "id",
            "delta",
            "kind",
            "reason",
            "external_ref",
            "balance_after",
            "created_at",
        )
        read_only_fields = fields


class CreditSummarySerializer(serializers.Serializer):
    """Balance card shown in the editor panel."""

    balance = serializers.IntegerField()
    plan_id = serializers.CharField()
    plan_name = serializers.CharField()
    percentage_used = serializers.FloatField(allow_null=True)
    cycle = serializers.SerializerMethodField()

    def get_cycle(self, summary) -> Dict[str, Any]:
        return {
            "start": summary.cycle_start.isoformat() if summary.cycle_start else None,
            "end": summary.cycle_end.isoformat() if summary.cycle_end else None,
        }


class TopupCheckoutSerializer(serializers.Serializer):
    pack = serializers.CharField(required=False, allow_blank=True, max_length=100)


class BaseBillingEventSerializer(serializers.Serializer):
    event_id = serializers.CharField(max_length=255)
    user_id = serializers.CharField(max_length=255)

    def validate_user_id(self, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise serializers.ValidationError(_("User identifier cannot be blank."))
        return value

    def build_event(self):
        raise NotImplementedError


class RenewalEventSerializer(BaseBillingEventSerializer):
    plan_id = serializers.CharField(max_length=100)
    plan_name = serializers.CharField(required=False, allow_blank=True, max_length=100)
    period_start = serializers.DateTimeField()
    period_end = serializers.DateTimeField()
    customer_id = serializers.CharField(required=False, allow_blank=True, max_length=255)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        if attrs["period_end"] <= attrs["period_start"]:
            raise serializers.ValidationError({"period_end": _("Billing period must end after it starts.")})
        return attrs

    def build_event(self) -> RenewalEvent:
        data = self.validated_data
        return RenewalEvent(
            event_id=data["event_id"],
            user_id=data["user_id"],
            plan_id=data["plan_id"],
            period_start=data["period_start"],
            period_end=data["period_end"],
            plan_name=data.get("plan_name") or None,
            customer_id=data.get("customer_id") or None,
        )


class TopupEventSerializer(BaseBillingEventSerializer):
    pack_sku = serializers.CharField(max_length=100)

    def build_event(self) -> TopupEvent:
        data = self.validated_data
        return TopupEvent(event_id=data["event_id"], user_id=data["user_id"], pack_sku=data["pack_sku"])


class UpgradeEventSerializer(BaseBillingEventSerializer):
    old_plan_id = serializers.CharField(max_length=100)
    new_plan_id = serializers.CharField(max_length=100)
    remaining_days = serializers.DecimalField(max_digits=8, decimal_places=3, min_value=Decimal("0"))
    cycle_days = serializers.DecimalField(max_digits=8, decimal_places=3, min_value=Decimal("0"))

    def build_event(self) -> UpgradeEvent:
        data = self.validated_data
        return UpgradeEvent(
            event_id=data["event_id"],
            user_id=data["user_id"],
            old_plan_id=data["old_plan_id"],
            new_plan_id=data["new_plan_id"],
            remaining_days=data["remaining_days"],
            cycle_days=data["cycle_days"],
        )


class ManualGrantEventSerializer(BaseBillingEventSerializer):
    credits = serializers.IntegerField(min_value=1)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)

    def build_event(self) -> ManualGrantEvent:
        data = self.validated_data
        return ManualGrantEvent(
            event_id=data["event_id"],
            user_id=data["user_id"],
            credits=data["credits"],
            reason=data.get("reason") or "Manual grant",
        )


EVENT_SERIALIZERS = {
    RenewalEvent.event_type: RenewalEventSerializer,
    TopupEvent.event_type: TopupEventSerializer,
    UpgradeEvent.event_type: UpgradeEventSerializer,
    ManualGrantEvent.event_type: ManualGrantEventSerializer,
}


class BillingEventTypeSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=sorted(EVENT_TYPES))


def billing_event_serializer(data: Dict[str, Any]) -> BaseBillingEventSerializer:
    """Pick the event serializer matching the ``type`` discriminator in ``data``."""

    type_serializer = BillingEventTypeSerializer(data=data)
    type_serializer.is_valid(raise_exception=True)
    serializer_cls = EVENT_SERIALIZERS[type_serializer.validated_data["type"]]
    return serializer_cls(data=data)
