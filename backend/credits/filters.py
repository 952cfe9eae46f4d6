"""FilterSet definitions for credits endpoints."""
from __future__ import annotations

import django_filters

from credits.models import LedgerEntry, Reservation


class LedgerEntryFilter(django_filters.FilterSet):
    kind = django_filters.CharFilter(field_name="kind", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")
    task_id = django_filters.CharFilter(field_name="external_ref__task_id")

    class Meta:
        model = LedgerEntry
        fields = ["kind"]


class ReservationFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    close_reason = django_filters.CharFilter(field_name="close_reason", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = Reservation
        fields = ["status", "close_reason"]
