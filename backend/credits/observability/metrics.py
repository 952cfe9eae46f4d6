"""Prometheus metrics helpers for the credit ledger."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

CREDITS_REQUEST_COUNT = Counter(
    "credits_request_total",
    "Number of credits API requests",
    labelnames=("endpoint", "method", "status"),
)

CREDITS_REQUEST_LATENCY = Histogram(
    "credits_request_duration_seconds",
    "Latency of credits API requests",
    labelnames=("endpoint", "method"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

RESERVATION_COUNT = Counter(
    "credits_reservation_total",
    "Reservation attempts by outcome",
    labelnames=("outcome",),
)

REFUND_COUNT = Counter(
    "credits_refund_total",
    "Reservations closed with a refund entry",
    labelnames=("kind",),
)

REFUNDED_CREDITS = Counter(
    "credits_refunded_credits_total",
    "Credits returned to users by refund kind",
    labelnames=("kind",),
)

BILLING_EVENT_COUNT = Counter(
    "credits_billing_event_total",
    "Billing events handled by type and final status",
    labelnames=("event_type", "status"),
)
