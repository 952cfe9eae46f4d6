"""Credits API: job reservations, settlement, balances, ledger history and billing-event intake."""
from __future__ import annotations

import json
import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import serializers as drf_serializers
from rest_framework.generics import ListAPIView
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from credits.exceptions import DuplicateTask, InsufficientCredits
from credits.filters import LedgerEntryFilter, ReservationFilter
from credits.models import LedgerEntry, ProcessedEvent, Reservation
from credits.observability.logging import log_credit_event
from credits.observability.metrics import CREDITS_REQUEST_COUNT, CREDITS_REQUEST_LATENCY
from credits.pagination import BoundedPageNumberPagination
from credits.serializers import (
    CreditSummarySerializer,
    LedgerEntrySerializer,
    RefundRequestSerializer,
    ReservationRequestSerializer,
    ReservationSerializer,
    SettlementRequestSerializer,
    TopupCheckoutSerializer,
    billing_event_serializer,
)
from credits.services.ledger import get_credit_summary
from credits.services.reservations import refund_all, reserve, settle
from credits.services.signatures import (
    SIGNATURE_HEADER,
    SignatureConfigurationError,
    verify_event_signature,
)
from credits.tasks import process_billing_event_async

logger = logging.getLogger(__name__)


def caller_user_id(user) -> str:
    """Ledger key for an authenticated caller: the lower-cased e-mail address."""

    identifier = getattr(user, "email", "") or user.get_username()
    return str(identifier).strip().lower()


class CreditsMetricsMixin:
    endpoint_label: str = "credits"

    def _method(self) -> str:
        request = getattr(self, "request", None)
        return getattr(request, "method", None) or "POST"

    def _latency(self):
        return CREDITS_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=self._method()).time()

    def _record_request(self, status: int) -> None:
        CREDITS_REQUEST_COUNT.labels(
            endpoint=self.endpoint_label,
            method=self._method(),
            status=str(status),
        ).inc()

    def _success_response(self, payload, *, status: int = 200, user_id: str | None = None,
                          message: str | None = None, task_id: str | None = None):
        self._record_request(status)
        if message:
            log_credit_event(message=message, user_id=user_id, task_id=task_id)
        return Response(payload, status=status)

    def _error_response(self, *, status: int, code: str, message: str, details: dict | None = None,
                        user_id: str | None = None, task_id: str | None = None):
        self._record_request(status)
        log_credit_event(
            message=message,
            user_id=user_id,
            task_id=task_id,
            level=logging.WARNING if status >= 500 else logging.INFO,
            extra={"code": code, "details": details or {}},
        )
        payload = {"code": code, "message": message}
        payload.update(details or {})
        return Response(payload, status=status)


class ReservationListCreateView(CreditsMetricsMixin, ListAPIView):
    """List the caller's reservations or reserve credits for a new generation job."""

    serializer_class = ReservationSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = ReservationFilter
    ordering_fields = ("created_at", "reserved_credits", "closed_at")
    ordering = ("-created_at",)
    endpoint_label = "jobs"

    def get_queryset(self):
        return Reservation.objects.filter(account__user_id=caller_user_id(self.request.user)).order_by("-created_at")

    def list(self, request, *args, **kwargs):
        with self._latency():
            response = super().list(request, *args, **kwargs)
            self._record_request(response.status_code)
            return response

    def post(self, request, *args, **kwargs):
        with self._latency():
            user_id = caller_user_id(request.user)
            serializer = ReservationRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Reservation request is invalid.",
                    details={"errors": serializer.errors},
                    user_id=user_id,
                )
            data = serializer.validated_data
            try:
                result = reserve(user_id, data["requested_seconds"], task_id=data.get("task_id"))
            except InsufficientCredits as exc:
                return self._error_response(
                    status=402,
                    code=exc.code,
                    message="Not enough credits for this generation.",
                    details={"needed": exc.needed, "balance": exc.balance},
                    user_id=user_id,
                )
            except DuplicateTask as exc:
                return self._error_response(
                    status=409,
                    code=exc.code,
                    message="A reservation already exists for this task.",
                    details={"task_id": exc.task_id},
                    user_id=user_id,
                    task_id=exc.task_id,
                )
            return self._success_response(
                {
                    "task_id": result.task_id,
                    "reserved_credits": result.reserved_credits,
                    "balance": result.balance,
                },
                status=201,
            )


class ReservationSettleView(CreditsMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "jobs.settle"

    def post(self, request, task_id: str):
        with self._latency():
            serializer = SettlementRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Settlement request is invalid.",
                    details={"errors": serializer.errors},
                    task_id=task_id,
                )
            result = settle(
                task_id,
                serializer.validated_data["actual_seconds"],
                user_id=caller_user_id(request.user),
            )
            return self._success_response(
                {"used_credits": result.used_credits, "refund_credits": result.refund_credits},
            )


class ReservationRefundView(CreditsMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "jobs.refund"

    def post(self, request, task_id: str):
        with self._latency():
            serializer = RefundRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Refund request is invalid.",
                    details={"errors": serializer.errors},
                    task_id=task_id,
                )
            result = refund_all(
                task_id,
                reason=serializer.validated_data.get("reason") or "failed",
                user_id=caller_user_id(request.user),
            )
            return self._success_response({"refund_credits": result.refund_credits})


class CreditBalanceView(CreditsMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "balance"

    def get(self, request):
        with self._latency():
            summary = get_credit_summary(caller_user_id(request.user))
            return self._success_response(CreditSummarySerializer(summary).data)


class LedgerEntryListView(CreditsMetricsMixin, ListAPIView):
    """Recent ledger history for the authenticated caller."""

    serializer_class = LedgerEntrySerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = LedgerEntryFilter
    ordering_fields = ("created_at", "delta", "kind")
    ordering = ("-created_at", "-id")
    endpoint_label = "ledger"

    def get_queryset(self):
        return (
            LedgerEntry.objects.filter(account__user_id=caller_user_id(self.request.user))
            .order_by("-created_at", "-id")
        )

    def list(self, request, *args, **kwargs):
        with self._latency():
            response = super().list(request, *args, **kwargs)
            self._record_request(response.status_code)
            return response


class TopupCheckoutView(CreditsMetricsMixin, APIView):
    """Hand back the storefront checkout link for a credit pack."""

    permission_classes = [IsAuthenticated]
    endpoint_label = "checkout.topup"

    def post(self, request):
        with self._latency():
            serializer = TopupCheckoutSerializer(data=request.data)
            if not serializer.is_valid():
                return self._error_response(
                    status=400,
                    code="invalid_request",
                    message="Top-up checkout request is invalid.",
                    details={"errors": serializer.errors},
                )
            urls = getattr(settings, "TOPUP_CHECKOUT_URLS", {}) or {}
            default_pack = getattr(settings, "TOPUP_DEFAULT_PACK", "credits_1000")
            pack = serializer.validated_data.get("pack") or default_pack
            if pack not in urls:
                pack = default_pack
            url = urls.get(pack)
            if not url:
                return self._error_response(
                    status=503,
                    code="checkout_unavailable",
                    message="Top-up checkout is not configured.",
                    details={"pack": pack},
                )
            return self._success_response({"pack": pack, "url": url})


@method_decorator(csrf_exempt, name="dispatch")
class BillingEventIntakeView(CreditsMetricsMixin, APIView):
    """Receive signed, normalised billing events and enqueue them for processing."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]
    endpoint_label = "events"

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        with self._latency():
            body = request.body or b""
            secret = getattr(settings, "BILLING_EVENT_SECRET", "")
            if secret or not settings.DEBUG:
                try:
                    verified = verify_event_signature(body, request.headers.get(SIGNATURE_HEADER), secret)
                except SignatureConfigurationError as exc:
                    logger.error("Billing event intake misconfigured: %s", exc)
                    return self._error_response(status=503, code="events_unavailable", message=str(exc))
                if not verified:
                    logger.warning("Billing event signature verification failed.")
                    return self._error_response(status=401, code="invalid_signature", message="Invalid signature.")

            try:
                payload = json.loads(body.decode("utf-8") or "{}")
            except (UnicodeDecodeError, ValueError):
                return self._error_response(status=400, code="invalid_payload", message="Body must be JSON.")
            if not isinstance(payload, dict):
                return self._error_response(status=400, code="invalid_payload", message="Body must be a JSON object.")

            try:
                serializer = billing_event_serializer(payload)
                serializer.is_valid(raise_exception=True)
            except drf_serializers.ValidationError as exc:
                return self._error_response(
                    status=400,
                    code="invalid_event",
                    message="Billing event failed validation.",
                    details={"errors": exc.detail},
                )
            event = serializer.build_event()

            if ProcessedEvent.objects.filter(
                event_id=event.event_id,
                status=ProcessedEvent.Status.PROCESSED,
            ).exists():
                logger.info("Billing event %s (%s) already processed.", event.event_id, event.event_type)
                return self._success_response({"status": ProcessedEvent.Status.PROCESSED, "event_id": event.event_id})

            process_billing_event_async.delay(event.to_payload())
            return self._success_response(
                {"status": "queued", "event_id": event.event_id},
                status=202,
                user_id=event.user_id,
                message="Queued billing event",
            )
