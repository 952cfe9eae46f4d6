"""URL routes for credits endpoints."""
from django.urls import path

from .views import (
    BillingEventIntakeView,
    CreditBalanceView,
    LedgerEntryListView,
    ReservationListCreateView,
    ReservationRefundView,
    ReservationSettleView,
    TopupCheckoutView,
)

app_name = "credits"

urlpatterns = [
    path("jobs/", ReservationListCreateView.as_view(), name="jobs"),
    path("jobs/<str:task_id>/settle/", ReservationSettleView.as_view(), name="job-settle"),
    path("jobs/<str:task_id>/refund/", ReservationRefundView.as_view(), name="job-refund"),
    path("balance/", CreditBalanceView.as_view(), name="balance"),
    path("ledger/", LedgerEntryListView.as_view(), name="ledger"),
    path("checkout/topup/", TopupCheckoutView.as_view(), name="checkout-topup"),
    path("events/", BillingEventIntakeView.as_view(), name="billing-events"),
]
