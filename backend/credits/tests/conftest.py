import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from credits.models import LedgerEntry
from credits.services.ledger import append_and_adjust


@pytest.fixture(autouse=True)
def credit_settings(settings):
    settings.CREDITS_PER_SECOND = 15
    settings.CREDIT_ROUNDING = "round"
    settings.DEFAULT_PLAN_CREDITS = 1000
    settings.PLAN_BASE_CREDITS = {"tier1": 1000, "tier2": 2500, "tier3": 8000}
    settings.PLAN_NAMES = {"tier1": "Creator", "tier2": "Studio", "tier3": "Pro"}
    settings.TOPUP_PACK_CREDITS = {"credits_1000": 1000, "credits_2000": 2000}
    settings.TOPUP_CHECKOUT_URLS = {
        "credits_1000": "https://shop.example.com/cart/add?sku=TOPUP-1000",
        "credits_2000": "https://shop.example.com/cart/add?sku=TOPUP-2000",
    }
    settings.TOPUP_DEFAULT_PACK = "credits_1000"
    settings.RESERVATION_MAX_AGE_HOURS = 24
    settings.PROCESSED_EVENT_RETENTION_DAYS = 30
    settings.BILLING_EVENT_SECRET = "test-secret"
    return settings


@pytest.fixture
def user_id():
    return "alice@example.com"


@pytest.fixture
def fund():
    def _fund(user_id: str, credits: int) -> int:
        return append_and_adjust(user_id, credits, LedgerEntry.Kind.TOPUP, reason="test funding")

    return _fund


@pytest.fixture
def api_user(db):
    return get_user_model().objects.create_user(
        username="alice",
        email="Alice@Example.com",
        password="pass1234",
    )


@pytest.fixture
def api_client(api_user):
    client = APIClient()
    client.force_authenticate(user=api_user)
    return client
