import logging
from decimal import Decimal

import pytest

from credits.policy import (
    NO_PLAN,
    CreditPolicy,
    CreditPolicyConfigurationError,
    get_credit_policy,
    resolve_plan_name,
)


@pytest.fixture
def policy():
    return CreditPolicy(
        credits_per_second=15,
        plan_base_credits={"tier1": 1000, "tier2": 2500},
        topup_pack_credits={"credits_1000": 1000},
    )


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (5, 75),
        (3, 45),
        ("4.4", 60),
        (Decimal("4.5"), 75),
        (0.4, 15),
        (0, 15),
        (-3, 15),
        (10.49, 150),
    ],
)
def test_credits_for_seconds_rounds_half_up_with_one_second_minimum(policy, seconds, expected):
    assert policy.credits_for_seconds(seconds) == expected


def test_credits_for_seconds_ceil_mode_bills_started_seconds():
    policy = CreditPolicy(credits_per_second=15, rounding="ceil")

    assert policy.credits_for_seconds("4.1") == 75
    assert policy.credits_for_seconds(4) == 60
    assert policy.credits_for_seconds(0) == 15


def test_credits_for_seconds_is_monotone_and_positive(policy):
    previous = 0
    for tenths in range(0, 400):
        credits = policy.credits_for_seconds(Decimal(tenths) / 10)
        assert credits > 0
        assert credits % 15 == 0
        assert credits >= previous
        previous = credits


def test_credits_for_seconds_rejects_non_numeric(policy):
    with pytest.raises(ValueError):
        policy.credits_for_seconds("five")


def test_unknown_plan_falls_back_to_default_allotment(policy, caplog):
    with caplog.at_level(logging.WARNING):
        assert policy.base_credits_for_plan("gold") == 1000

    assert "Unknown plan" in caplog.text
    assert policy.base_credits_for_plan("tier2") == 2500


def test_unknown_pack_grants_nothing(policy, caplog):
    with caplog.at_level(logging.WARNING):
        assert policy.credits_for_pack("credits_9999") == 0

    assert "Unknown top-up pack" in caplog.text
    assert policy.credits_for_pack("credits_1000") == 1000


@pytest.mark.parametrize(
    "old_base,new_base,remaining,cycle,expected",
    [
        (1000, 2500, 15, 30, 750),
        (1000, 2500, 7, 30, 350),
        (1000, 2000, 1, 3, 334),
        (1000, 2500, 40, 30, 1500),
        (1000, 2500, -5, 30, 0),
        (2500, 1000, 15, 30, 0),
        (1000, 2500, 15, 0, 0),
    ],
)
def test_upgrade_bonus_prorates_and_never_claws_back(old_base, new_base, remaining, cycle, expected):
    assert CreditPolicy.upgrade_bonus(old_base, new_base, remaining, cycle) == expected


def test_percentage_used_is_clamped_and_optional(policy):
    assert policy.percentage_used("tier2", 2500) == 0.0
    assert policy.percentage_used("tier2", 1250) == 50.0
    assert policy.percentage_used("tier2", 0) == 100.0
    assert policy.percentage_used("tier2", 4000) == 0.0
    assert policy.percentage_used("tier1", 333) == 66.7
    assert policy.percentage_used(NO_PLAN, 100) is None
    assert policy.percentage_used("unknown", 100) is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"credits_per_second": 0},
        {"credits_per_second": 15, "rounding": "floor"},
        {"credits_per_second": 15, "plan_base_credits": {"tier1": -1}},
        {"credits_per_second": 15, "default_plan_credits": -10},
    ],
)
def test_invalid_policy_configuration_is_rejected(kwargs):
    with pytest.raises(CreditPolicyConfigurationError):
        CreditPolicy(**kwargs)


def test_get_credit_policy_reads_settings(settings):
    settings.CREDITS_PER_SECOND = 20
    settings.CREDIT_ROUNDING = "CEIL"

    policy = get_credit_policy()

    assert policy.credits_per_second == 20
    assert policy.rounding == "ceil"
    assert policy.base_credits_for_plan("tier2") == 2500
    assert policy.credits_for_pack("credits_2000") == 2000


def test_get_credit_policy_rejects_malformed_settings(settings):
    settings.CREDITS_PER_SECOND = "fast"
    with pytest.raises(CreditPolicyConfigurationError):
        get_credit_policy()

    settings.CREDITS_PER_SECOND = 15
    settings.TOPUP_PACK_CREDITS = {"credits_1000": "lots"}
    with pytest.raises(CreditPolicyConfigurationError):
        get_credit_policy()


def test_resolve_plan_name_uses_configured_names():
    assert resolve_plan_name("tier2") == "Studio"
    assert resolve_plan_name("custom-plan") == "custom-plan"
    assert resolve_plan_name(None) == NO_PLAN
