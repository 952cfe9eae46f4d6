"""Credit pricing rules: seconds to credits, plan allotments, top-up packs and upgrade proration."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Mapping, Optional, Union

from django.conf import settings

logger = logging.getLogger(__name__)

Number = Union[int, float, Decimal, str]

NO_PLAN = "none"
ROUNDING_MODES = {
    "round": ROUND_HALF_UP,
    "ceil": ROUND_CEILING,
}


class CreditPolicyConfigurationError(Exception):
    """Raised when the credit pricing settings are missing or malformed."""


def _to_decimal(value: Number) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Expected a numeric value, got {value!r}.") from exc


@dataclass(frozen=True)
class CreditPolicy:
    """Immutable pricing configuration with the pure conversion functions built on it."""

    credits_per_second: int
    plan_base_credits: Mapping[str, int] = field(default_factory=dict)
    topup_pack_credits: Mapping[str, int] = field(default_factory=dict)
    default_plan_credits: int = 1000
    rounding: str = "round"

    def __post_init__(self):
        if self.credits_per_second <= 0:
            raise CreditPolicyConfigurationError("credits_per_second must be a positive integer.")
        if self.default_plan_credits < 0:
            raise CreditPolicyConfigurationError("default_plan_credits cannot be negative.")
        if self.rounding not in ROUNDING_MODES:
            raise CreditPolicyConfigurationError(
                f"Unsupported rounding mode '{self.rounding}'. Expected one of {sorted(ROUNDING_MODES)}."
            )
        for label, table in (("plan_base_credits", self.plan_base_credits), ("topup_pack_credits", self.topup_pack_credits)):
            for key, credits in table.items():
                if not isinstance(credits, int) or credits < 0:
                    raise CreditPolicyConfigurationError(f"{label}['{key}'] must be a non-negative integer.")

    def billable_seconds(self, seconds: Number) -> int:
        """Whole seconds billed for ``seconds`` of video, never less than one."""

        value = max(_to_decimal(seconds), Decimal("0"))
        whole = int(value.quantize(Decimal("1"), rounding=ROUNDING_MODES[self.rounding]))
        return max(1, whole)

    def credits_for_seconds(self, seconds: Number) -> int:
        return self.billable_seconds(seconds) * self.credits_per_second

    def base_credits_for_plan(self, plan_id: Optional[str]) -> int:
        key = str(plan_id or "")
        credits = self.plan_base_credits.get(key)
        if credits is None:
            logger.warning(
                "Unknown plan '%s'; falling back to default allotment of %s credits.",
                key,
                self.default_plan_credits,
            )
            return self.default_plan_credits
        return credits

    def credits_for_pack(self, pack_sku: Optional[str]) -> int:
        key = str(pack_sku or "")
        credits = self.topup_pack_credits.get(key)
        if credits is None:
            logger.warning("Unknown top-up pack '%s'; granting 0 credits.", key)
            return 0
        return credits

    @staticmethod
    def upgrade_bonus(old_base: int, new_base: int, remaining_days: Number, cycle_days: Number) -> int:
        """Prorated credits for the rest of the cycle; downgrades never claw back."""

        cycle = _to_decimal(cycle_days)
        if cycle <= 0:
            return 0
        remaining = min(max(_to_decimal(remaining_days), Decimal("0")), cycle)
        difference = Decimal(int(new_base) - int(old_base))
        if difference <= 0:
            return 0
        bonus = (difference * remaining / cycle).quantize(Decimal("1"), rounding=ROUND_CEILING)
        return max(0, int(bonus))

    def percentage_used(self, plan_id: Optional[str], balance: int) -> Optional[float]:
        if not plan_id or plan_id == NO_PLAN:
            return None
        base = self.plan_base_credits.get(str(plan_id))
        if not base:
            return None
        used = 100 - (Decimal(balance) / Decimal(base)) * 100
        used = min(max(used, Decimal("0")), Decimal("100"))
        return float(used.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _read_table(name: str) -> Mapping[str, int]:
    table = getattr(settings, name, {}) or {}
    if not isinstance(table, Mapping):
        raise CreditPolicyConfigurationError(f"{name} must be a mapping of identifiers to credit amounts.")
    try:
        return {str(key): int(value) for key, value in table.items()}
    except (TypeError, ValueError) as exc:
        raise CreditPolicyConfigurationError(f"{name} contains a non-integer credit amount.") from exc


def get_credit_policy() -> CreditPolicy:
    """Build the policy from Django settings."""

    try:
        credits_per_second = int(getattr(settings, "CREDITS_PER_SECOND"))
    except AttributeError as exc:
        raise CreditPolicyConfigurationError("CREDITS_PER_SECOND is not defined in Django settings.") from exc
    except (TypeError, ValueError) as exc:
        raise CreditPolicyConfigurationError("CREDITS_PER_SECOND must be an integer.") from exc

    return CreditPolicy(
        credits_per_second=credits_per_second,
        plan_base_credits=_read_table("PLAN_BASE_CREDITS"),
        topup_pack_credits=_read_table("TOPUP_PACK_CREDITS"),
        default_plan_credits=int(getattr(settings, "DEFAULT_PLAN_CREDITS", 1000)),
        rounding=str(getattr(settings, "CREDIT_ROUNDING", "round")).lower(),
    )


def resolve_plan_name(plan_id: Optional[str]) -> str:
    if not plan_id or plan_id == NO_PLAN:
        return NO_PLAN
    names = getattr(settings, "PLAN_NAMES", {}) or {}
    return str(names.get(plan_id, plan_id))
