import logging

from django.apps import AppConfig
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


class CreditsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'credits'
    verbose_name = 'Credits'

    def ready(self):
        from .policy import CreditPolicyConfigurationError, get_credit_policy

        # Pricing tables come from the environment; refuse to start with malformed values.
        try:
            policy = get_credit_policy()
        except CreditPolicyConfigurationError as exc:
            raise ImproperlyConfigured(str(exc)) from exc
        logger.debug(
            "Credit policy loaded: %s credits/second, %s plans, %s top-up packs, rounding=%s.",
            policy.credits_per_second,
            len(policy.plan_base_credits),
            len(policy.topup_pack_credits),
            policy.rounding,
        )
