"""Management command to check cached balances against the ledger."""
from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from credits.models import CreditAccount
from credits.services.ledger import verify_account_balance


class Command(BaseCommand):
    help = "Report accounts whose cached balance differs from the sum of their ledger entries."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--user",
            dest="users",
            action="append",
            help="Check only the given user identifier. Can be supplied multiple times.",
        )

    def handle(self, *args, **options) -> None:
        users = options.get("users")
        queryset = CreditAccount.objects.order_by("user_id")
        if users:
            queryset = queryset.filter(user_id__in=[user.strip().lower() for user in users])

        checked = 0
        drifted = 0
        for user_id in queryset.values_list("user_id", flat=True).iterator():
            checked += 1
            check = verify_account_balance(user_id)
            if not check.ok:
                drifted += 1
                self.stderr.write(
                    f"{user_id}: cached={check.cached_balance} ledger={check.ledger_balance} drift={check.drift}"
                )

        summary = f"Checked {checked} accounts, {drifted} with drift."
        if drifted:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
