"""Management command to grant credits to a user through the idempotent event path."""
from __future__ import annotations

import uuid

from django.core.management.base import BaseCommand, CommandError

from credits.services.billing_events import process_manual_grant


class Command(BaseCommand):
    help = "Grant credits to a user. Re-running with the same --event-id is a no-op."

    def add_arguments(self, parser) -> None:
        parser.add_argument("--user", required=True, help="User identifier (e-mail address).")
        parser.add_argument("--credits", type=int, required=True, help="Positive number of credits to grant.")
        parser.add_argument(
            "--event-id",
            default=None,
            help="Idempotency key for this grant. Generated when omitted.",
        )
        parser.add_argument("--reason", default="Manual grant", help="Reason recorded on the ledger entry.")

    def handle(self, *args, **options) -> None:
        user_id = options["user"].strip().lower()
        credits = options["credits"]
        if not user_id:
            raise CommandError("--user cannot be blank.")
        if credits <= 0:
            raise CommandError("--credits must be a positive integer.")

        event_id = options.get("event_id") or f"grant_{uuid.uuid4().hex}"
        outcome = process_manual_grant(event_id, user_id, credits, options["reason"])

        if outcome.already_processed:
            self.stdout.write(self.style.WARNING(f"Grant {event_id} was already applied; nothing changed."))
            return
        self.stdout.write(
            self.style.SUCCESS(
                f"Granted {outcome.credited} credits to {user_id} (event {event_id}); balance is now {outcome.balance}."
            )
        )
