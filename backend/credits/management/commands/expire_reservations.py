"""Management command to refund reservations whose jobs never reported back."""
from __future__ import annotations

from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone

from credits.models import Reservation
from credits.services.reservations import expire_stale_reservations


class Command(BaseCommand):
    help = "Fully refund open reservations older than the configured maximum age."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--max-age-hours",
            type=int,
            default=None,
            help="Override RESERVATION_MAX_AGE_HOURS for this run.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of reservations to expire in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List reservations that would be expired without refunding them.",
        )

    def handle(self, *args, **options) -> None:
        hours = options.get("max_age_hours") or getattr(settings, "RESERVATION_MAX_AGE_HOURS", 24)
        max_age = timedelta(hours=hours)

        if options.get("dry_run"):
            cutoff = timezone.now() - max_age
            queryset = (
                Reservation.objects.select_related("account")
                .filter(status=Reservation.Status.OPEN, created_at__lt=cutoff)
                .order_by("created_at")
            )
            if options.get("limit"):
                queryset = queryset[: options["limit"]]
            count = 0
            for reservation in queryset:
                count += 1
                self.stdout.write(
                    f"{reservation.task_id}: {reservation.reserved_credits} credits held by "
                    f"{reservation.account.user_id} since {reservation.created_at.isoformat()}"
                )
            self.stdout.write(self.style.WARNING(f"Dry run complete. {count} reservations would be expired."))
            return

        expired = expire_stale_reservations(max_age=max_age, limit=options.get("limit"))
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} reservations older than {hours} hours."))
