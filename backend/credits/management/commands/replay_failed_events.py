"""Management command to replay billing events that failed or stalled mid-processing."""
from __future__ import annotations

from datetime import timedelta
from typing import Iterable, Optional

from django.core.management.base import BaseCommand, CommandError
from django.db.models import Q
from django.utils import timezone

from credits.exceptions import BillingEventError
from credits.models import ProcessedEvent
from credits.services.billing_events import dispatch_event


class Command(BaseCommand):
    help = "Replay failed billing events, and optionally stuck ones, through the normal processing pipeline."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--event-id",
            dest="event_ids",
            action="append",
            help="Replay only the specified event id. Can be supplied multiple times.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of events to replay in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Preview events that would be replayed without performing any changes.",
        )
        parser.add_argument(
            "--include-stuck",
            action="store_true",
            help="Also replay events left in processing longer than --stuck-minutes.",
        )
        parser.add_argument(
            "--stuck-minutes",
            type=int,
            default=30,
            help="Minutes without progress before a processing event counts as stuck (default: 30).",
        )

    def handle(self, *args, **options) -> None:
        event_ids: Optional[Iterable[str]] = options.get("event_ids")
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")
        stuck_minutes: int = options.get("stuck_minutes")
        if stuck_minutes is None or stuck_minutes < 1:
            raise CommandError("--stuck-minutes must be a positive integer.")

        replayable = Q(status=ProcessedEvent.Status.FAILED)
        if options.get("include_stuck"):
            stale_before = timezone.now() - timedelta(minutes=stuck_minutes)
            replayable |= Q(status=ProcessedEvent.Status.PROCESSING, updated_at__lt=stale_before)
        queryset = ProcessedEvent.objects.filter(replayable).order_by("created_at")
        if event_ids:
            queryset = queryset.filter(event_id__in=list(event_ids))
        if limit is not None:
            queryset = queryset[:limit]

        events = list(queryset)
        total = len(events)
        if total == 0:
            self.stdout.write(self.style.WARNING("No failed or stuck events matched the requested filters."))
            return

        processed = 0
        failed = 0

        for record in events:
            self.stdout.write(f"Replaying billing event {record.event_id} ({record.event_type})")
            if dry_run:
                continue
            try:
                dispatch_event(record.payload)
            except BillingEventError as exc:
                failed += 1
                self.stderr.write(f"  {record.event_id}: invalid payload: {exc}")
            except Exception as exc:
                failed += 1
                self.stderr.write(f"  {record.event_id}: {exc}")
            else:
                processed += 1

        if dry_run:
            self.stdout.write(self.style.WARNING(f"Dry run complete. {total} events would be replayed."))
            return

        summary = f"Replay complete: {processed} succeeded, {failed} failed, {total} total."
        if failed:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
