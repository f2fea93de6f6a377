from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from memberships.services import get_memberships_expiring_soon, send_expiration_reminders


class Command(BaseCommand):
    help = "Email members whose access expires in MEMBERSHIP_REMINDER_DAYS days. Run once a day from cron."

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true", help="Only list recipients, do not send")

    def handle(self, *args, **opts):
        if opts["dry_run"]:
            pairs = get_memberships_expiring_soon()
            for membership, user in pairs:
                self.stdout.write(f"{user.email}\t{timezone.localdate(membership.access_expires_at)}")
            self.stdout.write(self.style.SUCCESS(
                f"{len(pairs)} memberships expire in {settings.MEMBERSHIP_REMINDER_DAYS} days"
            ))
            return

        report = send_expiration_reminders()
        for error in report.errors:
            self.stderr.write(f"{error['email']}: {error['error']}")
        self.stdout.write(self.style.SUCCESS(
            f"Done. sent={report.success_count}, failed={report.failure_count}, duration={report.duration_ms}ms"
        ))
        if report.failure_count and not report.success_count:
            raise CommandError("All reminder emails failed")
