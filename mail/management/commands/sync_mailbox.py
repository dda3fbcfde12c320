"""
Run one orchestrated sync pass in-process, the same pass the Celery beat
schedule runs. Prints the run summary.
"""
import json

from django.core.management.base import BaseCommand

from mail.orchestrator import MailboxSyncOrchestrator


class Command(BaseCommand):
    help = "Run one mailbox sync pass (delta, or backfill when there is no usable cursor)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--scope-key",
            type=str,
            help="Sync this scope instead of MAIL_SYNC_DEFAULT_SCOPE",
        )

    def handle(self, *args, **options):
        summary = MailboxSyncOrchestrator().run(
            scope_key=options.get("scope_key"), actor="manage.py"
        )
        outcome = summary.get("outcome")
        style = {
            "success": self.style.SUCCESS,
            "skipped": self.style.WARNING,
        }.get(outcome, self.style.ERROR)
        self.stdout.write(style(f"Sync {outcome}: {summary.get('changesApplied', 0)} change(s) applied"))
        self.stdout.write(json.dumps(summary, indent=2, default=str))
