"""
Fill missing message bodies from Gmail. Safe to re-run: only messages still
without a body are written.
"""
from django.core.management.base import BaseCommand

from mail.gmail_client import GmailMailboxClient
from mail.models import EmailMessage
from mail.rehydrate import BodyRehydrator
from mail.sync_status import default_scope_key


class Command(BaseCommand):
    help = "Rehydrate messages stored without a body (has_body=False)."

    def add_arguments(self, parser):
        parser.add_argument("--scope-key", type=str, help="Scope to process (default: shared mailbox)")
        parser.add_argument("--limit", type=int, help="Max messages (default: MAIL_REHYDRATE_BATCH_SIZE)")
        parser.add_argument("--thread-id", type=int, help="Only messages of this local thread id")
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show how many messages would be processed",
        )

    def handle(self, *args, **options):
        scope_key = options.get("scope_key") or default_scope_key()
        if options.get("dry_run"):
            qs = EmailMessage.objects.filter(scope_key=scope_key, has_body=False, is_deleted=False)
            if options.get("thread_id"):
                qs = qs.filter(thread_id=options["thread_id"])
            self.stdout.write(self.style.WARNING(f"DRY RUN: {qs.count()} message(s) without a body"))
            return

        result = BodyRehydrator(GmailMailboxClient()).run(
            scope_key, limit=options.get("limit"), thread_id=options.get("thread_id")
        )
        self.stdout.write(
            self.style.SUCCESS(
                f"Processed {result['processed']}: {result['success']} ok, "
                f"{result['failed']} failed, {result['threads_updated']} thread snippet(s) updated"
            )
        )
        for failure in result["failures"]:
            self.stdout.write(self.style.ERROR(f"  {failure['external_message_id']}: {failure['reason']}"))
