from django.core.management.base import BaseCommand

from mail.gmail_client import GmailMailboxClient
from mail.inline_cids import InlineCidResolver
from mail.sync_status import default_scope_key


class Command(BaseCommand):
    help = "Resolve pending inline cid: image references to stored files."

    def add_arguments(self, parser):
        parser.add_argument("--scope-key", type=str, help="Scope to process (default: shared mailbox)")
        parser.add_argument("--limit", type=int, help="Max messages (default: MAIL_CID_BATCH_SIZE)")

    def handle(self, *args, **options):
        scope_key = options.get("scope_key") or default_scope_key()
        result = InlineCidResolver(GmailMailboxClient()).run(scope_key, limit=options.get("limit"))
        self.stdout.write(
            self.style.SUCCESS(
                f"Processed {result['processed']}: {result['resolved']} resolved, "
                f"{result['failed']} failed, {result['retrying']} retrying, {result['skipped']} skipped"
            )
        )
