from django.core.management.base import BaseCommand, CommandError

from mail.models import SyncState
from mail.sync_status import default_scope_key, force_clear_sync_lock


class Command(BaseCommand):
    help = "Force-clear the sync lock for a scope, whoever holds it. Audited."

    def add_arguments(self, parser):
        parser.add_argument("--scope-key", type=str, help="Scope to clear (default: shared mailbox)")
        parser.add_argument("--actor", type=str, default="manage.py", help="Recorded on the audit event")

    def handle(self, *args, **options):
        scope_key = options.get("scope_key") or default_scope_key()
        try:
            state = force_clear_sync_lock(scope_key, actor=options["actor"])
        except SyncState.DoesNotExist:
            raise CommandError(f"No sync state for scope '{scope_key}'")
        self.stdout.write(self.style.SUCCESS(f"Lock cleared for {state.scope_key}."))
