from django.core.management.base import BaseCommand, CommandError

from mail.models import SyncState
from mail.sync_status import default_scope_key, reset_sync_cooldown


class Command(BaseCommand):
    help = "Reset the failure counter and cooldown for a scope. Audited."

    def add_arguments(self, parser):
        parser.add_argument("--scope-key", type=str, help="Scope to reset (default: shared mailbox)")
        parser.add_argument("--actor", type=str, default="manage.py", help="Recorded on the audit event")

    def handle(self, *args, **options):
        scope_key = options.get("scope_key") or default_scope_key()
        try:
            state = reset_sync_cooldown(scope_key, actor=options["actor"])
        except SyncState.DoesNotExist:
            raise CommandError(f"No sync state for scope '{scope_key}'")
        self.stdout.write(
            self.style.SUCCESS(
                f"Cooldown reset for {state.scope_key} (failures={state.consecutive_failures})."
            )
        )
