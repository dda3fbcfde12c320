"""
One bounded sync pass for a scope.

    acquire lock -> delta (or backfill when there is no usable cursor)
    -> reconcile -> commit cursor + release -> queue side passes

Every terminal outcome writes exactly one run_* audit event and returns one
summary dict; nothing is raised to the caller.
"""
import logging
import os
import socket
import uuid

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from mail.audit import record_audit_event
from mail.backfill import BackfillEngine
from mail.changes import deadline_passed, run_deadline
from mail.delta import DeltaEngine
from mail.exceptions import MailSyncError, RunDeadlineExceeded, StaleCursor
from mail.models import AuditEvent
from mail.reconciler import Reconciler
from mail.sync_status import (
    acquire_sync_lock,
    clear_last_sync_error,
    default_scope_key,
    get_sync_state,
    record_sync_failure,
    record_sync_success,
    release_sync_lock,
    set_last_sync_error,
    set_sync_in_progress,
)

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"

MODE_DELTA = "delta"
MODE_BACKFILL = "backfill"


def make_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"


def dispatch_side_passes(scope_key: str) -> None:
    """Queue body rehydration and CID resolution once the current transaction commits."""

    def _send():
        from mail.tasks import rehydrate_missing_bodies, resolve_inline_cids

        for task in (rehydrate_missing_bodies, resolve_inline_cids):
            try:
                task.delay(scope_key)
            except Exception:
                logger.warning("could not queue %s scope=%s", task.name, scope_key, exc_info=True)

    transaction.on_commit(_send)


class MailboxSyncOrchestrator:
    def __init__(self, client=None, delta_engine=None, backfill_engine=None, reconciler=None):
        self._client = client
        self._delta_engine = delta_engine
        self._backfill_engine = backfill_engine
        self.reconciler = reconciler or Reconciler()

    @property
    def client(self):
        if self._client is None:
            from mail.gmail_client import GmailMailboxClient

            self._client = GmailMailboxClient()
        return self._client

    @property
    def delta_engine(self):
        if self._delta_engine is None:
            self._delta_engine = DeltaEngine(self.client)
        return self._delta_engine

    @property
    def backfill_engine(self):
        if self._backfill_engine is None:
            self._backfill_engine = BackfillEngine(self.client)
        return self._backfill_engine

    def run(self, scope_key: str = None, actor: str = "scheduler") -> dict:
        scope_key = scope_key or default_scope_key()
        ran_at = timezone.now()
        owner_id = make_owner_id()
        summary = {
            "ranAt": ran_at.isoformat(),
            "scopeKey": scope_key,
            "outcome": None,
            "changesApplied": 0,
            "newCursorSet": False,
            "mode": None,
            "stats": {},
        }

        lock = acquire_sync_lock(scope_key, owner_id, now=ran_at)
        if not lock.granted:
            summary["outcome"] = OUTCOME_SKIPPED
            summary["reason"] = lock.reason
            record_audit_event(
                AuditEvent.EventType.RUN_SKIPPED,
                "sync_state",
                scope_key,
                actor=actor,
                detail={"reason": lock.reason},
            )
            logger.info("mailbox sync skipped scope=%s reason=%s", scope_key, lock.reason)
            return summary

        record_audit_event(
            AuditEvent.EventType.RUN_STARTED,
            "sync_state",
            scope_key,
            actor=actor,
            detail={"owner_id": owner_id},
        )
        set_sync_in_progress(scope_key, True)
        committed = False
        budget = int(getattr(settings, "MAIL_SYNC_TIME_BUDGET_SECONDS", 240))
        deadline = run_deadline(budget)
        try:
            cursor = get_sync_state(scope_key).cursor
            batch = self._collect(scope_key, cursor, deadline, summary)
            summary["stats"]["engine"] = batch["stats"]

            applied = self.reconciler.apply(scope_key, batch["changes"])
            summary["stats"]["reconcile"] = applied
            summary["changesApplied"] = (
                applied["created"] + applied["updated"] + applied["removed"] + applied["relabelled"]
            )
            if deadline_passed(deadline + self._grace_seconds(budget)):
                raise RunDeadlineExceeded(
                    f"Run exceeded its {budget}s budget; lock may have been reclaimed"
                )

            committed = record_sync_success(scope_key, owner_id, batch["new_cursor"])
            if not committed:
                raise RunDeadlineExceeded("Lock was lost before the cursor could be committed")
            summary["outcome"] = OUTCOME_SUCCESS
            summary["newCursorSet"] = batch["new_cursor"] is not None
            clear_last_sync_error(scope_key)
            record_audit_event(
                AuditEvent.EventType.RUN_COMPLETED,
                "sync_state",
                scope_key,
                actor=actor,
                detail={
                    "mode": summary["mode"],
                    "changes_applied": summary["changesApplied"],
                    "new_cursor": batch["new_cursor"],
                    "fallback_reason": summary["stats"].get("fallback_reason"),
                },
            )
            logger.info(
                "mailbox sync completed scope=%s mode=%s changes=%s cursor=%s",
                scope_key,
                summary["mode"],
                summary["changesApplied"],
                batch["new_cursor"],
            )
        except Exception as e:
            if isinstance(e, MailSyncError):
                error_kind = e.kind
                logger.warning("mailbox sync failed scope=%s kind=%s: %s", scope_key, error_kind, e)
            else:
                error_kind = "unexpected"
                logger.exception("mailbox sync failed unexpectedly scope=%s", scope_key)
            summary["outcome"] = OUTCOME_FAILED
            summary["errorKind"] = error_kind
            summary["reason"] = str(e)[:500]
            if error_kind == "reconciliation":
                summary["changesApplied"] = getattr(e, "applied", 0)
            set_last_sync_error(scope_key, f"{error_kind}: {e}")
            detail = {"error_kind": error_kind, "error": str(e)[:500], "mode": summary["mode"]}
            try:
                state = record_sync_failure(scope_key, owner_id)
                committed = True
                detail["consecutive_failures"] = state.consecutive_failures
                detail["cooldown_until"] = (
                    state.cooldown_until.isoformat() if state.cooldown_until else None
                )
            except Exception:
                logger.exception("could not record sync failure scope=%s", scope_key)
            record_audit_event(
                AuditEvent.EventType.RUN_FAILED,
                "sync_state",
                scope_key,
                actor=actor,
                detail=detail,
            )
        finally:
            set_sync_in_progress(scope_key, False)
            if not committed:
                release_sync_lock(scope_key, owner_id)

        dispatch_side_passes(scope_key)
        return summary

    def _collect(self, scope_key, cursor, deadline, summary):
        if not cursor:
            summary["mode"] = MODE_BACKFILL
            summary["stats"]["fallback_reason"] = "no_cursor"
            return self.backfill_engine.run(scope_key, deadline=deadline)
        summary["mode"] = MODE_DELTA
        try:
            return self.delta_engine.run(scope_key, cursor, deadline=deadline)
        except StaleCursor as e:
            logger.info("stale cursor scope=%s cursor=%s; falling back to backfill: %s", scope_key, cursor, e)
            summary["mode"] = MODE_BACKFILL
            summary["stats"]["fallback_reason"] = "stale_cursor"
            return self.backfill_engine.run(scope_key, deadline=deadline)

    @staticmethod
    def _grace_seconds(budget):
        """Time left between the run budget and the lock TTL."""
        ttl = int(getattr(settings, "MAIL_SYNC_LOCK_TTL_SECONDS", 300))
        return max(ttl - budget, 0)
