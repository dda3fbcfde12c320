"""
Sync lock and state machine per scope, persisted on the SyncState row.

The lock is a soft lock: ownership plus a TTL, taken with one conditional
UPDATE so two workers can never both see a granted result. UI feedback (in
progress / last error) stays in the cache.
"""
import logging
from collections import namedtuple
from datetime import timedelta

from django.conf import settings
from django.core.cache import cache
from django.db.models import F, Q
from django.utils import timezone

from mail.audit import SYSTEM_ACTOR, record_audit_event
from mail.exceptions import CooldownActive, LockDenied
from mail.models import AuditEvent, SyncState

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

SYNC_IN_PROGRESS_KEY = "mail:sync_in_progress:{scope_key}"
LAST_SYNC_ERROR_KEY = "mail:last_sync_error:{scope_key}"
SYNC_IN_PROGRESS_TIMEOUT = 3600  # 1 hour; clears if worker dies
LAST_SYNC_ERROR_TIMEOUT = 86400  # 24 hours

PHASE_IDLE = "idle"
PHASE_LOCKED = "locked"
PHASE_COOLDOWN = "cooldown"

REASON_LOCKED = LockDenied.kind
REASON_COOLDOWN = CooldownActive.kind

LockResult = namedtuple("LockResult", ["granted", "reason"])


def default_scope_key() -> str:
    return getattr(settings, "MAIL_SYNC_DEFAULT_SCOPE", "gmail_sync")


def lock_ttl_seconds() -> int:
    return int(getattr(settings, "MAIL_SYNC_LOCK_TTL_SECONDS", 300))


def cooldown_seconds() -> int:
    return int(getattr(settings, "MAIL_SYNC_COOLDOWN_SECONDS", 900))


def max_consecutive_failures() -> int:
    return int(getattr(settings, "MAIL_SYNC_MAX_CONSECUTIVE_FAILURES", 3))


def set_sync_in_progress(scope_key: str, in_progress: bool) -> None:
    if in_progress:
        cache.set(SYNC_IN_PROGRESS_KEY.format(scope_key=scope_key), True, SYNC_IN_PROGRESS_TIMEOUT)
    else:
        cache.delete(SYNC_IN_PROGRESS_KEY.format(scope_key=scope_key))


def get_sync_in_progress(scope_key: str) -> bool:
    return bool(cache.get(SYNC_IN_PROGRESS_KEY.format(scope_key=scope_key)))


def set_last_sync_error(scope_key: str, error_message: str) -> None:
    cache.set(
        LAST_SYNC_ERROR_KEY.format(scope_key=scope_key),
        error_message[:500],
        LAST_SYNC_ERROR_TIMEOUT,
    )


def clear_last_sync_error(scope_key: str) -> None:
    cache.delete(LAST_SYNC_ERROR_KEY.format(scope_key=scope_key))


def get_last_sync_error(scope_key: str) -> str:
    return cache.get(LAST_SYNC_ERROR_KEY.format(scope_key=scope_key)) or ""


def get_sync_state(scope_key: str) -> SyncState:
    state, _ = SyncState.objects.get_or_create(scope_key=scope_key)
    return state


def get_sync_phase(state: SyncState, now=None) -> str:
    """Phase is derived at read time, so an elapsed cooldown needs no write."""
    now = now or timezone.now()
    if state.lock_owner and state.lock_until and state.lock_until > now:
        return PHASE_LOCKED
    if state.cooldown_until and state.cooldown_until > now:
        return PHASE_COOLDOWN
    return PHASE_IDLE


def acquire_sync_lock(scope_key: str, owner_id: str, ttl_seconds: int = None, now=None) -> LockResult:
    """
    Try to take the scope lock for owner_id.
    Refuses without touching the lock while the scope is cooling down. An
    expired lock is reclaimed here without any prior release.
    """
    now = now or timezone.now()
    ttl = lock_ttl_seconds() if ttl_seconds is None else int(ttl_seconds)
    state = get_sync_state(scope_key)
    if state.cooldown_until and state.cooldown_until > now:
        sync_audit.info(
            "acquire_sync_lock refused scope=%s reason=cooldown until=%s",
            scope_key,
            state.cooldown_until,
            extra={"scope_key": scope_key, "owner_id": owner_id, "reason": REASON_COOLDOWN},
        )
        return LockResult(False, REASON_COOLDOWN)

    lock_until = now + timedelta(seconds=ttl)
    updated = (
        SyncState.objects.filter(scope_key=scope_key)
        .filter(Q(lock_owner__isnull=True) | Q(lock_until__isnull=True) | Q(lock_until__lte=now))
        .filter(Q(cooldown_until__isnull=True) | Q(cooldown_until__lte=now))
        .update(lock_owner=owner_id, lock_until=lock_until)
    )
    if updated != 1:
        sync_audit.info(
            "acquire_sync_lock refused scope=%s reason=locked holder=%s",
            scope_key,
            state.lock_owner,
            extra={"scope_key": scope_key, "owner_id": owner_id, "reason": REASON_LOCKED},
        )
        return LockResult(False, REASON_LOCKED)

    reclaimed_from = state.lock_owner if state.lock_owner and state.lock_owner != owner_id else None
    record_audit_event(
        AuditEvent.EventType.LOCK_ACQUIRED,
        "sync_state",
        scope_key,
        actor=owner_id,
        detail={
            "lock_until": lock_until.isoformat(),
            "ttl_seconds": ttl,
            "reclaimed_from": reclaimed_from,
        },
    )
    sync_audit.info(
        "acquire_sync_lock granted scope=%s owner=%s until=%s",
        scope_key,
        owner_id,
        lock_until,
        extra={"scope_key": scope_key, "owner_id": owner_id, "reclaimed_from": reclaimed_from},
    )
    return LockResult(True, None)


def release_sync_lock(scope_key: str, owner_id: str) -> bool:
    """Release only if owner_id still holds the lock. False means not_owner."""
    released = (
        SyncState.objects.filter(scope_key=scope_key, lock_owner=owner_id)
        .update(lock_owner=None, lock_until=None)
    )
    if not released:
        logger.info("release_sync_lock not_owner scope=%s owner=%s", scope_key, owner_id)
        return False
    record_audit_event(
        AuditEvent.EventType.LOCK_RELEASED, "sync_state", scope_key, actor=owner_id
    )
    return True


def force_clear_sync_lock(scope_key: str, actor: str) -> SyncState:
    """
    Operator override: drop the lock whoever holds it.
    Raises SyncState.DoesNotExist for an unknown scope.
    """
    state = SyncState.objects.get(scope_key=scope_key)
    previous_owner = state.lock_owner
    previous_until = state.lock_until
    SyncState.objects.filter(pk=state.pk).update(lock_owner=None, lock_until=None)
    state.refresh_from_db()
    record_audit_event(
        AuditEvent.EventType.LOCK_FORCE_CLEARED,
        "sync_state",
        scope_key,
        actor=actor,
        detail={
            "previous_owner": previous_owner,
            "previous_lock_until": previous_until.isoformat() if previous_until else None,
        },
    )
    logger.warning(
        "force_clear_sync_lock scope=%s actor=%s previous_owner=%s",
        scope_key,
        actor,
        previous_owner,
    )
    return state


def record_sync_success(scope_key: str, owner_id: str, new_cursor, now=None) -> bool:
    """
    Commit a successful run: reset failures, store the cursor and release the
    lock in one write. Nothing is written unless owner_id still holds the lock.
    A new_cursor of None keeps the stored cursor.
    """
    now = now or timezone.now()
    fields = {
        "consecutive_failures": 0,
        "last_success_at": now,
        "cooldown_until": None,
        "lock_owner": None,
        "lock_until": None,
    }
    if new_cursor is not None:
        fields["cursor"] = new_cursor
    applied = SyncState.objects.filter(scope_key=scope_key, lock_owner=owner_id).update(**fields)
    if not applied:
        logger.warning(
            "record_sync_success lost lock scope=%s owner=%s; cursor not committed",
            scope_key,
            owner_id,
        )
        return False
    record_audit_event(
        AuditEvent.EventType.LOCK_RELEASED,
        "sync_state",
        scope_key,
        actor=owner_id,
        detail={"outcome": "success"},
    )
    return True


def record_sync_failure(scope_key: str, owner_id: str, now=None) -> SyncState:
    """
    Count a failed run and release the lock if owner_id still holds it.
    Reaching the failure threshold starts the cooldown.
    """
    now = now or timezone.now()
    released = SyncState.objects.filter(scope_key=scope_key, lock_owner=owner_id).update(
        consecutive_failures=F("consecutive_failures") + 1,
        last_failure_at=now,
        lock_owner=None,
        lock_until=None,
    )
    if not released:
        SyncState.objects.filter(scope_key=scope_key).update(
            consecutive_failures=F("consecutive_failures") + 1,
            last_failure_at=now,
        )
    threshold = max_consecutive_failures()
    SyncState.objects.filter(
        scope_key=scope_key, consecutive_failures__gte=threshold
    ).update(cooldown_until=now + timedelta(seconds=cooldown_seconds()))

    state = SyncState.objects.get(scope_key=scope_key)
    if released:
        record_audit_event(
            AuditEvent.EventType.LOCK_RELEASED,
            "sync_state",
            scope_key,
            actor=owner_id,
            detail={"outcome": "failure"},
        )
    if state.cooldown_until and state.cooldown_until > now:
        logger.warning(
            "record_sync_failure scope=%s failures=%s cooldown_until=%s",
            scope_key,
            state.consecutive_failures,
            state.cooldown_until,
        )
    return state


def reset_sync_cooldown(scope_key: str, actor: str) -> SyncState:
    """Operator override: clear failures and cooldown. Raises SyncState.DoesNotExist."""
    state = SyncState.objects.get(scope_key=scope_key)
    previous = {
        "consecutive_failures": state.consecutive_failures,
        "cooldown_until": state.cooldown_until.isoformat() if state.cooldown_until else None,
    }
    SyncState.objects.filter(pk=state.pk).update(consecutive_failures=0, cooldown_until=None)
    state.refresh_from_db()
    record_audit_event(
        AuditEvent.EventType.COOLDOWN_RESET,
        "sync_state",
        scope_key,
        actor=actor or SYSTEM_ACTOR,
        detail=previous,
    )
    logger.info("reset_sync_cooldown scope=%s actor=%s previous=%s", scope_key, actor, previous)
    return state
