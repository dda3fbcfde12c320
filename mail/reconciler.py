"""
Apply change records from the delta/backfill engines to the local mirror.

Every write is keyed by provider ids and guarded so that applying the same
batch twice leaves the same rows: bodies are only filled while empty, the
thread summary only moves to a newer message, and removal is a soft delete.
"""
import logging

from django.db import DatabaseError, transaction
from django.db.models import F, Q
from django.utils import timezone

from mail.changes import ChangeKind, history_id_int
from mail.exceptions import ReconciliationError
from mail.models import CidState, EmailAttachment, EmailMessage, EmailThread

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

# Fields the sync owns on an existing message; body fields are handled separately
SYNC_OWNED_FIELDS = (
    "subject",
    "from_address",
    "from_name",
    "to_addresses",
    "cc_addresses",
    "sent_at",
    "label_ids",
    "is_outbound",
    "snippet",
)

CREATED = "created"
UPDATED = "updated"
REMOVED = "removed"
RELABELLED = "relabelled"
UNCHANGED = "unchanged"


class Reconciler:
    def apply(self, scope_key: str, changes) -> dict:
        result = {
            "threads_touched": 0,
            "messages_touched": 0,
            CREATED: 0,
            UPDATED: 0,
            REMOVED: 0,
            RELABELLED: 0,
            UNCHANGED: 0,
        }
        threads = set()
        messages = set()
        handlers = {
            ChangeKind.MESSAGE_ADDED: self._apply_added,
            ChangeKind.MESSAGE_REMOVED: self._apply_removed,
            ChangeKind.LABEL_CHANGED: self._apply_label_changed,
        }

        for index, change in enumerate(changes):
            handler = handlers.get(change.get("kind"))
            if handler is None:
                logger.warning("reconciler ignoring unknown change kind=%s", change.get("kind"))
                continue
            try:
                with transaction.atomic():
                    outcome, thread_pks = handler(scope_key, change)
            except DatabaseError as e:
                logger.exception(
                    "reconciler write failed scope=%s change=%s message=%s",
                    scope_key,
                    change.get("kind"),
                    change.get("external_message_id"),
                )
                raise ReconciliationError(
                    f"Failed applying {change.get('kind')} for "
                    f"{change.get('external_message_id')}: {e}",
                    applied=index,
                    change=change,
                ) from e
            result[outcome] += 1
            if outcome != UNCHANGED:
                messages.add(change.get("external_message_id"))
                threads.update(pk for pk in thread_pks if pk)

        result["threads_touched"] = len(threads)
        result["messages_touched"] = len(messages)
        sync_audit.info(
            "reconcile scope=%s changes=%s created=%s updated=%s removed=%s relabelled=%s",
            scope_key,
            len(changes),
            result[CREATED],
            result[UPDATED],
            result[REMOVED],
            result[RELABELLED],
            extra={"scope_key": scope_key, "counts": result},
        )
        return result

    def _apply_added(self, scope_key, change):
        data = change["message"]
        now = timezone.now()
        thread, _ = EmailThread.objects.get_or_create(
            scope_key=scope_key,
            external_thread_id=change["external_thread_id"],
        )
        existing = (
            EmailMessage.objects.select_for_update()
            .filter(scope_key=scope_key, external_message_id=change["external_message_id"])
            .first()
        )
        touched_threads = [thread.pk]

        if existing is None:
            message = EmailMessage.objects.create(
                scope_key=scope_key,
                thread=thread,
                external_message_id=change["external_message_id"],
                subject=data.get("subject") or "",
                from_address=data.get("from_address") or "",
                from_name=data.get("from_name") or "",
                to_addresses=data.get("to_addresses") or [],
                cc_addresses=data.get("cc_addresses") or [],
                sent_at=data.get("sent_at"),
                label_ids=data.get("label_ids") or [],
                is_outbound=bool(data.get("is_outbound")),
                snippet=data.get("snippet") or "",
                has_body=bool(data.get("has_body")),
                body_html=data.get("body_html") or None,
                body_text=data.get("body_text") or None,
                cid_state=CidState.PENDING if data.get("cid_refs") else CidState.NONE,
                last_synced_at=now,
            )
            outcome = CREATED
        else:
            message = existing
            changed = {}
            for field in SYNC_OWNED_FIELDS:
                incoming = data.get(field)
                if field == "sent_at" and incoming is None:
                    continue
                if field in ("to_addresses", "cc_addresses", "label_ids"):
                    incoming = incoming or []
                elif field == "is_outbound":
                    incoming = bool(incoming)
                elif incoming is None:
                    incoming = ""
                if getattr(existing, field) != incoming:
                    changed[field] = incoming
            if existing.is_deleted:
                changed["is_deleted"] = False
            if existing.thread_id != thread.pk:
                touched_threads.append(existing.thread_id)
                changed["thread"] = thread
            if changed:
                changed["last_synced_at"] = now
                EmailMessage.objects.filter(pk=existing.pk).update(**changed)

            body_filled = 0
            if data.get("has_body") and not existing.has_body:
                body_filled = EmailMessage.objects.filter(pk=existing.pk, has_body=False).update(
                    has_body=True,
                    body_html=data.get("body_html") or None,
                    body_text=data.get("body_text") or None,
                    last_synced_at=now,
                )
                if body_filled and data.get("cid_refs") and existing.cid_state == CidState.NONE:
                    EmailMessage.objects.filter(pk=existing.pk, cid_state=CidState.NONE).update(
                        cid_state=CidState.PENDING
                    )
            outcome = UPDATED if (changed or body_filled) else UNCHANGED

        attachments_changed = self._upsert_attachments(message, data.get("attachments") or [])
        if outcome == UNCHANGED and attachments_changed:
            outcome = UPDATED

        if data.get("sent_at") is not None:
            advanced = (
                EmailThread.objects.filter(pk=thread.pk)
                .filter(Q(last_message_date__isnull=True) | Q(last_message_date__lt=data["sent_at"]))
                .update(
                    subject=data.get("subject") or "",
                    snippet=data.get("snippet") or "",
                    from_address=data.get("from_address") or "",
                    last_message_date=data["sent_at"],
                )
            )
            if advanced and outcome == UNCHANGED:
                outcome = UPDATED
        elif not thread.subject and data.get("subject"):
            EmailThread.objects.filter(pk=thread.pk, subject="").update(subject=data["subject"])

        self._advance_thread_history(thread.pk, change.get("thread_history_id"))
        for thread_pk in touched_threads:
            if thread_pk != thread.pk:
                recompute_thread_summary(thread_pk)
            else:
                refresh_thread_aggregates(thread_pk)
        return outcome, touched_threads

    def _apply_removed(self, scope_key, change):
        message = (
            EmailMessage.objects.select_for_update()
            .filter(scope_key=scope_key, external_message_id=change["external_message_id"])
            .first()
        )
        if message is None or message.is_deleted:
            return UNCHANGED, []
        EmailMessage.objects.filter(pk=message.pk).update(
            is_deleted=True, last_synced_at=timezone.now()
        )
        recompute_thread_summary(message.thread_id)
        return REMOVED, [message.thread_id]

    def _apply_label_changed(self, scope_key, change):
        message = (
            EmailMessage.objects.select_for_update()
            .filter(scope_key=scope_key, external_message_id=change["external_message_id"])
            .first()
        )
        if message is None:
            return UNCHANGED, []
        label_ids = list(change.get("label_ids") or [])
        if message.label_ids == label_ids:
            return UNCHANGED, []
        EmailMessage.objects.filter(pk=message.pk).update(
            label_ids=label_ids,
            is_outbound="SENT" in label_ids,
            last_synced_at=timezone.now(),
        )
        refresh_thread_aggregates(message.thread_id)
        return RELABELLED, [message.thread_id]

    @staticmethod
    def _advance_thread_history(thread_pk, history_id):
        incoming = history_id_int(history_id)
        if incoming is None:
            return
        current = EmailThread.objects.filter(pk=thread_pk).values_list("history_id", flat=True).first()
        current_int = history_id_int(current)
        if current_int is None or incoming > current_int:
            EmailThread.objects.filter(pk=thread_pk, history_id=current).update(
                history_id=str(incoming)
            )

    @staticmethod
    def _upsert_attachments(message, attachments) -> bool:
        """Match on content id, else filename+size. Resolution fields are left alone."""
        if not attachments:
            return False
        changed = False
        existing = list(message.attachments.all())
        for item in attachments:
            match = None
            for att in existing:
                if item.get("content_id"):
                    if att.content_id == item["content_id"]:
                        match = att
                        break
                elif (
                    not att.content_id
                    and att.filename == item.get("filename")
                    and att.size_bytes == int(item.get("size_bytes") or 0)
                ):
                    match = att
                    break
            if match is None:
                created = EmailAttachment.objects.create(
                    email_message=message,
                    provider_attachment_id=item.get("provider_attachment_id") or "",
                    filename=item.get("filename") or "",
                    content_type=item.get("content_type") or "",
                    size_bytes=int(item.get("size_bytes") or 0),
                    is_inline=bool(item.get("is_inline")),
                    content_id=item.get("content_id") or "",
                )
                existing.append(created)
                changed = True
            elif item.get("provider_attachment_id") and (
                match.provider_attachment_id != item["provider_attachment_id"]
            ):
                # Gmail attachment ids are not stable between fetches
                EmailAttachment.objects.filter(pk=match.pk).update(
                    provider_attachment_id=item["provider_attachment_id"]
                )
        return changed


def refresh_thread_aggregates(thread_pk) -> None:
    """Recount messages and label flags from the non-deleted messages."""
    live = EmailMessage.objects.filter(thread_id=thread_pk, is_deleted=False)
    labels = []
    for label_ids in live.values_list("label_ids", flat=True):
        for label in label_ids or []:
            if label not in labels:
                labels.append(label)
    count = live.count()
    EmailThread.objects.filter(pk=thread_pk).update(
        message_count=count,
        label_ids=labels,
        is_unread="UNREAD" in labels,
        in_inbox="INBOX" in labels,
        is_deleted=count == 0,
    )


def recompute_thread_summary(thread_pk) -> None:
    """Full recompute after a removal: summary comes from the newest live message."""
    latest = (
        EmailMessage.objects.filter(thread_id=thread_pk, is_deleted=False)
        .order_by(F("sent_at").desc(nulls_last=True), "-created_at")
        .first()
    )
    if latest is not None:
        EmailThread.objects.filter(pk=thread_pk).update(
            subject=latest.subject,
            snippet=latest.snippet,
            from_address=latest.from_address,
            last_message_date=latest.sent_at,
        )
    else:
        EmailThread.objects.filter(pk=thread_pk).update(last_message_date=None)
    refresh_thread_aggregates(thread_pk)
