"""
Backfill missing message bodies outside the sync lock.

Only rows still at has_body=False are written, so a body stored meanwhile by
the reconciler is never replaced. Thread snippets are refreshed only for the
newest live message of the thread.
"""
import logging
import time

from django.conf import settings
from django.db.models import F
from django.utils import timezone

from mail.audit import record_audit_event
from mail.exceptions import RemoteAuthError, RemoteError
from mail.models import AuditEvent, CidState, EmailMessage, EmailThread
from mail.parsing import derive_snippet, extract_body_from_payload, extract_cids_from_html

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


class BodyRehydrator:
    def __init__(self, client, delay_seconds: float = None, sleep=time.sleep):
        self.client = client
        self.delay_seconds = float(
            getattr(settings, "MAIL_REHYDRATE_DELAY_SECONDS", 0.3)
            if delay_seconds is None
            else delay_seconds
        )
        self._sleep = sleep

    def select_messages(self, scope_key: str, limit: int = None, thread_id=None):
        limit = int(limit or getattr(settings, "MAIL_REHYDRATE_BATCH_SIZE", 50))
        qs = EmailMessage.objects.filter(scope_key=scope_key, has_body=False, is_deleted=False)
        if thread_id is not None:
            qs = qs.filter(thread_id=thread_id)
        return list(qs.order_by(F("sent_at").desc(nulls_last=True), "-created_at")[:limit])

    def run(self, scope_key: str, limit: int = None, thread_id=None) -> dict:
        messages = self.select_messages(scope_key, limit=limit, thread_id=thread_id)
        result = {
            "processed": 0,
            "success": 0,
            "failed": 0,
            "threads_updated": 0,
            "failures": [],
        }
        threads_updated = set()

        for index, message in enumerate(messages):
            if index and self.delay_seconds > 0:
                self._sleep(self.delay_seconds)
            result["processed"] += 1
            try:
                written = self._rehydrate_one(message)
            except RemoteAuthError as e:
                result["failed"] += 1
                result["failures"].append({"external_message_id": message.external_message_id, "reason": str(e)})
                logger.error("rehydrate aborted scope=%s: %s", scope_key, e)
                break
            except (RemoteError, ValueError) as e:
                result["failed"] += 1
                result["failures"].append({"external_message_id": message.external_message_id, "reason": str(e)})
                logger.warning(
                    "rehydrate failed scope=%s message=%s: %s",
                    scope_key,
                    message.external_message_id,
                    e,
                )
                continue
            result["success"] += 1
            if written and self._refresh_thread_snippet(message):
                threads_updated.add(message.thread_id)

        result["threads_updated"] = len(threads_updated)
        if result["processed"]:
            record_audit_event(
                AuditEvent.EventType.BODY_REHYDRATED,
                "scope",
                scope_key,
                detail={k: v for k, v in result.items() if k != "failures"},
            )
        sync_audit.info(
            "rehydrate scope=%s processed=%s success=%s failed=%s threads_updated=%s",
            scope_key,
            result["processed"],
            result["success"],
            result["failed"],
            result["threads_updated"],
            extra={"scope_key": scope_key, "failures_sample": result["failures"][:10]},
        )
        return result

    def _rehydrate_one(self, message) -> bool:
        """Fetch and store one body. False when another writer filled it first."""
        msg_data = self.client.get_message(message.external_message_id)
        if not msg_data.get("payload"):
            raise ValueError("No payload in Gmail response")
        body_html, body_text = extract_body_from_payload(msg_data["payload"])
        if not (body_html or body_text):
            raise ValueError("No readable MIME parts found")

        updates = {
            "has_body": True,
            "body_html": body_html or None,
            "body_text": body_text or None,
            "last_synced_at": timezone.now(),
        }
        written = EmailMessage.objects.filter(pk=message.pk, has_body=False).update(**updates)
        if written and extract_cids_from_html(body_html):
            EmailMessage.objects.filter(pk=message.pk, cid_state=CidState.NONE).update(
                cid_state=CidState.PENDING
            )
        if written:
            message.body_text = body_text or None
            message.has_body = True
        return bool(written)

    @staticmethod
    def _refresh_thread_snippet(message) -> bool:
        newest = (
            EmailMessage.objects.filter(thread_id=message.thread_id, is_deleted=False)
            .order_by(F("sent_at").desc(nulls_last=True), "-created_at")
            .values_list("pk", flat=True)
            .first()
        )
        if newest != message.pk:
            return False
        snippet = derive_snippet(message.body_text or "")
        if not snippet:
            return False
        return bool(EmailThread.objects.filter(pk=message.thread_id).update(snippet=snippet))
