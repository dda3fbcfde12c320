"""
Resolve inline `cid:` image references to stored files.

Best-effort enrichment: each message gets at most MAIL_CID_MAX_ATTEMPTS tries,
spaced by MAIL_CID_RETRY_BACKOFF_SECONDS, and nothing here raises to the caller.
"""
import logging
import time
from datetime import timedelta

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.db.models import F, Q
from django.utils import timezone
from django.utils.text import get_valid_filename

from mail.audit import record_audit_event
from mail.exceptions import RemoteError
from mail.models import AuditEvent, CidState, EmailAttachment, EmailMessage
from mail.parsing import extract_cids_from_html, normalize_cid, replace_cid_reference

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


def inline_storage_path(scope_key: str, message: EmailMessage, content_id: str, filename: str) -> str:
    safe_cid = get_valid_filename(content_id) or "cid"
    safe_name = get_valid_filename(filename or "") or "inline"
    return f"inline/{get_valid_filename(scope_key)}/{message.pk}/{safe_cid}-{safe_name}"


class InlineCidResolver:
    def __init__(self, client, storage=None, delay_seconds: float = None, sleep=time.sleep):
        self.client = client
        self.storage = storage or default_storage
        self.delay_seconds = float(
            getattr(settings, "MAIL_CID_DELAY_SECONDS", 0.5) if delay_seconds is None else delay_seconds
        )
        self.backoff_seconds = int(getattr(settings, "MAIL_CID_RETRY_BACKOFF_SECONDS", 600))
        self.max_attempts = int(getattr(settings, "MAIL_CID_MAX_ATTEMPTS", 3))
        self._sleep = sleep

    def select_messages(self, scope_key: str, limit: int = None, now=None):
        now = now or timezone.now()
        limit = int(limit or getattr(settings, "MAIL_CID_BATCH_SIZE", 20))
        due = now - timedelta(seconds=self.backoff_seconds)
        qs = (
            EmailMessage.objects.filter(
                scope_key=scope_key,
                cid_state=CidState.PENDING,
                has_body=True,
                is_deleted=False,
            )
            .filter(Q(cid_last_attempt_at__isnull=True) | Q(cid_last_attempt_at__lte=due))
            .order_by(F("cid_last_attempt_at").asc(nulls_first=True), "-sent_at")
        )
        return list(qs[:limit])

    def run(self, scope_key: str, limit: int = None) -> dict:
        result = {"processed": 0, "resolved": 0, "failed": 0, "skipped": 0, "retrying": 0}
        try:
            messages = self.select_messages(scope_key, limit=limit)
        except Exception:
            logger.exception("resolve_inline_cids selection failed scope=%s", scope_key)
            return result

        for index, message in enumerate(messages):
            if index and self.delay_seconds > 0:
                self._sleep(self.delay_seconds)
            result["processed"] += 1
            try:
                state = self._resolve_message(scope_key, message)
            except Exception:
                logger.warning(
                    "resolve_inline_cids failed scope=%s message=%s",
                    scope_key,
                    message.external_message_id,
                    exc_info=True,
                )
                state = self._record_attempt_only(message)
            if state == CidState.RESOLVED:
                result["resolved"] += 1
            elif state == CidState.FAILED:
                result["failed"] += 1
            elif state is None:
                result["skipped"] += 1
            else:
                result["retrying"] += 1

        sync_audit.info(
            "resolve_inline_cids scope=%s processed=%s resolved=%s failed=%s skipped=%s",
            scope_key,
            result["processed"],
            result["resolved"],
            result["failed"],
            result["skipped"],
            extra={"scope_key": scope_key, "counts": result},
        )
        return result

    def _resolve_message(self, scope_key, message):
        """
        Returns the new cid_state, or None when body_html changed under us and
        the attempt was not recorded.
        """
        now = timezone.now()
        original_html = message.body_html or ""
        cids = extract_cids_from_html(original_html)
        attempts = message.cid_attempts + 1
        if not cids:
            applied = EmailMessage.objects.filter(pk=message.pk, cid_state=CidState.PENDING).update(
                cid_state=CidState.RESOLVED, cid_attempts=attempts, cid_last_attempt_at=now
            )
            return CidState.RESOLVED if applied else None

        inline = {}
        for att in message.attachments.all():
            if att.content_id:
                inline.setdefault(normalize_cid(att.content_id), att)

        html = original_html
        all_resolved = True
        for cid in cids:
            att = inline.get(cid)
            if att is None:
                all_resolved = False
                continue
            if not att.file_url:
                url = self._store_attachment(scope_key, message, cid, att)
                if not url:
                    all_resolved = False
                    continue
            html = replace_cid_reference(html, cid, att.file_url)

        if all_resolved:
            state = CidState.RESOLVED
        elif attempts >= self.max_attempts:
            state = CidState.FAILED
        else:
            state = CidState.PENDING

        applied = EmailMessage.objects.filter(pk=message.pk, body_html=message.body_html).update(
            body_html=html,
            cid_state=state,
            cid_attempts=attempts,
            cid_last_attempt_at=now,
        )
        if not applied:
            logger.info(
                "resolve_inline_cids body changed during attempt message=%s; will retry",
                message.external_message_id,
            )
            return None
        return state

    def _store_attachment(self, scope_key, message, cid, att):
        if not att.provider_attachment_id:
            return ""
        try:
            data = self.client.get_attachment(message.external_message_id, att.provider_attachment_id)
        except RemoteError as e:
            logger.warning(
                "resolve_inline_cids fetch failed message=%s cid=%s: %s",
                message.external_message_id,
                cid,
                e,
            )
            return ""
        if not data:
            return ""

        name = self.storage.save(
            inline_storage_path(scope_key, message, cid, att.filename), ContentFile(data)
        )
        url = self.storage.url(name)
        resolved_at = timezone.now()
        EmailAttachment.objects.filter(pk=att.pk).update(
            file_url=url, resolved_at=resolved_at, size_bytes=att.size_bytes or len(data)
        )
        att.file_url = url
        att.resolved_at = resolved_at
        record_audit_event(
            AuditEvent.EventType.ATTACHMENT_REHYDRATED,
            "email_attachment",
            att.pk,
            detail={
                "external_message_id": message.external_message_id,
                "content_id": cid,
                "file_url": url,
                "size_bytes": len(data),
            },
        )
        return url

    def _record_attempt_only(self, message):
        attempts = message.cid_attempts + 1
        state = CidState.FAILED if attempts >= self.max_attempts else CidState.PENDING
        try:
            EmailMessage.objects.filter(pk=message.pk, cid_state=CidState.PENDING).update(
                cid_state=state, cid_attempts=attempts, cid_last_attempt_at=timezone.now()
            )
        except Exception:
            logger.exception("resolve_inline_cids could not record attempt message=%s", message.pk)
        return state
