"""
Incremental sync from the Gmail history log.

Only records in the processed prefix of the history are turned into changes,
so the returned cursor never skips an unapplied record: it is the provider's
current historyId when the log was read to the end, otherwise the id of the
last record processed.
"""
import logging

from django.conf import settings

from mail import changes as change_records
from mail.changes import deadline_passed, history_id_int
from mail.exceptions import RemoteNotFoundError, RunDeadlineExceeded, StaleCursor
from mail.models import EmailMessage
from mail.parsing import parse_message

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


def watched_labels_setting():
    return list(getattr(settings, "MAIL_SYNC_WATCHED_LABELS", ["INBOX", "SENT"]))


class DeltaEngine:
    def __init__(self, client, watched_labels=None, max_pages: int = None):
        self.client = client
        self.watched_labels = set(watched_labels or watched_labels_setting())
        self.max_pages = int(max_pages or getattr(settings, "MAIL_SYNC_DELTA_MAX_PAGES", 10))

    def run(self, scope_key: str, cursor, deadline=None) -> dict:
        """
        Return {"changes", "new_cursor", "stats"} for history after `cursor`.
        Raises StaleCursor when the cursor is missing, malformed or expired.
        """
        if history_id_int(cursor) is None:
            raise StaleCursor(f"Cursor {cursor!r} is not a usable history id")
        cursor = str(cursor)

        records = []
        page_token = None
        pages = 0
        remote_history_id = None
        complete = False
        while True:
            if deadline_passed(deadline):
                if pages == 0:
                    raise RunDeadlineExceeded("Run budget exhausted before reading history")
                break
            if pages >= self.max_pages:
                break
            try:
                resp = self.client.history_since(cursor, page_token=page_token)
            except RemoteNotFoundError as e:
                raise StaleCursor(f"History cursor {cursor} expired: {e}")
            pages += 1
            records.extend(resp.get("history") or [])
            remote_history_id = resp.get("historyId") or remote_history_id
            page_token = resp.get("nextPageToken")
            if not page_token:
                complete = True
                break

        stats = {
            "pages": pages,
            "records": len(records),
            "added": 0,
            "removed": 0,
            "label_changed": 0,
            "skipped_unwatched": 0,
            "vanished": 0,
            "complete": False,
        }
        pending, last_processed_id, all_processed = self._classify(
            scope_key, records, deadline, stats
        )

        if complete and all_processed:
            new_cursor = remote_history_id or last_processed_id or cursor
            stats["complete"] = True
        else:
            new_cursor = last_processed_id or cursor
        # Never move the cursor backwards
        new_cursor_int = history_id_int(new_cursor)
        if new_cursor_int is None or new_cursor_int < int(cursor):
            new_cursor = cursor

        change_list = list(pending.values())
        for change in change_list:
            if change["kind"] == change_records.ChangeKind.MESSAGE_ADDED:
                stats["added"] += 1
            elif change["kind"] == change_records.ChangeKind.MESSAGE_REMOVED:
                stats["removed"] += 1
            else:
                stats["label_changed"] += 1

        sync_audit.info(
            "delta scope=%s cursor=%s new_cursor=%s pages=%s records=%s changes=%s",
            scope_key,
            cursor,
            new_cursor,
            pages,
            len(records),
            len(change_list),
            extra={"scope_key": scope_key, "cursor": cursor, "new_cursor": str(new_cursor), "stats": stats},
        )
        return {"changes": change_list, "new_cursor": str(new_cursor), "stats": stats}

    def _classify(self, scope_key, records, deadline, stats):
        """Coalesce history records into one change per message, in record order."""
        mirrored = self._mirrored_ids(scope_key, records)
        pending = {}
        fetched = set()
        last_processed_id = None

        for record in records:
            if deadline_passed(deadline):
                return pending, last_processed_id, False

            for item in record.get("messagesAdded") or []:
                msg = item.get("message") or {}
                mid = msg.get("id")
                if not mid or mid in fetched:
                    continue
                labels = set(msg.get("labelIds") or [])
                if not (labels & self.watched_labels) and mid not in mirrored:
                    stats["skipped_unwatched"] += 1
                    continue
                fetched.add(mid)
                self._put(pending, mid, self._fetch_added(mid, msg.get("threadId", ""), stats))

            for item in record.get("messagesDeleted") or []:
                msg = item.get("message") or {}
                mid = msg.get("id")
                if not mid:
                    continue
                self._put(pending, mid, change_records.message_removed(mid, msg.get("threadId", "")))

            for key in ("labelsAdded", "labelsRemoved"):
                for item in record.get(key) or []:
                    msg = item.get("message") or {}
                    mid = msg.get("id")
                    if not mid:
                        continue
                    label_ids = list(msg.get("labelIds") or [])
                    existing = pending.get(mid)
                    if existing and existing["kind"] == change_records.ChangeKind.MESSAGE_REMOVED:
                        continue
                    if existing and existing["kind"] == change_records.ChangeKind.MESSAGE_ADDED:
                        existing["message"]["label_ids"] = label_ids
                        existing["message"]["is_outbound"] = "SENT" in label_ids
                        continue
                    if mid not in mirrored:
                        if not (set(label_ids) & self.watched_labels) or mid in fetched:
                            continue
                        # Entered a watched label before it was ever mirrored
                        fetched.add(mid)
                        self._put(pending, mid, self._fetch_added(mid, msg.get("threadId", ""), stats))
                        continue
                    self._put(
                        pending,
                        mid,
                        change_records.label_changed(mid, msg.get("threadId", ""), label_ids),
                    )

            last_processed_id = record.get("id") or last_processed_id

        return pending, last_processed_id, True

    @staticmethod
    def _put(pending, mid, change):
        pending.pop(mid, None)
        pending[mid] = change

    def _fetch_added(self, mid, thread_id, stats):
        try:
            msg_data = self.client.get_message(mid)
        except RemoteNotFoundError:
            # Added then deleted before we could read it
            stats["vanished"] += 1
            return change_records.message_removed(mid, thread_id)
        return change_records.message_added(parse_message(msg_data))

    @staticmethod
    def _mirrored_ids(scope_key, records):
        ids = set()
        for record in records:
            for key in ("messagesAdded", "labelsAdded", "labelsRemoved"):
                for item in record.get(key) or []:
                    mid = (item.get("message") or {}).get("id")
                    if mid:
                        ids.add(mid)
        if not ids:
            return set()
        return set(
            EmailMessage.objects.filter(
                scope_key=scope_key, external_message_id__in=ids
            ).values_list("external_message_id", flat=True)
        )
