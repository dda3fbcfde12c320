"""
Bounded re-scan of the watched labels, used when there is no usable cursor.

The profile's historyId is read before listing so that anything changing
during the scan is replayed by the next delta run. A thread is only fetched
when it is new locally or its remote historyId moved past the one recorded
on the mirror, so re-running a backfill over synced data costs list calls only.

A scan that stops early or hits a provider error returns no
cursor. The next run backfills again and skips what this one mirrored.
"""
import logging

from django.conf import settings

from mail import changes as change_records
from mail.changes import deadline_passed, history_id_int
from mail.exceptions import RemoteAuthError, RemoteError, RunDeadlineExceeded
from mail.models import EmailMessage, EmailThread
from mail.parsing import parse_message

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


class BackfillEngine:
    def __init__(self, client, page_size: int = None, max_thread_fetches: int = None):
        self.client = client
        self.page_size = int(page_size or getattr(settings, "MAIL_SYNC_BACKFILL_PAGE_SIZE", 50))
        self.max_thread_fetches = int(
            max_thread_fetches or getattr(settings, "MAIL_SYNC_BACKFILL_MAX_THREADS", 100)
        )

    def run(self, scope_key: str, watched_labels=None, page_budget: int = None, deadline=None) -> dict:
        labels = list(
            watched_labels or getattr(settings, "MAIL_SYNC_WATCHED_LABELS", ["INBOX", "SENT"])
        )
        page_budget = int(page_budget or getattr(settings, "MAIL_SYNC_BACKFILL_PAGE_BUDGET", 5))
        if deadline_passed(deadline):
            raise RunDeadlineExceeded("Run budget exhausted before backfill started")

        profile = self.client.profile()
        new_cursor = str(profile.get("historyId") or "")
        if history_id_int(new_cursor) is None:
            raise RemoteError(f"Gmail profile returned no usable historyId: {profile!r}")

        stats = {
            "labels": labels,
            "pages": 0,
            "threads_listed": 0,
            "threads_fetched": 0,
            "threads_skipped": 0,
            "thread_failures": 0,
            "page_failures": 0,
            "messages": 0,
            "truncated_labels": [],
            "stopped": None,
            "complete": False,
        }
        change_list = []
        seen_threads = set()
        last_error = None

        for label in labels:
            page_token = None
            label_pages = 0
            while label_pages < page_budget and stats["stopped"] is None:
                if deadline_passed(deadline):
                    stats["stopped"] = "deadline"
                    break
                try:
                    resp = self.client.list_threads(
                        [label], page_token=page_token, max_results=self.page_size
                    )
                except RemoteAuthError:
                    raise
                except RemoteError as e:
                    last_error = e
                    stats["page_failures"] += 1
                    logger.warning(
                        "backfill list_threads failed scope=%s label=%s page=%s: %s",
                        scope_key,
                        label,
                        label_pages + 1,
                        e,
                    )
                    break
                label_pages += 1
                stats["pages"] += 1
                threads = [t for t in (resp.get("threads") or []) if t.get("id") not in seen_threads]
                stats["threads_listed"] += len(threads)
                seen_threads.update(t["id"] for t in threads if t.get("id"))
                change_list.extend(self._process_page(scope_key, threads, deadline, stats))
                page_token = resp.get("nextPageToken")
                if not page_token:
                    break
            if page_token and stats["stopped"] is None:
                stats["truncated_labels"].append(label)

        if stats["pages"] == 0 and last_error is not None:
            raise last_error

        stats["complete"] = (
            stats["stopped"] is None
            and not stats["truncated_labels"]
            and not stats["page_failures"]
            and not stats["thread_failures"]
        )
        if not stats["complete"]:
            # Threads past the budget are picked up by the next backfill
            new_cursor = None

        sync_audit.info(
            "backfill scope=%s new_cursor=%s pages=%s fetched=%s skipped=%s changes=%s",
            scope_key,
            new_cursor,
            stats["pages"],
            stats["threads_fetched"],
            stats["threads_skipped"],
            len(change_list),
            extra={"scope_key": scope_key, "new_cursor": new_cursor, "stats": stats},
        )
        return {"changes": change_list, "new_cursor": new_cursor, "stats": stats}

    def _process_page(self, scope_key, threads, deadline, stats):
        ids = [t["id"] for t in threads if t.get("id")]
        local = dict(
            EmailThread.objects.filter(scope_key=scope_key, external_thread_id__in=ids)
            .values_list("external_thread_id", "history_id")
        )
        page_changes = []
        for item in threads:
            thread_id = item.get("id")
            if not thread_id:
                continue
            if not self._needs_fetch(thread_id, item.get("historyId"), local):
                stats["threads_skipped"] += 1
                continue
            if stats["threads_fetched"] >= self.max_thread_fetches:
                stats["stopped"] = "max_threads"
                break
            if deadline_passed(deadline):
                stats["stopped"] = "deadline"
                break
            try:
                thread_data = self.client.get_thread(thread_id)
            except RemoteAuthError:
                raise
            except RemoteError as e:
                stats["thread_failures"] += 1
                logger.warning("backfill get_thread failed scope=%s thread=%s: %s", scope_key, thread_id, e)
                continue
            stats["threads_fetched"] += 1
            page_changes.extend(self._thread_changes(scope_key, thread_id, thread_data, stats))
        return page_changes

    @staticmethod
    def _needs_fetch(thread_id, remote_history_id, local):
        if thread_id not in local:
            return True
        local_history = history_id_int(local[thread_id])
        remote_history = history_id_int(remote_history_id)
        if local_history is None or remote_history is None:
            return True
        return remote_history > local_history

    def _thread_changes(self, scope_key, thread_id, thread_data, stats):
        thread_history_id = thread_data.get("historyId")
        result = []
        remote_ids = set()
        for msg_data in thread_data.get("messages") or []:
            if msg_data.get("id"):
                remote_ids.add(msg_data["id"])
            try:
                parsed = parse_message(msg_data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "backfill parse failed scope=%s thread=%s message=%s: %s",
                    scope_key,
                    thread_id,
                    msg_data.get("id"),
                    e,
                )
                continue
            result.append(change_records.message_added(parsed, thread_history_id=thread_history_id))
            stats["messages"] += 1

        # Local messages the provider no longer lists in this thread
        stale = EmailMessage.objects.filter(
            scope_key=scope_key,
            thread__external_thread_id=thread_id,
            is_deleted=False,
        ).exclude(external_message_id__in=remote_ids)
        for mid in stale.values_list("external_message_id", flat=True):
            result.append(change_records.message_removed(mid, thread_id))
        return result
