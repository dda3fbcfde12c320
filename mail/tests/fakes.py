"""
In-memory stand-in for GmailMailboxClient.

Keeps a mailbox of Gmail-shaped message dicts plus a history log, so the
delta and backfill engines can be driven end to end without the API.
"""
import base64
import copy
from datetime import datetime, timezone as utc_tz

from mail.exceptions import RemoteNotFoundError


def b64(value) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def build_message(
    message_id,
    thread_id,
    subject="Hello",
    sender="Site Office <office@example.com>",
    to="ops@example.com",
    label_ids=("INBOX", "UNREAD"),
    html=None,
    text="Plain body",
    sent_at=None,
    history_id=None,
    inline_images=None,
    snippet=None,
):
    """
    Gmail format=full message. inline_images is a list of
    (content_id, filename, attachment_id) tuples added as inline parts.
    """
    sent_at = sent_at or datetime(2024, 5, 1, 9, 0, tzinfo=utc_tz.utc)
    headers = [
        {"name": "Subject", "value": subject},
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
    ]
    parts = []
    if text is not None:
        parts.append({"mimeType": "text/plain", "filename": "", "body": {"data": b64(text)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "filename": "", "body": {"data": b64(html)}})
    for content_id, filename, attachment_id in inline_images or []:
        parts.append(
            {
                "mimeType": "image/png",
                "filename": filename,
                "headers": [
                    {"name": "Content-ID", "value": f"<{content_id}>"},
                    {"name": "Content-Disposition", "value": f'inline; filename="{filename}"'},
                ],
                "body": {"attachmentId": attachment_id, "size": 4},
            }
        )
    return {
        "id": message_id,
        "threadId": thread_id,
        "historyId": str(history_id) if history_id is not None else None,
        "labelIds": list(label_ids),
        "snippet": snippet if snippet is not None else (text or "")[:100],
        "internalDate": str(int(sent_at.timestamp() * 1000)),
        "payload": {"mimeType": "multipart/alternative", "headers": headers, "parts": parts},
    }


def _ref(msg):
    return {"id": msg["id"], "threadId": msg["threadId"], "labelIds": list(msg.get("labelIds") or [])}


class FakeMailboxClient:
    def __init__(self, start_history_id=1000, history_page_size=100):
        self.history_id = start_history_id
        # Cursors older than this raise 404 like an expired startHistoryId
        self.history_floor = start_history_id
        self.history_page_size = history_page_size
        self.messages = {}
        self.history = []
        self.attachments = {}
        self.failures = {}
        self.calls = []

    # Mailbox mutations -------------------------------------------------

    def _next_history_id(self):
        self.history_id += 1
        return self.history_id

    def seed(self, msg):
        """Put a message in the mailbox without a history record."""
        msg = copy.deepcopy(msg)
        msg["historyId"] = str(self._next_history_id())
        self.messages[msg["id"]] = msg
        self.history_floor = self.history_id
        return msg

    def add_message(self, msg):
        msg = copy.deepcopy(msg)
        hid = self._next_history_id()
        msg["historyId"] = str(hid)
        self.messages[msg["id"]] = msg
        self.history.append({"id": str(hid), "messagesAdded": [{"message": _ref(msg)}]})
        return msg

    def delete_message(self, message_id):
        msg = self.messages.pop(message_id)
        hid = self._next_history_id()
        self.history.append({"id": str(hid), "messagesDeleted": [{"message": _ref(msg)}]})

    def set_labels(self, message_id, label_ids):
        msg = self.messages[message_id]
        msg["labelIds"] = list(label_ids)
        hid = self._next_history_id()
        msg["historyId"] = str(hid)
        self.history.append({"id": str(hid), "labelsAdded": [{"message": _ref(msg), "labelIds": list(label_ids)}]})

    def add_attachment(self, message_id, attachment_id, data: bytes):
        self.attachments[(message_id, attachment_id)] = data

    def fail(self, operation, error, times=1):
        """Raise `error` from the next `times` calls to `operation`."""
        self.failures.setdefault(operation, []).extend([error] * times)

    def _check(self, operation):
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    # Client interface --------------------------------------------------

    def profile(self):
        self._check("profile")
        return {"emailAddress": "ops@example.com", "historyId": str(self.history_id)}

    def history_since(self, cursor, page_token=None, max_results=500):
        self._check("history_since")
        if int(cursor) < self.history_floor:
            raise RemoteNotFoundError(f"Requested entity was not found: {cursor}", status=404)
        records = [r for r in self.history if int(r["id"]) > int(cursor)]
        start = int(page_token or 0)
        end = start + min(max_results, self.history_page_size)
        resp = {"history": copy.deepcopy(records[start:end]), "historyId": str(self.history_id)}
        if end < len(records):
            resp["nextPageToken"] = str(end)
        return resp

    def _threads(self):
        threads = {}
        for msg in self.messages.values():
            threads.setdefault(msg["threadId"], []).append(msg)
        return threads

    def list_threads(self, label_ids, page_token=None, max_results=50):
        self._check("list_threads")
        wanted = set(label_ids)
        matching = []
        for thread_id, msgs in self._threads().items():
            if any(wanted & set(m.get("labelIds") or []) for m in msgs):
                history = max(int(m["historyId"]) for m in msgs)
                matching.append({"id": thread_id, "historyId": str(history)})
        matching.sort(key=lambda t: int(t["historyId"]), reverse=True)
        start = int(page_token or 0)
        end = start + max_results
        resp = {"threads": matching[start:end]}
        if end < len(matching):
            resp["nextPageToken"] = str(end)
        return resp

    def get_thread(self, thread_id):
        self._check("get_thread")
        msgs = self._threads().get(thread_id)
        if not msgs:
            raise RemoteNotFoundError(f"Thread {thread_id} not found", status=404)
        msgs = sorted(msgs, key=lambda m: int(m["internalDate"]))
        return {
            "id": thread_id,
            "historyId": str(max(int(m["historyId"]) for m in msgs)),
            "messages": copy.deepcopy(msgs),
        }

    def get_message(self, message_id):
        self._check("get_message")
        if message_id not in self.messages:
            raise RemoteNotFoundError(f"Message {message_id} not found", status=404)
        return copy.deepcopy(self.messages[message_id])

    def get_attachment(self, message_id, attachment_id):
        self._check("get_attachment")
        if (message_id, attachment_id) not in self.attachments:
            raise RemoteNotFoundError(f"Attachment {attachment_id} not found", status=404)
        return self.attachments[(message_id, attachment_id)]
