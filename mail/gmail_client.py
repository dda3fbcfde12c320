"""
Gmail API access for the shared mailbox.

Authenticates as a Google service account with domain-wide delegation,
impersonating GOOGLE_IMPERSONATE_USER_EMAIL. Every request goes through
`_execute`, which retries 429/5xx a bounded number of times and then maps
failures onto mail.exceptions.
"""
import base64
import json
import logging
import time

import httplib2
from django.conf import settings
from google.auth import exceptions as google_auth_exceptions
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mail.exceptions import (
    RemoteAuthError,
    RemoteError,
    RemoteNotFoundError,
    RemoteTransientError,
)

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]


def _http_status(error: HttpError):
    resp = getattr(error, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def map_http_error(error: HttpError, operation: str) -> RemoteError:
    status = _http_status(error)
    message = f"Gmail {operation} failed ({status}): {error}"
    if status in (401, 403):
        return RemoteAuthError(message, status=status)
    if status == 404:
        return RemoteNotFoundError(message, status=status)
    if status in RETRYABLE_STATUSES:
        return RemoteTransientError(message, status=status)
    return RemoteError(message, status=status)


def load_service_account_credentials(mailbox: str):
    """Delegated credentials for `mailbox`. Raises RemoteAuthError when unconfigured."""
    raw = (getattr(settings, "GOOGLE_SERVICE_ACCOUNT_JSON", "") or "").strip()
    if not raw or not mailbox:
        raise RemoteAuthError(
            "Missing GOOGLE_SERVICE_ACCOUNT_JSON or GOOGLE_IMPERSONATE_USER_EMAIL"
        )
    try:
        if raw.startswith("{"):
            info = json.loads(raw)
            credentials = service_account.Credentials.from_service_account_info(
                info, scopes=GMAIL_SCOPES
            )
        else:
            credentials = service_account.Credentials.from_service_account_file(
                raw, scopes=GMAIL_SCOPES
            )
    except (ValueError, OSError) as e:
        raise RemoteAuthError(f"Invalid service account credentials: {e}")
    return credentials.with_subject(mailbox)


class GmailMailboxClient:
    """Thin wrapper over the Gmail v1 API returning raw API dicts."""

    # Built services per mailbox; credentials refresh themselves
    _service_cache = {}

    def __init__(self, mailbox: str = None, service=None, max_retries: int = None, sleep=time.sleep):
        self.mailbox = mailbox or getattr(settings, "GOOGLE_IMPERSONATE_USER_EMAIL", "")
        self._service = service
        self.max_retries = max(
            1, int(max_retries or getattr(settings, "MAIL_GMAIL_MAX_RETRIES", 3))
        )
        self._sleep = sleep

    def _get_service(self):
        if self._service is not None:
            return self._service
        cached = self._service_cache.get(self.mailbox)
        if cached is not None:
            self._service = cached
            return cached
        credentials = load_service_account_credentials(self.mailbox)
        service = build("gmail", "v1", credentials=credentials, cache_discovery=False)
        self._service_cache[self.mailbox] = service
        self._service = service
        return service

    @classmethod
    def clear_cache(cls, mailbox=None):
        if mailbox:
            cls._service_cache.pop(mailbox, None)
        else:
            cls._service_cache.clear()

    def _execute(self, request_fn, operation: str):
        """Execute a Gmail API request with exponential backoff on 429/5xx."""
        for attempt in range(self.max_retries):
            try:
                return request_fn().execute()
            except HttpError as e:
                status = _http_status(e)
                if status in RETRYABLE_STATUSES and attempt < self.max_retries - 1:
                    delay = (2 ** attempt) + 1
                    logger.info(
                        "Gmail %s retry %s/%s status=%s in %ss",
                        operation,
                        attempt + 1,
                        self.max_retries,
                        status,
                        delay,
                    )
                    self._sleep(delay)
                    continue
                if status in (401, 403):
                    self.clear_cache(self.mailbox)
                raise map_http_error(e, operation)
            except google_auth_exceptions.RefreshError as e:
                self.clear_cache(self.mailbox)
                raise RemoteAuthError(f"Gmail {operation} auth refresh failed: {e}")
            except (google_auth_exceptions.TransportError, httplib2.HttpLib2Error, OSError) as e:
                if attempt < self.max_retries - 1:
                    delay = (2 ** attempt) + 1
                    logger.info(
                        "Gmail %s network error retry %s/%s in %ss: %s",
                        operation,
                        attempt + 1,
                        self.max_retries,
                        delay,
                        e,
                    )
                    self._sleep(delay)
                    continue
                raise RemoteTransientError(f"Gmail {operation} network error: {e}")
        raise RemoteTransientError(f"Gmail {operation} failed after {self.max_retries} attempts")

    def profile(self) -> dict:
        service = self._get_service()
        return self._execute(lambda: service.users().getProfile(userId="me"), "profile")

    def history_since(self, cursor: str, page_token: str = None, max_results: int = 500) -> dict:
        service = self._get_service()
        kwargs = {
            "userId": "me",
            "startHistoryId": cursor,
            "historyTypes": HISTORY_TYPES,
            "maxResults": max_results,
        }
        if page_token:
            kwargs["pageToken"] = page_token
        return self._execute(lambda: service.users().history().list(**kwargs), "history.list")

    def list_threads(self, label_ids, page_token: str = None, max_results: int = 50) -> dict:
        service = self._get_service()
        kwargs = {
            "userId": "me",
            "labelIds": list(label_ids),
            "maxResults": max_results,
            "includeSpamTrash": False,
        }
        if page_token:
            kwargs["pageToken"] = page_token
        return self._execute(lambda: service.users().threads().list(**kwargs), "threads.list")

    def get_thread(self, thread_id: str) -> dict:
        service = self._get_service()
        return self._execute(
            lambda: service.users().threads().get(userId="me", id=thread_id, format="full"),
            "threads.get",
        )

    def get_message(self, message_id: str) -> dict:
        service = self._get_service()
        return self._execute(
            lambda: service.users().messages().get(userId="me", id=message_id, format="full"),
            "messages.get",
        )

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Decoded attachment bytes; empty when the provider returns no data."""
        service = self._get_service()
        resp = self._execute(
            lambda: service.users()
            .messages()
            .attachments()
            .get(userId="me", messageId=message_id, id=attachment_id),
            "attachments.get",
        )
        raw = resp.get("data")
        if not raw:
            return b""
        return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
