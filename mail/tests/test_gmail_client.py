from unittest import mock

import httplib2
from django.test import SimpleTestCase, override_settings
from google.auth import exceptions as google_auth_exceptions
from googleapiclient.errors import HttpError

from mail.exceptions import (
    RemoteAuthError,
    RemoteError,
    RemoteNotFoundError,
    RemoteTransientError,
)
from mail.gmail_client import GmailMailboxClient, load_service_account_credentials, map_http_error


def http_error(status):
    return HttpError(httplib2.Response({"status": status}), b'{"error": "x"}')


class GmailClientTests(SimpleTestCase):
    def setUp(self):
        self.sleeps = []
        self.client = GmailMailboxClient(
            mailbox="ops@example.com",
            service=mock.Mock(),
            max_retries=3,
            sleep=self.sleeps.append,
        )

    def request(self, *outcomes):
        req = mock.Mock()
        req.execute.side_effect = list(outcomes)
        return req

    def test_retries_transient_status_then_succeeds(self):
        req = self.request(http_error(503), http_error(429), {"historyId": "42"})
        self.assertEqual(self.client._execute(lambda: req, "profile"), {"historyId": "42"})
        self.assertEqual(self.sleeps, [2, 3])

    def test_transient_status_exhausts_retries(self):
        req = self.request(http_error(500), http_error(500), http_error(500))
        with self.assertRaises(RemoteTransientError) as ctx:
            self.client._execute(lambda: req, "history.list")
        self.assertEqual(ctx.exception.status, 500)

    def test_not_found_is_not_retried(self):
        req = self.request(http_error(404))
        with self.assertRaises(RemoteNotFoundError):
            self.client._execute(lambda: req, "history.list")
        self.assertEqual(self.sleeps, [])

    def test_auth_failures(self):
        with self.assertRaises(RemoteAuthError):
            self.client._execute(lambda: self.request(http_error(401)), "profile")
        refresh = self.request(google_auth_exceptions.RefreshError("invalid_grant"))
        with self.assertRaises(RemoteAuthError):
            self.client._execute(lambda: refresh, "profile")

    def test_network_errors_are_transient(self):
        req = self.request(OSError("reset"), OSError("reset"), OSError("reset"))
        with self.assertRaises(RemoteTransientError):
            self.client._execute(lambda: req, "threads.get")
        self.assertEqual(len(self.sleeps), 2)

    def test_other_status_maps_to_remote_error(self):
        error = map_http_error(http_error(400), "threads.list")
        self.assertIs(type(error), RemoteError)
        self.assertEqual(error.kind, "remote")

    def test_get_attachment_decodes_urlsafe_data(self):
        self.client._service.users().messages().attachments().get().execute.return_value = {
            "data": "iVBORw"
        }
        self.assertEqual(self.client.get_attachment("m-1", "att-1"), b"\x89PNG")

    @override_settings(GOOGLE_SERVICE_ACCOUNT_JSON="")
    def test_missing_credentials_is_auth_error(self):
        with self.assertRaises(RemoteAuthError):
            load_service_account_credentials("ops@example.com")
