from unittest import mock

from django.test import TestCase, override_settings

from mail import tasks
from mail.models import SyncState
from mail.tests.fakes import FakeMailboxClient, build_message


@override_settings(
    MAIL_SYNC_DEFAULT_SCOPE="gmail_sync",
    MAIL_SYNC_WATCHED_LABELS=["INBOX"],
    MAIL_REHYDRATE_DELAY_SECONDS=0,
    MAIL_CID_DELAY_SECONDS=0,
)
class TaskTests(TestCase):
    def setUp(self):
        self.fake = FakeMailboxClient()
        self.fake.seed(build_message("m-1", "t-1"))

    def test_sync_task_returns_summary(self):
        with mock.patch("mail.gmail_client.GmailMailboxClient", return_value=self.fake):
            summary = tasks.sync_mailbox()
        self.assertEqual(summary["outcome"], "success")
        self.assertEqual(summary["scopeKey"], "gmail_sync")
        self.assertIsNotNone(SyncState.objects.get(scope_key="gmail_sync").cursor)

    def test_side_pass_tasks_run_without_lock(self):
        with mock.patch.object(tasks, "_gmail_client", return_value=self.fake):
            self.assertEqual(tasks.rehydrate_missing_bodies()["processed"], 0)
            self.assertEqual(tasks.resolve_inline_cids()["processed"], 0)
        self.assertFalse(SyncState.objects.exists())

    def test_side_pass_errors_are_returned(self):
        with mock.patch.object(tasks, "_gmail_client", side_effect=RuntimeError("no credentials")):
            self.assertEqual(tasks.rehydrate_missing_bodies(), {"error": "no credentials"})
            self.assertEqual(tasks.resolve_inline_cids(), {"error": "no credentials"})
