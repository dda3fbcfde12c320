from datetime import datetime, timedelta, timezone as utc_tz
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase

from mail import changes
from mail.exceptions import ReconciliationError
from mail.models import CidState, EmailAttachment, EmailMessage, EmailThread
from mail.parsing import parse_message
from mail.reconciler import Reconciler
from mail.tests.fakes import build_message

SCOPE = "test_scope"
T0 = datetime(2024, 5, 1, 9, 0, tzinfo=utc_tz.utc)


def added(message_id, thread_id="t-1", history_id="2000", **kwargs):
    msg = build_message(message_id, thread_id, history_id=history_id, **kwargs)
    return changes.message_added(parse_message(msg))


def snapshot():
    threads = list(
        EmailThread.objects.order_by("external_thread_id").values(
            "external_thread_id",
            "subject",
            "snippet",
            "from_address",
            "last_message_date",
            "message_count",
            "history_id",
            "label_ids",
            "is_unread",
            "in_inbox",
            "is_deleted",
        )
    )
    messages = list(
        EmailMessage.objects.order_by("external_message_id").values(
            "external_message_id",
            "thread__external_thread_id",
            "subject",
            "label_ids",
            "sent_at",
            "is_deleted",
            "has_body",
            "body_text",
            "body_html",
            "cid_state",
        )
    )
    attachments = list(
        EmailAttachment.objects.order_by("content_id").values("content_id", "filename", "is_inline")
    )
    return threads, messages, attachments


class ReconcilerTests(TestCase):
    def setUp(self):
        self.reconciler = Reconciler()

    def test_creates_thread_and_message(self):
        result = self.reconciler.apply(SCOPE, [added("m-1", subject="Quote request")])
        self.assertEqual(result["created"], 1)
        self.assertEqual(result["threads_touched"], 1)
        thread = EmailThread.objects.get(scope_key=SCOPE, external_thread_id="t-1")
        self.assertEqual(thread.subject, "Quote request")
        self.assertEqual(thread.message_count, 1)
        self.assertEqual(thread.history_id, "2000")
        self.assertTrue(thread.in_inbox)
        self.assertTrue(thread.is_unread)
        message = EmailMessage.objects.get(external_message_id="m-1")
        self.assertTrue(message.has_body)
        self.assertEqual(message.body_text, "Plain body")
        self.assertEqual(message.from_address, "office@example.com")
        self.assertEqual(message.from_name, "Site Office")

    def test_applying_same_batch_twice_is_idempotent(self):
        batch = [
            added("m-1", sent_at=T0, inline_images=[("logo@x", "logo.png", "att-1")], html='<img src="cid:logo@x">'),
            added("m-2", sent_at=T0 + timedelta(hours=1), label_ids=("SENT",)),
            added("m-3", thread_id="t-2", sent_at=T0),
            changes.label_changed("m-3", "t-2", ["INBOX"]),
            changes.message_removed("m-2", "t-1"),
        ]
        self.reconciler.apply(SCOPE, batch)
        first = snapshot()
        second_result = self.reconciler.apply(SCOPE, batch)
        self.assertEqual(snapshot(), first)
        self.assertEqual(second_result["created"], 0)
        self.assertEqual(EmailMessage.objects.count(), 3)
        self.assertEqual(EmailAttachment.objects.count(), 1)

    def test_existing_message_is_updated_not_duplicated(self):
        self.reconciler.apply(SCOPE, [added("m-1", subject="First")])
        result = self.reconciler.apply(SCOPE, [added("m-1", subject="First")])
        self.assertEqual(result["unchanged"], 1)
        self.assertEqual(EmailMessage.objects.filter(external_message_id="m-1").count(), 1)

        result = self.reconciler.apply(SCOPE, [added("m-1", subject="Renamed", label_ids=("INBOX",))])
        self.assertEqual(result["updated"], 1)
        message = EmailMessage.objects.get(external_message_id="m-1")
        self.assertEqual(message.subject, "Renamed")
        self.assertEqual(message.label_ids, ["INBOX"])
        self.assertFalse(EmailThread.objects.get(external_thread_id="t-1").is_unread)

    def test_body_is_never_cleared_by_bodyless_update(self):
        self.reconciler.apply(SCOPE, [added("m-1", text="Original body")])
        self.reconciler.apply(SCOPE, [added("m-1", text=None, html=None)])
        message = EmailMessage.objects.get(external_message_id="m-1")
        self.assertTrue(message.has_body)
        self.assertEqual(message.body_text, "Original body")

    def test_body_is_filled_once_when_it_arrives(self):
        self.reconciler.apply(SCOPE, [added("m-1", text=None, html=None)])
        message = EmailMessage.objects.get(external_message_id="m-1")
        self.assertFalse(message.has_body)
        result = self.reconciler.apply(SCOPE, [added("m-1", html='<p>Hi</p><img src="cid:a@b">', text=None)])
        self.assertEqual(result["updated"], 1)
        message.refresh_from_db()
        self.assertTrue(message.has_body)
        self.assertEqual(message.body_text, "Hi")
        self.assertEqual(message.cid_state, CidState.PENDING)

    def test_thread_summary_only_moves_forward(self):
        self.reconciler.apply(SCOPE, [added("m-new", subject="Newer", sent_at=T0 + timedelta(days=1))])
        self.reconciler.apply(SCOPE, [added("m-old", subject="Older", sent_at=T0)])
        thread = EmailThread.objects.get(external_thread_id="t-1")
        self.assertEqual(thread.subject, "Newer")
        self.assertEqual(thread.last_message_date, T0 + timedelta(days=1))
        self.assertEqual(thread.message_count, 2)

    def test_removal_is_soft_and_recomputes_summary(self):
        self.reconciler.apply(
            SCOPE,
            [
                added("m-1", subject="Older", sent_at=T0),
                added("m-2", subject="Newer", sent_at=T0 + timedelta(hours=2)),
            ],
        )
        result = self.reconciler.apply(SCOPE, [changes.message_removed("m-2", "t-1")])
        self.assertEqual(result["removed"], 1)
        self.assertTrue(EmailMessage.objects.get(external_message_id="m-2").is_deleted)
        thread = EmailThread.objects.get(external_thread_id="t-1")
        self.assertEqual(thread.subject, "Older")
        self.assertEqual(thread.message_count, 1)
        self.assertFalse(thread.is_deleted)

        self.reconciler.apply(SCOPE, [changes.message_removed("m-1", "t-1")])
        thread.refresh_from_db()
        self.assertTrue(thread.is_deleted)
        self.assertEqual(thread.message_count, 0)
        self.assertIsNone(thread.last_message_date)

    def test_counts_are_written_to_audit_log(self):
        with self.assertLogs("mail.sync_audit", level="INFO") as logs:
            result = self.reconciler.apply(SCOPE, [added("m-1")])
        self.assertEqual(result["created"], 1)
        record = logs.records[-1]
        self.assertEqual(record.scope_key, SCOPE)
        self.assertEqual(record.counts["created"], 1)
        self.assertIn("created=1", record.getMessage())

        # Empty batches log too
        with self.assertLogs("mail.sync_audit", level="INFO"):
            self.reconciler.apply(SCOPE, [])

    def test_removing_unknown_message_is_a_no_op(self):
        result = self.reconciler.apply(SCOPE, [changes.message_removed("nope")])
        self.assertEqual(result["unchanged"], 1)
        self.assertFalse(EmailMessage.objects.exists())

    def test_readded_message_is_restored(self):
        self.reconciler.apply(SCOPE, [added("m-1")])
        self.reconciler.apply(SCOPE, [changes.message_removed("m-1", "t-1")])
        self.reconciler.apply(SCOPE, [added("m-1")])
        self.assertFalse(EmailMessage.objects.get(external_message_id="m-1").is_deleted)
        self.assertEqual(EmailThread.objects.get(external_thread_id="t-1").message_count, 1)

    def test_label_change_updates_message_and_thread_flags(self):
        self.reconciler.apply(SCOPE, [added("m-1", label_ids=("INBOX", "UNREAD"))])
        result = self.reconciler.apply(SCOPE, [changes.label_changed("m-1", "t-1", ["SENT"])])
        self.assertEqual(result["relabelled"], 1)
        message = EmailMessage.objects.get(external_message_id="m-1")
        self.assertEqual(message.label_ids, ["SENT"])
        self.assertTrue(message.is_outbound)
        thread = EmailThread.objects.get(external_thread_id="t-1")
        self.assertFalse(thread.in_inbox)
        self.assertFalse(thread.is_unread)

    def test_thread_history_never_moves_backwards(self):
        self.reconciler.apply(SCOPE, [added("m-1", history_id="3000")])
        self.reconciler.apply(SCOPE, [added("m-2", history_id="2500")])
        self.assertEqual(EmailThread.objects.get(external_thread_id="t-1").history_id, "3000")

    def test_attachments_upsert_by_content_id(self):
        images = [("logo@x", "logo.png", "att-1")]
        self.reconciler.apply(SCOPE, [added("m-1", html='<img src="cid:logo@x">', inline_images=images)])
        attachment = EmailAttachment.objects.get()
        EmailAttachment.objects.filter(pk=attachment.pk).update(file_url="/media/inline/logo.png")

        # Gmail hands out a new attachment id on every fetch
        images = [("logo@x", "logo.png", "att-2")]
        self.reconciler.apply(SCOPE, [added("m-1", html='<img src="cid:logo@x">', inline_images=images)])
        attachment.refresh_from_db()
        self.assertEqual(EmailAttachment.objects.count(), 1)
        self.assertEqual(attachment.provider_attachment_id, "att-2")
        self.assertEqual(attachment.file_url, "/media/inline/logo.png")

    def test_database_error_reports_applied_prefix(self):
        batch = [added("m-1"), changes.message_removed("m-1", "t-1"), added("m-2")]
        with mock.patch.object(Reconciler, "_apply_removed", side_effect=DatabaseError("disk full")):
            with self.assertRaises(ReconciliationError) as ctx:
                self.reconciler.apply(SCOPE, batch)
        self.assertEqual(ctx.exception.applied, 1)
        self.assertEqual(ctx.exception.kind, "reconciliation")
        self.assertTrue(EmailMessage.objects.filter(external_message_id="m-1").exists())
        self.assertFalse(EmailMessage.objects.filter(external_message_id="m-2").exists())
