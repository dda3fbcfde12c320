from datetime import datetime, timedelta, timezone as utc_tz

from django.test import TestCase, override_settings

from mail.changes import message_added
from mail.exceptions import RemoteAuthError, RemoteTransientError
from mail.models import AuditEvent, CidState, EmailMessage, EmailThread
from mail.parsing import parse_message
from mail.reconciler import Reconciler
from mail.rehydrate import BodyRehydrator
from mail.tests.fakes import FakeMailboxClient, build_message

SCOPE = "test_scope"
T0 = datetime(2024, 5, 1, 9, 0, tzinfo=utc_tz.utc)


@override_settings(MAIL_REHYDRATE_DELAY_SECONDS=0, MAIL_REHYDRATE_BATCH_SIZE=50)
class BodyRehydratorTests(TestCase):
    def setUp(self):
        self.client = FakeMailboxClient()

    def shell(self, message_id, sent_at, thread_id="t-1", **body):
        """Store a message without a body locally; the fake mailbox holds the full one."""
        Reconciler().apply(
            SCOPE,
            [message_added(parse_message(build_message(message_id, thread_id, text=None, html=None, sent_at=sent_at)))],
        )
        body.setdefault("text", f"Full body of {message_id}")
        self.client.messages[message_id] = build_message(message_id, thread_id, sent_at=sent_at, **body)
        return EmailMessage.objects.get(external_message_id=message_id)

    def test_newest_message_body_and_thread_snippet(self):
        self.shell("m-old", T0)
        self.shell("m-new", T0 + timedelta(hours=1))
        result = BodyRehydrator(self.client).run(SCOPE)

        self.assertEqual(result["processed"], 2)
        self.assertEqual(result["success"], 2)
        self.assertEqual(result["threads_updated"], 1)
        for message in EmailMessage.objects.all():
            self.assertTrue(message.has_body)
            self.assertTrue(message.body_text)
        thread = EmailThread.objects.get(external_thread_id="t-1")
        self.assertEqual(thread.snippet, "Full body of m-new")

    def test_older_message_does_not_touch_thread_snippet(self):
        self.shell("m-old", T0)
        newest = self.shell("m-new", T0 + timedelta(hours=1), text="Newest body")
        EmailMessage.objects.filter(pk=newest.pk).update(has_body=True, body_text="Newest body")
        EmailThread.objects.filter(external_thread_id="t-1").update(snippet="Newest body")

        result = BodyRehydrator(self.client).run(SCOPE)
        self.assertEqual(result["processed"], 1)
        self.assertEqual(result["threads_updated"], 0)
        self.assertEqual(EmailThread.objects.get(external_thread_id="t-1").snippet, "Newest body")
        self.assertTrue(EmailMessage.objects.get(external_message_id="m-old").has_body)

    def test_body_written_meanwhile_is_not_replaced(self):
        message = self.shell("m-1", T0)
        rehydrator = BodyRehydrator(self.client)
        selected = rehydrator.select_messages(SCOPE)
        EmailMessage.objects.filter(pk=message.pk).update(has_body=True, body_text="From sync")
        self.assertFalse(rehydrator._rehydrate_one(selected[0]))
        self.assertEqual(EmailMessage.objects.get(pk=message.pk).body_text, "From sync")

    def test_html_body_with_inline_reference_marks_cid_pending(self):
        self.shell("m-1", T0, html='<p>See logo</p><img src="cid:logo@x">', text=None)
        BodyRehydrator(self.client).run(SCOPE)
        message = EmailMessage.objects.get(external_message_id="m-1")
        self.assertEqual(message.body_text, "See logo")
        self.assertEqual(message.cid_state, CidState.PENDING)

    def test_failures_are_counted_and_skipped(self):
        self.shell("m-1", T0)
        self.shell("m-2", T0 + timedelta(hours=1))
        self.client.fail("get_message", RemoteTransientError("Backend Error", status=503))
        result = BodyRehydrator(self.client).run(SCOPE)
        self.assertEqual(result["failed"], 1)
        self.assertEqual(result["success"], 1)
        self.assertEqual(result["failures"][0]["external_message_id"], "m-2")

    def test_auth_error_stops_batch(self):
        self.shell("m-1", T0)
        self.shell("m-2", T0 + timedelta(hours=1))
        self.client.fail("get_message", RemoteAuthError("Invalid grant", status=401))
        result = BodyRehydrator(self.client).run(SCOPE)
        self.assertEqual(result["processed"], 1)
        self.assertEqual(result["failed"], 1)
        self.assertEqual(EmailMessage.objects.filter(has_body=False).count(), 2)

    def test_batch_writes_one_audit_event(self):
        self.shell("m-1", T0)
        self.shell("m-2", T0 + timedelta(hours=1))
        BodyRehydrator(self.client).run(SCOPE)
        event = AuditEvent.objects.get(event_type=AuditEvent.EventType.BODY_REHYDRATED)
        self.assertEqual(event.subject_id, SCOPE)
        self.assertEqual(event.detail["success"], 2)

    def test_nothing_to_do_writes_no_audit(self):
        result = BodyRehydrator(self.client).run(SCOPE)
        self.assertEqual(result["processed"], 0)
        self.assertFalse(AuditEvent.objects.exists())

    def test_thread_filter_and_deleted_messages(self):
        self.shell("m-1", T0, thread_id="t-1")
        other = self.shell("m-2", T0, thread_id="t-2")
        self.shell("m-3", T0, thread_id="t-1")
        EmailMessage.objects.filter(external_message_id="m-3").update(is_deleted=True)
        selected = BodyRehydrator(self.client).select_messages(SCOPE, thread_id=other.thread_id)
        self.assertEqual([m.external_message_id for m in selected], ["m-2"])
        all_selected = BodyRehydrator(self.client).select_messages(SCOPE)
        self.assertNotIn("m-3", [m.external_message_id for m in all_selected])
