"""
Tests for the Job <-> EmailThread linkage: cached job fields on threads follow
the Job when it is edited.
"""
from django.test import TestCase

from jobs.models import Job
from mail.linking import link_thread_to_job, unlink_thread
from mail.models import AuditEvent, EmailThread


class JobThreadLinkTests(TestCase):
    def setUp(self):
        self.job = Job.objects.create(job_number="J-100", title="Kitchen refit")
        self.thread = EmailThread.objects.create(
            scope_key="gmail_sync",
            external_thread_id="thread-1",
            subject="Quote",
        )

    def test_link_caches_job_fields(self):
        link_thread_to_job(self.thread, self.job, actor="office")
        self.thread.refresh_from_db()
        self.assertEqual(self.thread.job, self.job)
        self.assertEqual(self.thread.job_number_cached, "J-100")
        self.assertEqual(self.thread.job_title_cached, "Kitchen refit")
        event = AuditEvent.objects.get(event_type=AuditEvent.EventType.THREAD_LINKED)
        self.assertEqual(event.subject_id, str(self.thread.pk))
        self.assertEqual(event.detail["job_number"], "J-100")

    def test_job_edit_refreshes_linked_threads(self):
        link_thread_to_job(self.thread, self.job)
        self.job.title = "Kitchen and laundry refit"
        self.job.save()
        self.thread.refresh_from_db()
        self.assertEqual(self.thread.job_title_cached, "Kitchen and laundry refit")

    def test_unlink_clears_cache(self):
        link_thread_to_job(self.thread, self.job)
        unlink_thread(self.thread, actor="office")
        self.thread.refresh_from_db()
        self.assertIsNone(self.thread.job)
        self.assertEqual(self.thread.job_number_cached, "")
        self.assertTrue(
            AuditEvent.objects.filter(event_type=AuditEvent.EventType.THREAD_UNLINKED).exists()
        )

    def test_deleting_job_keeps_thread(self):
        link_thread_to_job(self.thread, self.job)
        self.job.delete()
        self.thread.refresh_from_db()
        self.assertIsNone(self.thread.job)
