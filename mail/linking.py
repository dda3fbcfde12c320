import logging

from django.db import transaction

from mail.audit import record_audit_event
from mail.models import AuditEvent, EmailThread

logger = logging.getLogger(__name__)


@transaction.atomic
def link_thread_to_job(thread: EmailThread, job, actor: str = "") -> EmailThread:
    """Attach a thread to a Job and cache the Job's display fields on the thread."""
    previous_job_id = thread.job_id
    thread.job = job
    thread.job_number_cached = job.job_number or ""
    thread.job_title_cached = job.title or ""
    thread.save(update_fields=["job", "job_number_cached", "job_title_cached", "updated_at"])
    record_audit_event(
        AuditEvent.EventType.THREAD_LINKED,
        "email_thread",
        thread.pk,
        actor=actor,
        detail={
            "job_id": job.pk,
            "job_number": job.job_number,
            "previous_job_id": previous_job_id,
        },
    )
    logger.info("thread %s linked to job %s by %s", thread.pk, job.job_number, actor or "system")
    return thread


@transaction.atomic
def unlink_thread(thread: EmailThread, actor: str = "") -> EmailThread:
    previous_job_id = thread.job_id
    if previous_job_id is None:
        return thread
    thread.job = None
    thread.job_number_cached = ""
    thread.job_title_cached = ""
    thread.save(update_fields=["job", "job_number_cached", "job_title_cached", "updated_at"])
    record_audit_event(
        AuditEvent.EventType.THREAD_UNLINKED,
        "email_thread",
        thread.pk,
        actor=actor,
        detail={"previous_job_id": previous_job_id},
    )
    return thread


def refresh_cached_job_fields(job) -> int:
    """Push a Job's current number and title to every linked thread."""
    return EmailThread.objects.filter(job=job).update(
        job_number_cached=job.job_number or "",
        job_title_cached=job.title or "",
    )
