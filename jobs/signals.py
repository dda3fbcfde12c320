import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from jobs.models import Job

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Job)
def refresh_linked_thread_fields(sender, instance: Job, created: bool, **kwargs):
    """Keep the cached job fields on linked email threads in step with the job."""
    if created:
        return
    from mail.linking import refresh_cached_job_fields

    try:
        refresh_cached_job_fields(instance)
    except Exception:
        logger.exception("Failed to refresh cached job fields on threads for job %s", instance.pk)
