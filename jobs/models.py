from django.db import models


class JobStatus(models.TextChoices):
    DRAFT = "draft"
    QUOTED = "quoted"
    WON = "won"
    LOST = "lost"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Job(models.Model):
    job_number = models.CharField(max_length=32, unique=True)
    title = models.CharField(max_length=255)
    status = models.CharField(
        max_length=64, choices=JobStatus.choices, default=JobStatus.DRAFT
    )
    customer_name = models.CharField(max_length=255, blank=True, default="")
    site_address = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["status"], name="jobs_job_status_5f1c2e_idx")]
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.job_number} {self.title}"
