from django.db import models


class SyncState(models.Model):
    """
    Persisted sync bookkeeping for one scope (the shared mailbox in practice).
    Lock fields are only ever written through conditional updates in
    mail.sync_status; never rely on in-process state for them.
    """
    scope_key = models.CharField(max_length=128, unique=True)
    cursor = models.CharField(max_length=64, blank=True, null=True)
    lock_owner = models.CharField(max_length=255, blank=True, null=True)
    lock_until = models.DateTimeField(blank=True, null=True)
    consecutive_failures = models.PositiveIntegerField(default=0)
    last_failure_at = models.DateTimeField(blank=True, null=True)
    last_success_at = models.DateTimeField(blank=True, null=True)
    cooldown_until = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ["scope_key"]

    def __str__(self):
        return f"SyncState {self.scope_key} cursor={self.cursor}"


class EmailThread(models.Model):
    scope_key = models.CharField(max_length=128)
    external_thread_id = models.CharField(max_length=255)
    subject = models.CharField(max_length=512, blank=True, default="")
    from_address = models.CharField(max_length=255, blank=True, default="")
    snippet = models.TextField(blank=True, default="")
    last_message_date = models.DateTimeField(blank=True, null=True)
    message_count = models.PositiveIntegerField(default=0)
    history_id = models.CharField(max_length=64, blank=True, null=True)
    label_ids = models.JSONField(default=list, blank=True)
    is_unread = models.BooleanField(default=False)
    in_inbox = models.BooleanField(default=False)
    is_deleted = models.BooleanField(default=False)
    job = models.ForeignKey(
        "jobs.Job",
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="email_threads",
    )
    job_number_cached = models.CharField(max_length=32, blank=True, default="")
    job_title_cached = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = (("scope_key", "external_thread_id"),)
        indexes = [
            models.Index(fields=["scope_key", "external_thread_id"], name="mail_emailt_scope_k_3a1d0b_idx"),
            models.Index(fields=["scope_key", "last_message_date"], name="mail_emailt_scope_k_7c2e14_idx"),
        ]
        ordering = ["-last_message_date", "-updated_at"]

    def __str__(self):
        return self.subject or self.external_thread_id


class CidState(models.TextChoices):
    NONE = "none", "No inline references"
    PENDING = "pending", "Pending"
    RESOLVED = "resolved", "Resolved"
    FAILED = "failed", "Failed"


class EmailMessage(models.Model):
    scope_key = models.CharField(max_length=128)
    thread = models.ForeignKey(
        EmailThread, on_delete=models.CASCADE, related_name="messages"
    )
    external_message_id = models.CharField(max_length=255)
    subject = models.CharField(max_length=512, blank=True, default="")
    from_address = models.CharField(max_length=255, blank=True, default="")
    from_name = models.CharField(max_length=255, blank=True, default="")
    to_addresses = models.JSONField(default=list, blank=True)
    cc_addresses = models.JSONField(default=list, blank=True)
    sent_at = models.DateTimeField(blank=True, null=True)
    is_outbound = models.BooleanField(default=False)
    label_ids = models.JSONField(default=list, blank=True)
    snippet = models.TextField(blank=True, default="")
    is_deleted = models.BooleanField(default=False)
    has_body = models.BooleanField(default=False)
    body_text = models.TextField(blank=True, null=True)
    body_html = models.TextField(blank=True, null=True)
    cid_state = models.CharField(
        max_length=16, choices=CidState.choices, default=CidState.NONE
    )
    cid_attempts = models.PositiveSmallIntegerField(default=0)
    cid_last_attempt_at = models.DateTimeField(blank=True, null=True)
    last_synced_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = (("scope_key", "external_message_id"),)
        indexes = [
            models.Index(fields=["scope_key", "external_message_id"], name="mail_emailm_scope_k_1b9f4a_idx"),
            models.Index(fields=["scope_key", "has_body"], name="mail_emailm_scope_k_5d7a20_idx"),
            models.Index(fields=["scope_key", "cid_state"], name="mail_emailm_scope_k_8e3c61_idx"),
            models.Index(fields=["thread", "sent_at"], name="mail_emailm_thread__2f6b95_idx"),
        ]
        ordering = ["-sent_at", "-created_at"]

    def __str__(self):
        return self.subject or self.external_message_id


class EmailAttachment(models.Model):
    email_message = models.ForeignKey(
        EmailMessage, on_delete=models.CASCADE, related_name="attachments"
    )
    provider_attachment_id = models.CharField(max_length=1024, blank=True, default="")
    filename = models.CharField(max_length=255, blank=True, default="")
    content_type = models.CharField(max_length=128, blank=True, default="")
    size_bytes = models.PositiveIntegerField(default=0)
    is_inline = models.BooleanField(default=False)
    content_id = models.CharField(max_length=255, blank=True, default="")
    file_url = models.CharField(max_length=1024, blank=True, default="")
    resolved_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["email_message"], name="mail_emaila_email_m_4c8d13_idx"),
            models.Index(fields=["email_message", "content_id"], name="mail_emaila_email_m_9a0e72_idx"),
        ]
        ordering = ["filename", "pk"]

    def __str__(self):
        return self.filename or f"Attachment {self.pk}"

    @property
    def is_resolved(self):
        return bool(self.file_url)


class AuditEvent(models.Model):
    """
    Append-only record of sync lifecycle transitions. Rows are written once at
    the end of each transition and never updated or deleted.
    """
    class EventType(models.TextChoices):
        LOCK_ACQUIRED = "lock_acquired", "Lock acquired"
        LOCK_RELEASED = "lock_released", "Lock released"
        LOCK_FORCE_CLEARED = "lock_force_cleared", "Lock force-cleared"
        COOLDOWN_RESET = "cooldown_reset", "Cooldown reset"
        RUN_STARTED = "run_started", "Run started"
        RUN_COMPLETED = "run_completed", "Run completed"
        RUN_SKIPPED = "run_skipped", "Run skipped"
        RUN_FAILED = "run_failed", "Run failed"
        THREAD_LINKED = "thread_linked", "Thread linked"
        THREAD_UNLINKED = "thread_unlinked", "Thread unlinked"
        BODY_REHYDRATED = "body_rehydrated", "Bodies rehydrated"
        ATTACHMENT_REHYDRATED = "attachment_rehydrated", "Attachment rehydrated"

    event_type = models.CharField(max_length=32, choices=EventType.choices)
    subject_type = models.CharField(max_length=64)
    subject_id = models.CharField(max_length=255)
    actor = models.CharField(max_length=255, blank=True, default="")
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-pk"]
        indexes = [
            models.Index(fields=["subject_type", "subject_id", "created_at"], name="mail_audite_subject_6b4f08_idx"),
            models.Index(fields=["event_type", "created_at"], name="mail_audite_event_t_0d5a39_idx"),
        ]

    def __str__(self):
        return f"{self.event_type} {self.subject_type}:{self.subject_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("AuditEvent rows are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("AuditEvent rows are immutable")
