from django.contrib import admin

from .models import AuditEvent, EmailAttachment, EmailMessage, EmailThread, SyncState


@admin.register(SyncState)
class SyncStateAdmin(admin.ModelAdmin):
    list_display = (
        "scope_key",
        "cursor",
        "lock_owner",
        "lock_until",
        "consecutive_failures",
        "cooldown_until",
        "last_success_at",
    )
    # Lock and cooldown are changed through the audited clear/reset operations
    readonly_fields = (
        "lock_owner",
        "lock_until",
        "consecutive_failures",
        "last_failure_at",
        "last_success_at",
        "cooldown_until",
    )


@admin.register(EmailThread)
class EmailThreadAdmin(admin.ModelAdmin):
    list_display = ("subject", "external_thread_id", "scope_key", "message_count", "last_message_date", "job")
    search_fields = ("subject", "external_thread_id", "job_number_cached")
    list_filter = ("scope_key", "is_deleted", "in_inbox")


@admin.register(EmailMessage)
class EmailMessageAdmin(admin.ModelAdmin):
    list_display = ("subject", "from_address", "sent_at", "has_body", "cid_state", "is_deleted")
    search_fields = ("subject", "from_address", "external_message_id")
    list_filter = ("scope_key", "has_body", "cid_state", "is_deleted")


@admin.register(EmailAttachment)
class EmailAttachmentAdmin(admin.ModelAdmin):
    list_display = ("filename", "email_message", "is_inline", "content_id", "resolved_at")
    search_fields = ("filename", "content_id")


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ("event_type", "subject_type", "subject_id", "actor", "created_at")
    list_filter = ("event_type", "subject_type")
    search_fields = ("subject_id", "actor")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
