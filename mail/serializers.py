from rest_framework import serializers

from jobs.models import Job

from .models import AuditEvent, EmailAttachment, EmailMessage, EmailThread, SyncState
from .sync_status import get_last_sync_error, get_sync_in_progress, get_sync_phase


class SyncStateSerializer(serializers.ModelSerializer):
    phase = serializers.SerializerMethodField()
    in_progress = serializers.SerializerMethodField()
    last_error = serializers.SerializerMethodField()

    class Meta:
        model = SyncState
        fields = [
            "scope_key",
            "cursor",
            "lock_owner",
            "lock_until",
            "consecutive_failures",
            "last_failure_at",
            "last_success_at",
            "cooldown_until",
            "phase",
            "in_progress",
            "last_error",
        ]
        read_only_fields = fields

    def get_phase(self, obj):
        return get_sync_phase(obj)

    def get_in_progress(self, obj):
        return get_sync_in_progress(obj.scope_key)

    def get_last_error(self, obj):
        return get_last_sync_error(obj.scope_key)


class SyncTriggerSerializer(serializers.Serializer):
    scope_key = serializers.CharField(required=False, max_length=128, trim_whitespace=True)

    def validate_scope_key(self, value):
        raw = self.initial_data.get("scope_key")
        if not isinstance(raw, str):
            raise serializers.ValidationError("scope_key must be a string.")
        if "/" in value:
            raise serializers.ValidationError("scope_key may not contain '/'.")
        return value


class EmailThreadSerializer(serializers.ModelSerializer):
    class Meta:
        model = EmailThread
        fields = [
            "id",
            "scope_key",
            "external_thread_id",
            "subject",
            "from_address",
            "snippet",
            "last_message_date",
            "message_count",
            "label_ids",
            "is_unread",
            "in_inbox",
            "is_deleted",
            "job",
            "job_number_cached",
            "job_title_cached",
            "created_at",
            "updated_at",
        ]


class EmailAttachmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = EmailAttachment
        fields = [
            "id",
            "filename",
            "content_type",
            "size_bytes",
            "is_inline",
            "content_id",
            "file_url",
            "resolved_at",
        ]


class EmailMessageSerializer(serializers.ModelSerializer):
    attachments = EmailAttachmentSerializer(many=True, read_only=True)

    class Meta:
        model = EmailMessage
        fields = [
            "id",
            "scope_key",
            "thread",
            "external_message_id",
            "subject",
            "from_address",
            "from_name",
            "to_addresses",
            "cc_addresses",
            "sent_at",
            "is_outbound",
            "label_ids",
            "snippet",
            "is_deleted",
            "has_body",
            "body_text",
            "body_html",
            "cid_state",
            "last_synced_at",
            "created_at",
            "attachments",
        ]


class AuditEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = AuditEvent
        fields = ["id", "event_type", "subject_type", "subject_id", "actor", "detail", "created_at"]


class LinkJobSerializer(serializers.Serializer):
    job = serializers.PrimaryKeyRelatedField(queryset=Job.objects.all(), allow_null=True)
