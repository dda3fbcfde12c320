import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("jobs", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="SyncState",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("scope_key", models.CharField(max_length=128, unique=True)),
                ("cursor", models.CharField(blank=True, max_length=64, null=True)),
                ("lock_owner", models.CharField(blank=True, max_length=255, null=True)),
                ("lock_until", models.DateTimeField(blank=True, null=True)),
                ("consecutive_failures", models.PositiveIntegerField(default=0)),
                ("last_failure_at", models.DateTimeField(blank=True, null=True)),
                ("last_success_at", models.DateTimeField(blank=True, null=True)),
                ("cooldown_until", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["scope_key"],
            },
        ),
        migrations.CreateModel(
            name="EmailThread",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("scope_key", models.CharField(max_length=128)),
                ("external_thread_id", models.CharField(max_length=255)),
                ("subject", models.CharField(blank=True, default="", max_length=512)),
                ("from_address", models.CharField(blank=True, default="", max_length=255)),
                ("snippet", models.TextField(blank=True, default="")),
                ("last_message_date", models.DateTimeField(blank=True, null=True)),
                ("message_count", models.PositiveIntegerField(default=0)),
                ("history_id", models.CharField(blank=True, max_length=64, null=True)),
                ("label_ids", models.JSONField(blank=True, default=list)),
                ("is_unread", models.BooleanField(default=False)),
                ("in_inbox", models.BooleanField(default=False)),
                ("is_deleted", models.BooleanField(default=False)),
                ("job_number_cached", models.CharField(blank=True, default="", max_length=32)),
                ("job_title_cached", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("job", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="email_threads", to="jobs.job")),
            ],
            options={
                "ordering": ["-last_message_date", "-updated_at"],
                "unique_together": {("scope_key", "external_thread_id")},
                "indexes": [
                    models.Index(fields=["scope_key", "external_thread_id"], name="mail_emailt_scope_k_3a1d0b_idx"),
                    models.Index(fields=["scope_key", "last_message_date"], name="mail_emailt_scope_k_7c2e14_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="EmailMessage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("scope_key", models.CharField(max_length=128)),
                ("external_message_id", models.CharField(max_length=255)),
                ("subject", models.CharField(blank=True, default="", max_length=512)),
                ("from_address", models.CharField(blank=True, default="", max_length=255)),
                ("from_name", models.CharField(blank=True, default="", max_length=255)),
                ("to_addresses", models.JSONField(blank=True, default=list)),
                ("cc_addresses", models.JSONField(blank=True, default=list)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("is_outbound", models.BooleanField(default=False)),
                ("label_ids", models.JSONField(blank=True, default=list)),
                ("snippet", models.TextField(blank=True, default="")),
                ("is_deleted", models.BooleanField(default=False)),
                ("has_body", models.BooleanField(default=False)),
                ("body_text", models.TextField(blank=True, null=True)),
                ("body_html", models.TextField(blank=True, null=True)),
                ("cid_state", models.CharField(choices=[("none", "No inline references"), ("pending", "Pending"), ("resolved", "Resolved"), ("failed", "Failed")], default="none", max_length=16)),
                ("cid_attempts", models.PositiveSmallIntegerField(default=0)),
                ("cid_last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("thread", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="messages", to="mail.emailthread")),
            ],
            options={
                "ordering": ["-sent_at", "-created_at"],
                "unique_together": {("scope_key", "external_message_id")},
                "indexes": [
                    models.Index(fields=["scope_key", "external_message_id"], name="mail_emailm_scope_k_1b9f4a_idx"),
                    models.Index(fields=["scope_key", "has_body"], name="mail_emailm_scope_k_5d7a20_idx"),
                    models.Index(fields=["scope_key", "cid_state"], name="mail_emailm_scope_k_8e3c61_idx"),
                    models.Index(fields=["thread", "sent_at"], name="mail_emailm_thread__2f6b95_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="EmailAttachment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider_attachment_id", models.CharField(blank=True, default="", max_length=1024)),
                ("filename", models.CharField(blank=True, default="", max_length=255)),
                ("content_type", models.CharField(blank=True, default="", max_length=128)),
                ("size_bytes", models.PositiveIntegerField(default=0)),
                ("is_inline", models.BooleanField(default=False)),
                ("content_id", models.CharField(blank=True, default="", max_length=255)),
                ("file_url", models.CharField(blank=True, default="", max_length=1024)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("email_message", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="attachments", to="mail.emailmessage")),
            ],
            options={
                "ordering": ["filename", "pk"],
                "indexes": [
                    models.Index(fields=["email_message"], name="mail_emaila_email_m_4c8d13_idx"),
                    models.Index(fields=["email_message", "content_id"], name="mail_emaila_email_m_9a0e72_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(choices=[("lock_acquired", "Lock acquired"), ("lock_released", "Lock released"), ("lock_force_cleared", "Lock force-cleared"), ("cooldown_reset", "Cooldown reset"), ("run_started", "Run started"), ("run_completed", "Run completed"), ("run_skipped", "Run skipped"), ("run_failed", "Run failed"), ("thread_linked", "Thread linked"), ("thread_unlinked", "Thread unlinked"), ("body_rehydrated", "Bodies rehydrated"), ("attachment_rehydrated", "Attachment rehydrated")], max_length=32)),
                ("subject_type", models.CharField(max_length=64)),
                ("subject_id", models.CharField(max_length=255)),
                ("actor", models.CharField(blank=True, default="", max_length=255)),
                ("detail", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at", "-pk"],
                "indexes": [
                    models.Index(fields=["subject_type", "subject_id", "created_at"], name="mail_audite_subject_6b4f08_idx"),
                    models.Index(fields=["event_type", "created_at"], name="mail_audite_event_t_0d5a39_idx"),
                ],
            },
        ),
    ]
