import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "mailsync_hub.settings")

app = Celery("mailsync_hub")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

_sync_interval = int(os.environ.get("MAIL_SYNC_INTERVAL_MINUTES", "2"))

# Periodic tasks - mailbox sync plus the two repair passes
app.conf.beat_schedule = {
    "sync-shared-mailbox": {
        "task": "mail.tasks.sync_mailbox",
        "schedule": crontab(minute=f"*/{_sync_interval}"),
    },
    "rehydrate-missing-bodies": {
        "task": "mail.tasks.rehydrate_missing_bodies",
        "schedule": crontab(minute="*/10"),
    },
    "resolve-inline-cids": {
        "task": "mail.tasks.resolve_inline_cids",
        "schedule": crontab(minute="*/15"),
    },
}
