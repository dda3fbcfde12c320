import logging

from celery import shared_task

from mail.sync_status import default_scope_key

logger = logging.getLogger(__name__)


def _gmail_client():
    from mail.gmail_client import GmailMailboxClient

    return GmailMailboxClient()


@shared_task
def sync_mailbox(scope_key: str = None, actor: str = "scheduler"):
    """Run one orchestrated sync pass. Always returns the run summary."""
    from mail.orchestrator import MailboxSyncOrchestrator

    scope_key = scope_key or default_scope_key()
    logger.info("sync_mailbox starting scope=%s actor=%s", scope_key, actor)
    summary = MailboxSyncOrchestrator().run(scope_key=scope_key, actor=actor)
    logger.info(
        "sync_mailbox finished scope=%s outcome=%s changes=%s",
        scope_key,
        summary.get("outcome"),
        summary.get("changesApplied"),
    )
    return summary


@shared_task
def rehydrate_missing_bodies(scope_key: str = None, limit: int = None):
    """Fill bodies for messages synced without one. Runs without the sync lock."""
    from mail.rehydrate import BodyRehydrator

    scope_key = scope_key or default_scope_key()
    try:
        return BodyRehydrator(_gmail_client()).run(scope_key, limit=limit)
    except Exception as e:
        logger.exception("rehydrate_missing_bodies failed scope=%s", scope_key)
        return {"error": str(e)}


@shared_task
def resolve_inline_cids(scope_key: str = None, limit: int = None):
    from mail.inline_cids import InlineCidResolver

    scope_key = scope_key or default_scope_key()
    try:
        return InlineCidResolver(_gmail_client()).run(scope_key, limit=limit)
    except Exception as e:
        logger.exception("resolve_inline_cids failed scope=%s", scope_key)
        return {"error": str(e)}
