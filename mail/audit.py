import logging

from mail.models import AuditEvent

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def record_audit_event(
    event_type: str,
    subject_type: str,
    subject_id,
    actor: str = SYSTEM_ACTOR,
    detail: dict = None,
) -> AuditEvent:
    """Append one AuditEvent. Callers write it after the transition it describes."""
    event = AuditEvent.objects.create(
        event_type=event_type,
        subject_type=subject_type,
        subject_id=str(subject_id),
        actor=actor or SYSTEM_ACTOR,
        detail=detail or {},
    )
    logger.debug(
        "audit event %s %s:%s actor=%s", event_type, subject_type, subject_id, actor
    )
    return event
