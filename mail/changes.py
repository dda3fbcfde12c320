"""Change records passed from the delta/backfill engines to the reconciler."""
import time


class ChangeKind:
    MESSAGE_ADDED = "message_added"
    MESSAGE_REMOVED = "message_removed"
    LABEL_CHANGED = "label_changed"


def message_added(message: dict, thread_history_id=None) -> dict:
    """`message` is the output of mail.parsing.parse_message."""
    return {
        "kind": ChangeKind.MESSAGE_ADDED,
        "external_message_id": message["external_message_id"],
        "external_thread_id": message["external_thread_id"],
        "message": message,
        "thread_history_id": thread_history_id or message.get("history_id"),
    }


def message_removed(external_message_id: str, external_thread_id: str = "") -> dict:
    return {
        "kind": ChangeKind.MESSAGE_REMOVED,
        "external_message_id": external_message_id,
        "external_thread_id": external_thread_id or "",
    }


def label_changed(external_message_id: str, external_thread_id: str, label_ids) -> dict:
    return {
        "kind": ChangeKind.LABEL_CHANGED,
        "external_message_id": external_message_id,
        "external_thread_id": external_thread_id or "",
        "label_ids": list(label_ids or []),
    }


def run_deadline(budget_seconds) -> float:
    """Absolute monotonic deadline for a run, or None for no budget."""
    if budget_seconds is None:
        return None
    return time.monotonic() + float(budget_seconds)


def deadline_passed(deadline) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def history_id_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
