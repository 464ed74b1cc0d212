"""
SMS bodies and idempotency keys for queue notifications.

Bodies are plain text joined with newlines; every text names the configured
brand so a single deployment can be re-branded from settings.
"""
from typing import Optional
from uuid import UUID, uuid4

from waitline.lib.settings import settings
from waitline.models.outbox import MessageType
from waitline.models.queue_entries import CustomerType


DEFAULT_NAME = "there"


def _first_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    return cleaned or DEFAULT_NAME


def build_paying_confirmation(
    name: Optional[str],
    location_display_name: str,
    queue_position: Optional[int],
) -> str:
    """Confirmation for paying customers, with how many people are ahead."""
    people_ahead = max((queue_position or 1) - 1, 0)
    verb = "is" if people_ahead == 1 else "are"
    noun = "person" if people_ahead == 1 else "people"

    return "\n".join([
        f"Hi {_first_name(name)}! You've joined the queue at {settings.brand_name} at {location_display_name}.",
        "",
        f"There {verb} {people_ahead} {noun} ahead of you. We will text you when you are next.",
        "",
        "Change in plans? Text CANCEL to exit the queue. You may reply here to communicate with our staff.",
        "",
        "Wait times may vary.",
    ])


def build_priority_pass_confirmation(name: Optional[str], location_display_name: str) -> str:
    """Confirmation for priority pass members, with the membership reminder."""
    return "\n".join([
        f"Hi {_first_name(name)}! You've joined the queue at {settings.brand_name} at {location_display_name}.",
        "",
        "We'll text you when it's your turn to be served.",
        "",
        f"Please confirm that {settings.brand_name} is included in your membership benefits.",
        "",
        "Change in plans? Reply here to reach our staff, or text CANCEL to exit the queue.",
        "",
        "Wait times may vary.",
    ])


def build_confirmation(
    customer_type: CustomerType,
    name: Optional[str],
    location_display_name: str,
    queue_position: Optional[int],
) -> str:
    if customer_type == CustomerType.PRIORITY_PASS:
        return build_priority_pass_confirmation(name, location_display_name)
    return build_paying_confirmation(name, location_display_name, queue_position)


def build_next_notification(location_display_name: str) -> str:
    return (
        f"You're next at {settings.brand_name} at {location_display_name}! "
        "Please head back so we're ready for you. Text CANCEL if your plans changed."
    )


def build_serving_notification() -> str:
    return f"It's your turn! Please come back to {settings.brand_name} - we're all ready for you!"


def build_cancel_ack(name: Optional[str] = None) -> str:
    cleaned = (name or "").strip()
    suffix = f", {cleaned}" if cleaned else ""
    return f"You've removed yourself from {settings.brand_name} queue{suffix}. Thanks for letting us know."


# Idempotency keys

def idempotency_key(message_type: MessageType, entry_id: UUID) -> str:
    """
    Key for a once-per-entry notification, e.g. `confirm:<entry_id>`.

    Staff messages are deliberately distinct per send and use
    staff_message_key() instead.
    """
    if message_type == MessageType.STAFF:
        raise ValueError("Staff messages need a per-send key; use staff_message_key()")
    return f"{message_type.value}:{entry_id}"


def staff_message_key(entry_id: UUID) -> str:
    return f"{MessageType.STAFF.value}:{entry_id}:{uuid4()}"
