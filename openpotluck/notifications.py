"""Outgoing email stubs.

Nothing is delivered; each message is rendered and written to the log so an
operator can see what would have been sent.
"""

from __future__ import annotations

import logging

from .config import settings
from .models import Claim, Event, Item, Participant

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _deliver(*, to: str, subject: str, body: str) -> dict[str, str]:
    logger.info("Email to %s: %s", to, subject)
    logger.debug("Email body for %s:\n%s", to, body)
    return {"to": to, "subject": subject, "body": body}


def participant_link(event: Event) -> str:
    return f"{settings.public_base_url.rstrip('/')}/potluck/{event.event_code}"


def admin_link(event: Event) -> str:
    base = settings.public_base_url.rstrip("/")
    return f"{base}/admin/{event.event_code}?token={event.admin_token}"


def send_admin_link(event: Event) -> dict[str, str]:
    greeting = f"Hi {event.admin_name}," if event.admin_name else "Hi,"
    body = "\n".join(
        [
            greeting,
            "",
            f"Your potluck \"{event.name}\" is ready.",
            f"Share this link with your guests: {participant_link(event)}",
            f"Manage the potluck here (keep it private): {admin_link(event)}",
        ]
    )
    return _deliver(
        to=event.admin_email, subject=f"Your potluck: {event.name}", body=body
    )


def notify_signup(
    event: Event, participant: Participant, item: Item, claim: Claim
) -> dict[str, str] | None:
    """Tell the organizer about a signup when they asked to be notified."""
    if not event.notifications_enabled:
        return None
    who = participant.name or participant.email
    body = (
        f"{who} will bring {claim.quantity} x {item.name}. "
        f"{item.claimed_quantity} of {item.quantity} now claimed."
    )
    return _deliver(
        to=event.admin_email, subject=f"New signup for {event.name}", body=body
    )


def send_participant_message(
    event: Event, participant: Participant, message: str
) -> dict[str, str]:
    sender = event.admin_name or "The organizer"
    body = "\n".join([message, "", f"- {sender}, {event.name}"])
    return _deliver(
        to=participant.email, subject=f"Message about {event.name}", body=body
    )
