"""CRUD helpers for potlucks, items, participants, and claims."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .identifiers import (
    fallback_event_code,
    fallback_token,
    format_event_code,
    generate_event_code,
    generate_secure_token,
    normalize_event_code,
)
from .models import Claim, Event, Item, Participant
from .notifications import send_participant_message
from .utils import clean_optional, normalize_email, to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

EVENT_FIELDS = {"name", "date", "theme", "location", "description", "admin_name"}


class AuthorizationError(Exception):
    """Raised when a supplied token does not match the event."""


class ItemFullError(Exception):
    """Raised when a claim would exceed an item's required quantity."""

    def __init__(self, item: Item, available: int):
        super().__init__(f"Only {available} of {item.name} still needed")
        self.item = item
        self.available = available


def _now() -> datetime:
    return utcnow()


def _new_event_code() -> str:
    return generate_event_code() or fallback_event_code()


def _new_token() -> str:
    return generate_secure_token() or fallback_token()


def _require_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValueError("Quantity must be at least 1")
    return quantity


def _require_text(value: str | None, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError(f"{label} is required")
    return cleaned


def get_event_by_code(session: Session, raw_code: str | None) -> Event | None:
    """Resolve a user-supplied event code to an event.

    Tries the canonical ``XXXX-XXXX`` form first, then a case-insensitive
    match, then a match that ignores hyphens entirely.
    """
    stripped = (raw_code or "").strip()
    normalized = normalize_event_code(stripped)
    if not normalized:
        return None
    formatted = format_event_code(stripped)

    event = session.scalars(select(Event).where(Event.event_code == formatted)).first()
    if event:
        return event

    stmt = select(Event).where(func.upper(Event.event_code) == formatted.upper())
    event = session.scalars(stmt).first()
    if event:
        logger.debug("Resolved %r case-insensitively to %s", raw_code, event.event_code)
        return event

    stmt = select(Event).where(
        func.replace(func.upper(Event.event_code), "-", "") == normalized
    )
    event = session.scalars(stmt).first()
    if event:
        logger.debug("Resolved %r ignoring hyphens to %s", raw_code, event.event_code)
    return event


def get_event_for_admin(
    session: Session, event_code: str, admin_token: str | None
) -> Event | None:
    event = get_event_by_code(session, event_code)
    if not event:
        return None
    if not admin_token or not secrets.compare_digest(admin_token, event.admin_token):
        raise AuthorizationError("Invalid admin token")
    return event


def get_participant_by_token(
    session: Session, event: Event, token: str | None
) -> Participant | None:
    if not token:
        return None
    stmt = select(Participant).where(
        Participant.event_id == event.id, Participant.token == token
    )
    return session.scalars(stmt).first()


def get_participant_by_email(
    session: Session, event: Event, email: str
) -> Participant | None:
    stmt = select(Participant).where(
        Participant.event_id == event.id, Participant.email == normalize_email(email)
    )
    return session.scalars(stmt).first()


def get_item(session: Session, event: Event, item_id: str) -> Item | None:
    item = session.get(Item, item_id)
    if not item or item.event_id != event.id:
        return None
    return item


def create_event(
    session: Session,
    *,
    name: str,
    date: datetime,
    admin_email: str,
    admin_name: str | None = None,
    theme: str | None = None,
    location: str | None = None,
    description: str | None = None,
    notifications_enabled: bool = True,
    items: Iterable[tuple[str, int]] = (),
) -> Event:
    """Create a potluck and its needed items."""
    if date is None:
        raise ValueError("Date is required")
    event = Event(
        event_code=_new_event_code(),
        admin_token=_new_token(),
        name=_require_text(name, "Name"),
        date=to_naive_utc(date),
        theme=clean_optional(theme),
        location=clean_optional(location),
        description=clean_optional(description),
        admin_email=_require_text(normalize_email(admin_email), "Admin email"),
        admin_name=clean_optional(admin_name),
        notifications_enabled=bool(notifications_enabled),
    )
    for item_name, quantity in items:
        event.items.append(
            Item(
                name=_require_text(item_name, "Item name"),
                quantity=_require_quantity(quantity),
            )
        )
    session.add(event)
    session.flush()
    return event


def update_event(session: Session, event: Event, **fields) -> Event:
    """Update descriptive fields on an event."""
    unknown = set(fields) - EVENT_FIELDS
    if unknown:
        raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")
    if "name" in fields:
        event.name = _require_text(fields["name"], "Name")
    if "date" in fields:
        if fields["date"] is None:
            raise ValueError("Date is required")
        event.date = to_naive_utc(fields["date"])
    for key in ("theme", "location", "description", "admin_name"):
        if key in fields:
            setattr(event, key, clean_optional(fields[key]))
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def update_notification_setting(session: Session, event: Event, enabled: bool) -> Event:
    event.notifications_enabled = bool(enabled)
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def delete_event(session: Session, event: Event) -> None:
    """Delete an event; items, participants, and claims go with it."""
    session.delete(event)
    session.flush()


def add_item(session: Session, event: Event, *, name: str, quantity: int) -> Item:
    item = Item(
        event=event,
        name=_require_text(name, "Item name"),
        quantity=_require_quantity(quantity),
    )
    session.add(item)
    session.flush()
    return item


def update_item(
    session: Session,
    event: Event,
    item_id: str,
    *,
    name: str | None = None,
    quantity: int | None = None,
) -> Item | None:
    """Rename an item or change its required quantity.

    The quantity may not drop below what participants already claimed.
    """
    item = get_item(session, event, item_id)
    if not item:
        return None
    if name is not None:
        item.name = _require_text(name, "Item name")
    if quantity is not None:
        _require_quantity(quantity)
        if quantity < item.claimed_quantity:
            raise ValueError(
                f"{item.claimed_quantity} already claimed; quantity cannot be lower"
            )
        item.quantity = quantity
    item.updated_at = _now()
    session.add(item)
    session.flush()
    return item


def remove_item(session: Session, event: Event, item_id: str) -> bool:
    item = get_item(session, event, item_id)
    if not item:
        return False
    participants = {claim.participant for claim in item.claims}
    session.delete(item)
    session.flush()
    session.expire(event, ["items"])
    for participant in participants:
        session.expire(participant, ["claims"])
    return True


def _claimed_by_others(session: Session, item: Item, participant: Participant | None) -> int:
    stmt = select(func.coalesce(func.sum(Claim.quantity), 0)).where(
        Claim.item_id == item.id
    )
    if participant is not None:
        stmt = stmt.where(Claim.participant_id != participant.id)
    return int(session.scalar(stmt) or 0)


def sign_up_for_item(
    session: Session,
    *,
    event_code: str,
    item_id: str,
    email: str,
    name: str | None = None,
    quantity: int,
) -> Claim | None:
    """Create or update a participant's claim on an item.

    Returns ``None`` when the event or item cannot be found. Signing up again
    for the same item replaces the earlier quantity.
    """
    _require_quantity(quantity)
    normalized_email = _require_text(normalize_email(email), "Email")
    event = get_event_by_code(session, event_code)
    if not event:
        return None
    stmt = (
        select(Item)
        .where(Item.id == item_id, Item.event_id == event.id)
        .with_for_update()
    )
    item = session.scalars(stmt).first()
    if not item:
        return None

    participant = get_participant_by_email(session, event, normalized_email)
    available = item.quantity - _claimed_by_others(session, item, participant)
    if quantity > available:
        raise ItemFullError(item, max(available, 0))

    if participant is None:
        participant = Participant(
            event=event,
            email=normalized_email,
            name=clean_optional(name),
            token=_new_token(),
        )
        session.add(participant)
        session.flush()
        logger.info("New participant %s joined %s", participant.id, event.event_code)
    elif clean_optional(name):
        participant.name = clean_optional(name)
        participant.updated_at = _now()

    stmt = select(Claim).where(
        Claim.participant_id == participant.id, Claim.item_id == item.id
    )
    claim = session.scalars(stmt).first()
    if claim:
        claim.quantity = quantity
        claim.updated_at = _now()
    else:
        claim = Claim(participant=participant, item=item, quantity=quantity)
    session.add(claim)
    session.flush()
    return claim


def remove_claim(session: Session, participant: Participant, claim_id: str) -> bool:
    claim = session.get(Claim, claim_id)
    if not claim or claim.participant_id != participant.id:
        return False
    item = claim.item
    session.delete(claim)
    session.flush()
    session.expire(participant, ["claims"])
    session.expire(item, ["claims"])
    return True


def message_participant(
    session: Session, event: Event, participant_id: str, message: str
) -> Participant | None:
    content = _require_text(message, "Message")
    participant = session.get(Participant, participant_id)
    if not participant or participant.event_id != event.id:
        return None
    send_participant_message(event, participant, content)
    return participant
