"""Development helpers for populating fake potlucks."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import ItemFullError, create_event, sign_up_for_item
from .database import get_session
from .models import Event
from .storage import init_db
from .utils import utcnow

_themes = [
    "BBQ",
    "Taco Night",
    "Holiday",
    "Picnic",
    "Brunch",
    "Game Day",
    None,
]
_dishes = [
    "Pasta Salad",
    "Hamburger Buns",
    "Potato Chips",
    "Watermelon",
    "Veggie Tray",
    "Brownies",
    "Lemonade",
    "Paper Plates",
    "Guacamole",
    "Fruit Salad",
    "Cornbread",
    "Ice",
]


def seed_fake_data(
    *,
    potluck_count: int = 3,
    max_items_per_potluck: int = 5,
    max_signups_per_potluck: int = 6,
) -> dict[str, int]:
    """Populate the database with synthetic potlucks, items, and signups."""
    if potluck_count < 0:
        raise ValueError("potluck_count must be >= 0")
    if max_items_per_potluck < 1:
        raise ValueError("max_items_per_potluck must be >= 1")
    if max_signups_per_potluck < 0:
        raise ValueError("max_signups_per_potluck must be >= 0")

    init_db()
    fake = Faker()
    stats = {"potlucks": 0, "items": 0, "signups": 0}

    with get_session() as session:
        for _ in range(potluck_count):
            event = _create_potluck(session, fake, max_items=max_items_per_potluck)
            stats["potlucks"] += 1
            stats["items"] += len(event.items)
            stats["signups"] += _create_signups(
                session, fake, event, max_signups_per_potluck
            )

    return stats


def _create_potluck(session: Session, fake: Faker, *, max_items: int) -> Event:
    theme = random.choice(_themes)
    name = f"{fake.city()} {theme or 'Neighborhood'} Potluck"
    dishes = random.sample(_dishes, k=min(random.randint(1, max_items), len(_dishes)))
    return create_event(
        session,
        name=name,
        date=_random_date(),
        theme=theme,
        location=fake.address().replace("\n", ", "),
        description=fake.sentence(nb_words=12),
        admin_email=fake.email(),
        admin_name=fake.name(),
        notifications_enabled=random.random() < 0.7,
        items=[(dish, random.randint(1, 4)) for dish in dishes],
    )


def _random_date() -> datetime:
    day_offset = random.randint(1, 45)
    hour = random.choice([11, 12, 17, 18, 19])
    return (utcnow() + timedelta(days=day_offset)).replace(
        hour=hour, minute=0, second=0, microsecond=0
    )


def _create_signups(session: Session, fake: Faker, event: Event, max_signups: int) -> int:
    if max_signups <= 0:
        return 0
    created = 0
    emails = [fake.unique.email() for _ in range(random.randint(1, max_signups))]
    for email in emails:
        open_items = [item for item in event.items if item.available_quantity > 0]
        if not open_items:
            break
        item = random.choice(open_items)
        try:
            sign_up_for_item(
                session,
                event_code=event.event_code,
                item_id=item.id,
                email=email,
                name=fake.first_name(),
                quantity=random.randint(1, item.available_quantity),
            )
        except ItemFullError:
            continue
        created += 1
    return created
