"""SQLAlchemy models for OpenPotluck."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_code = Column(String(20), nullable=False, unique=True)
    admin_token = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    date = Column(DateTime, nullable=False)
    theme = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    admin_email = Column(String(255), nullable=False)
    admin_name = Column(String(255), nullable=True)
    notifications_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    items = relationship(
        "Item",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Item.created_at",
    )
    participants = relationship(
        "Participant",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Participant.created_at",
    )


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_items_quantity"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="items")
    claims = relationship(
        "Claim",
        back_populates="item",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Claim.created_at",
    )

    @property
    def claimed_quantity(self) -> int:
        """Return the number of units participants have committed to."""
        return sum(claim.quantity for claim in self.claims)

    @property
    def available_quantity(self) -> int:
        return max(self.quantity - self.claimed_quantity, 0)


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("event_id", "email", name="uq_participants_event_email"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    token = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="participants")
    claims = relationship(
        "Claim",
        back_populates="participant",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Claim.created_at",
    )


class Claim(Base):
    __tablename__ = "claims"
    __table_args__ = (
        UniqueConstraint("participant_id", "item_id", name="uq_claims_participant_item"),
        CheckConstraint("quantity >= 1", name="ck_claims_quantity"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    participant_id = Column(
        String(36), ForeignKey("participants.id", ondelete="CASCADE"), nullable=False
    )
    item_id = Column(
        String(36), ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    participant = relationship("Participant", back_populates="claims")
    item = relationship("Item", back_populates="claims")
