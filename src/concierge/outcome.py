"""
Call data model: transcript turns and the structured business outcome.

A StructuredOutcome is the canonical order/reservation result of one call,
whether it came from an agent tool call or from transcript mining.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

OUTCOME_SCHEMA_VERSION = 1


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class OutcomeSource(str, Enum):
    MODEL_TOOL = "model_tool"
    TRANSCRIPT_FALLBACK = "transcript_fallback"


class ReservationStatus(str, Enum):
    CONFIRMED = "confirmed"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class TranscriptTurn:
    role: Role
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class Customer:
    name: Optional[str] = None
    has_verified_name: bool = False
    phone: Optional[str] = None


@dataclass
class Intents:
    order: bool = False
    reservation: bool = False


@dataclass
class OrderLine:
    name: Optional[str] = None
    menu_item_id: Optional[str] = None
    qty: int = 1
    line_total_cents: int = 0
    modifiers: list[Any] = field(default_factory=list)


@dataclass
class OrderOutcome:
    pickup_time: str = ""
    total_cents: int = 0
    items: list[OrderLine] = field(default_factory=list)
    notes: Optional[str] = None


@dataclass
class ReservationOutcome:
    party_size: int = 2
    date: str = "today"
    time: str = "ASAP"
    occasion: str = "Not specified"
    status: ReservationStatus = ReservationStatus.CONFIRMED
    notes: Optional[str] = None

    @property
    def reservation_time(self) -> str:
        """Free-text slot as stored in `reservations.reservation_time`."""
        if not self.date:
            return self.time
        return f"{self.date} {self.time}"


@dataclass
class StructuredOutcome:
    source: OutcomeSource
    customer: Customer = field(default_factory=Customer)
    intents: Intents = field(default_factory=Intents)
    order: OrderOutcome = field(default_factory=OrderOutcome)
    reservation: ReservationOutcome = field(default_factory=ReservationOutcome)
    schema_version: int = OUTCOME_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["reservation"]["status"] = self.reservation.status.value
        return data
