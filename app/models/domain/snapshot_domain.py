"""
Domain snapshot records.

Read-only views of academy data (users, players, subscriptions, sessions)
that the audience resolver and the trigger scheduler consume. The engine
never writes these back.
"""

from dataclasses import dataclass, field
from datetime import date


@dataclass(frozen=True, slots=True)
class UserRecord:
    id: str
    role: str
    branch_id: str | None = None
    phone: str | None = None
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True, slots=True)
class PlayerRecord:
    id: str
    branch_id: str | None = None
    parent_id: str | None = None
    self_user_id: str | None = None  # set when the player has a login
    emergency_contact_phone: str | None = None
    first_name: str = ""
    last_name: str = ""
    status: str = "active"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(slots=True)
class DomainSnapshot:
    """Users and players as of one evaluation pass."""

    users: list[UserRecord] = field(default_factory=list)
    players: list[PlayerRecord] = field(default_factory=list)

    def active_users(self) -> list[UserRecord]:
        return [u for u in self.users if u.is_active]

    def active_players(self) -> list[PlayerRecord]:
        return [p for p in self.players if p.is_active]


@dataclass(frozen=True, slots=True)
class ContactRecord:
    """Parent (or other guardian) reachable for a player."""

    id: str
    name: str
    phone: str | None


@dataclass(frozen=True, slots=True)
class SubscriptionRecord:
    id: str
    player_name: str
    program_name: str
    end_date: date
    parent: ContactRecord | None = None
    amount: float = 0.0
    branch_id: str | None = None


@dataclass(frozen=True, slots=True)
class SessionRecord:
    player_name: str
    program_name: str
    start_time: str | None = None
    parent: ContactRecord | None = None
    branch_id: str | None = None


@dataclass(frozen=True, slots=True)
class Recipient:
    """A concrete delivery target produced by audience resolution."""

    address: str  # phone number (sms) or user id (realtime)
    name: str = ""
    role: str | None = None
    user_id: str | None = None
    player_id: str | None = None
