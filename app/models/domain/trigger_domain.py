"""
Trigger Rule Domain Models
Admin-managed rules the scheduler evaluates to decide when an automated
message fires, plus the timezone helpers the evaluation relies on.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from app.models.domain.audience_domain import AllAudience, AudienceDescriptor, parse_audience

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class RuleKind(str, Enum):
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    PAYMENT_OVERDUE = "payment_overdue"
    SESSION_REMINDER = "session_reminder"
    CUSTOM_ANNOUNCEMENT = "custom_announcement"

    @property
    def is_condition_bearing(self) -> bool:
        """Kinds that only fire when matching domain records exist."""
        return self in (RuleKind.SUBSCRIPTION_EXPIRING, RuleKind.PAYMENT_OVERDUE)


class ScheduleMode(str, Enum):
    DATE_RANGE = "date_range"
    SPECIFIC_WEEKDAYS = "specific_weekdays"
    SPECIFIC_DATE = "specific_date"


class Channel(str, Enum):
    SMS = "sms"
    REALTIME = "realtime"


class Cadence(str, Enum):
    COARSE = "coarse"  # once a day
    FINE = "fine"  # once a minute


@dataclass(frozen=True, slots=True)
class LocalMoment:
    """A point in time seen from a rule's timezone."""

    today: date
    hour_minute: str  # "HH:MM"
    weekday: str  # lowercase english day name

    @classmethod
    def from_datetime(cls, moment: datetime, tz: ZoneInfo) -> "LocalMoment":
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        local = moment.astimezone(tz)
        return cls(
            today=local.date(),
            hour_minute=local.strftime("%H:%M"),
            weekday=WEEKDAYS[local.weekday()],
        )


@dataclass(slots=True)
class WindowBounds:
    """Activity window; which fields matter depends on the schedule mode."""

    start_date: date | None = None
    end_date: date | None = None
    days: list[str] = field(default_factory=list)
    specific_date: date | None = None


def normalize_time(value: Any) -> str | None:
    """Normalize "9:5", "09:05:00" or a time object to "HH:MM"."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value.strftime("%H:%M")
    parts = str(value).strip().split(":")
    hours = parts[0] if parts and parts[0] else "00"
    minutes = parts[1] if len(parts) > 1 and parts[1] else "00"
    return f"{hours.zfill(2)}:{minutes.zfill(2)}"


def _to_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _default_channels(kind: RuleKind) -> frozenset[Channel]:
    if kind is RuleKind.CUSTOM_ANNOUNCEMENT:
        return frozenset({Channel.REALTIME})
    return frozenset({Channel.SMS})


def _parse_text_list(raw: str) -> list[str]:
    """List columns stored as text: a JSON array, a Postgres array literal, or comma separated."""
    text = raw.strip()
    if text.startswith("["):
        return json.loads(text)
    text = text.strip("{}")
    return [part.strip().strip('"') for part in text.split(",") if part.strip()]


@dataclass(slots=True)
class TriggerRule:
    """Domain model for an automated notification rule."""

    id: str
    title: str
    kind: RuleKind
    schedule_mode: ScheduleMode
    send_time: str
    message_template: str
    timezone: str
    audience: AudienceDescriptor = field(default_factory=AllAudience)
    offset_days: int = 0
    window: WindowBounds = field(default_factory=WindowBounds)
    channels: frozenset[Channel] = frozenset({Channel.SMS})
    enabled: bool = True
    last_fired_at: datetime | None = None
    last_fired_count: int = 0
    created_by: str | None = None
    announcement_type: str = "general"

    @property
    def cadence(self) -> Cadence:
        """Announcement-style rules need minute precision; SMS rules run daily."""
        if Channel.REALTIME in self.channels:
            return Cadence.FINE
        return Cadence.COARSE

    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def local_moment(self, moment: datetime) -> LocalMoment:
        return LocalMoment.from_datetime(moment, self.zone())

    def fired_on(self, day: date) -> bool:
        """True when lastFiredAt falls on `day` in the rule's timezone."""
        if self.last_fired_at is None:
            return False
        return self.local_moment(self.last_fired_at).today == day

    def in_window(self, local: LocalMoment) -> bool:
        """Schedule-mode check for the given local day."""
        if self.schedule_mode is ScheduleMode.SPECIFIC_WEEKDAYS:
            days = {d.strip().lower() for d in self.window.days if d}
            return local.weekday in days

        if self.schedule_mode is ScheduleMode.DATE_RANGE:
            if self.window.start_date and self.window.start_date > local.today:
                return False
            if self.window.end_date and self.window.end_date < local.today:
                return False
            return True

        if self.schedule_mode is ScheduleMode.SPECIFIC_DATE:
            return self.window.specific_date is not None and self.window.specific_date == local.today

        return False

    @classmethod
    def from_row(cls, row: dict, default_timezone: str) -> "TriggerRule":
        """
        Build a rule from a trigger_rules row.

        The audience column is parsed here, once, into a descriptor.
        """
        kind = RuleKind(row["kind"])

        audience_raw = row.get("audience")
        if isinstance(audience_raw, str) and audience_raw.strip().startswith("{"):
            audience_raw = json.loads(audience_raw)

        days_raw = row.get("send_days") or []
        if isinstance(days_raw, str):
            days_raw = _parse_text_list(days_raw)

        channels_raw = row.get("channels")
        if isinstance(channels_raw, str):
            channels_raw = _parse_text_list(channels_raw)
        if channels_raw:
            channels = frozenset(Channel(c) for c in channels_raw)
        else:
            channels = _default_channels(kind)

        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            kind=kind,
            schedule_mode=ScheduleMode(row.get("schedule_mode") or ScheduleMode.DATE_RANGE.value),
            send_time=normalize_time(row.get("send_time")) or "09:00",
            message_template=row.get("message") or "",
            timezone=row.get("timezone") or default_timezone,
            audience=parse_audience(audience_raw),
            offset_days=int(row.get("offset_days") or 0),
            window=WindowBounds(
                start_date=_to_date(row.get("start_date")),
                end_date=_to_date(row.get("end_date")),
                days=[str(d).lower() for d in days_raw],
                specific_date=_to_date(row.get("specific_date")),
            ),
            channels=channels,
            enabled=bool(row.get("enabled", True)),
            last_fired_at=row.get("last_fired_at"),
            last_fired_count=int(row.get("last_fired_count") or 0),
            created_by=str(row["created_by"]) if row.get("created_by") else None,
            announcement_type=row.get("announcement_type") or "general",
        )
