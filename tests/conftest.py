import asyncio
from datetime import UTC, date, datetime

import pytest

from app.models.domain.audience_domain import AllAudience
from app.models.domain.delivery_domain import BatchResult, DeliveryAttempt
from app.models.domain.snapshot_domain import DomainSnapshot, PlayerRecord, UserRecord
from app.models.domain.trigger_domain import WEEKDAYS, Channel, RuleKind, ScheduleMode, TriggerRule
from app.services.realtime.broadcast_hub import BroadcastHub
from app.services.sms.providers import SmsProvider

# Monday 2025-01-06 09:00 in Asia/Riyadh (UTC+3)
MONDAY_0900_RIYADH = datetime(2025, 1, 6, 6, 0, tzinfo=UTC)


class FakeProvider(SmsProvider):
    """Records every call; raises `error` from send() when set."""

    def __init__(self, name: str = "fake", supports_bulk: bool = False, error: Exception | None = None):
        self.name = name
        self.supports_bulk = supports_bulk
        self.error = error
        self.sent: list[tuple[str, str]] = []
        self.bulk_calls: list[tuple[list[str], str]] = []

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        self.sent.append((to, message))
        if self.error is not None:
            raise self.error
        return DeliveryAttempt(to=to, body=message, provider=self.name, success=True, cost=0.09)

    async def send_bulk(self, phones: list[str], message: str) -> BatchResult:
        self.bulk_calls.append((list(phones), message))
        result = BatchResult()
        result.record_success(cost=0.09 * len(phones), count=len(phones))
        return result


class FakeConnection:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.frames: list[dict] = []

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(data)


class StalledConnection:
    """A client whose socket never drains; send_json blocks until cancelled."""

    def __init__(self):
        self.attempts = 0

    async def send_json(self, data):
        self.attempts += 1
        await asyncio.Event().wait()


class FakeRuleRepository:
    """In-memory stand-in for TriggerRuleRepository that applies run-state writes to the rules."""

    def __init__(self, rules: list[TriggerRule] | None = None):
        self.rules = {rule.id: rule for rule in rules or []}
        self.checked: list[tuple[str, datetime]] = []
        self.fires: list[tuple[str, datetime, int]] = []
        self.announcements: list[dict] = []
        self.sms_logs: list[dict] = []
        self.load_error: Exception | None = None

    async def list_enabled(self, default_timezone: str) -> list[TriggerRule]:
        if self.load_error is not None:
            raise self.load_error
        return [rule for rule in self.rules.values() if rule.enabled]

    async def mark_checked(self, rule_id: str, checked_at: datetime) -> None:
        self.checked.append((rule_id, checked_at))
        self.rules[rule_id].last_fired_at = checked_at

    async def record_fire(self, rule_id: str, fired_at: datetime, recipient_count: int) -> None:
        self.fires.append((rule_id, fired_at, recipient_count))
        rule = self.rules[rule_id]
        rule.last_fired_at = fired_at
        rule.last_fired_count += recipient_count

    async def create_announcement(self, **kwargs) -> dict:
        announcement = {
            "id": f"ann-{len(self.announcements) + 1}",
            "title": kwargs["title"],
            "content": kwargs["content"],
            "type": kwargs["announcement_type"],
            "author_id": kwargs["author_id"],
            "target_audience": kwargs["audience"].to_json(),
            "target_branch_id": kwargs.get("target_branch_id"),
        }
        self.announcements.append(announcement)
        return announcement

    async def log_sms(self, **kwargs) -> None:
        self.sms_logs.append(kwargs)


class FakeSnapshotRepository:
    def __init__(self, snapshot: DomainSnapshot, expiring=None, overdue=None, sessions_by_weekday=None):
        self.snapshot = snapshot
        self.expiring = expiring or []
        self.overdue = overdue or []
        self.sessions_by_weekday = sessions_by_weekday or {}
        self.queries: list[tuple[str, date]] = []

    async def load_audience_snapshot(self) -> DomainSnapshot:
        return self.snapshot

    async def subscriptions_expiring_on(self, target_date: date):
        self.queries.append(("expiring", target_date))
        return [s for s in self.expiring if s.end_date == target_date]

    async def overdue_subscriptions(self, cutoff: date):
        self.queries.append(("overdue", cutoff))
        return [s for s in self.overdue if s.end_date <= cutoff]

    async def sessions_on(self, session_date: date):
        self.queries.append(("sessions", session_date))
        return self.sessions_by_weekday.get(WEEKDAYS[session_date.weekday()], [])


@pytest.fixture
def snapshot() -> DomainSnapshot:
    """Two branches; branch-1 has three parents, one of whom is user-9."""
    users = [
        UserRecord(id="p-1", role="parent", branch_id="branch-1", phone="0501111111", first_name="Amal"),
        UserRecord(id="p-2", role="parent", branch_id=None, phone="0502222222", first_name="Badr"),
        UserRecord(id="user-9", role="parent", branch_id="branch-1", phone="0509999999", first_name="Huda"),
        UserRecord(id="p-3", role="parent", branch_id="branch-2", phone="0503333333", first_name="Omar"),
        UserRecord(id="c-1", role="coach", branch_id="branch-1", phone="0504444444", first_name="Coach"),
        UserRecord(id="a-1", role="accountant", branch_id="branch-1", phone="0505555555", first_name="Acc"),
        UserRecord(id="sp-1", role="player", branch_id="branch-1", phone="0506666666", first_name="Self"),
        UserRecord(id="old", role="parent", branch_id="branch-1", phone="0507777777", is_active=False),
    ]
    players = [
        # p-2 belongs to branch-1 through this child
        PlayerRecord(id="pl-1", branch_id="branch-1", parent_id="p-2", emergency_contact_phone="0508888888"),
        PlayerRecord(id="pl-2", branch_id="branch-1", parent_id="p-1", self_user_id="sp-1"),
        PlayerRecord(id="pl-3", branch_id="branch-2", parent_id="p-3", emergency_contact_phone="0503333333"),
        PlayerRecord(id="pl-4", branch_id="branch-1", parent_id="p-1", status="inactive",
                     emergency_contact_phone="0500000001"),
    ]
    return DomainSnapshot(users=users, players=players)


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub()


@pytest.fixture
def make_rule():
    def _make(**overrides) -> TriggerRule:
        values = {
            "id": "rule-1",
            "title": "Reminder",
            "kind": RuleKind.SESSION_REMINDER,
            "schedule_mode": ScheduleMode.SPECIFIC_WEEKDAYS,
            "send_time": "09:00",
            "message_template": "Hello {parent_name}",
            "timezone": "Asia/Riyadh",
            "audience": AllAudience(),
            "channels": frozenset({Channel.SMS}),
        }
        values.update(overrides)
        rule = TriggerRule(**values)
        if "window" not in overrides and rule.schedule_mode is ScheduleMode.SPECIFIC_WEEKDAYS:
            rule.window.days = ["monday"]
        return rule

    return _make
