from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

import pytest

from app.models.domain.audience_domain import AllAudience, AudienceParseError, RolesAudience
from app.models.domain.trigger_domain import (
    Cadence,
    Channel,
    LocalMoment,
    RuleKind,
    ScheduleMode,
    TriggerRule,
    normalize_time,
)


def _row(**overrides) -> dict:
    row = {
        "id": 7,
        "title": "Expiry",
        "kind": "subscription_expiring",
        "schedule_mode": "date_range",
        "send_time": "09:00:00",
        "message": "Hi {parent_name}",
        "timezone": None,
        "audience": None,
        "offset_days": 3,
        "start_date": "2025-01-01",
        "end_date": None,
        "send_days": None,
        "specific_date": None,
        "channels": None,
        "enabled": True,
        "last_fired_at": None,
        "last_fired_count": None,
        "created_by": None,
        "announcement_type": None,
    }
    row.update(overrides)
    return row


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("9:5", "09:05"), ("09:05:00", "09:05"), (time(7, 30), "07:30"), ("", None), (None, None)],
)
def test_normalize_time(raw, expected):
    assert normalize_time(raw) == expected


def test_from_row_defaults():
    rule = TriggerRule.from_row(_row(), default_timezone="Asia/Riyadh")

    assert rule.id == "7"
    assert rule.kind is RuleKind.SUBSCRIPTION_EXPIRING
    assert rule.schedule_mode is ScheduleMode.DATE_RANGE
    assert rule.send_time == "09:00"
    assert rule.timezone == "Asia/Riyadh"
    assert rule.audience == AllAudience()
    assert rule.channels == frozenset({Channel.SMS})
    assert rule.cadence is Cadence.COARSE
    assert rule.window.start_date == date(2025, 1, 1)
    assert rule.window.end_date is None
    assert rule.last_fired_count == 0
    assert rule.announcement_type == "general"


def test_from_row_custom_announcement_defaults_to_realtime():
    rule = TriggerRule.from_row(_row(kind="custom_announcement"), default_timezone="Asia/Riyadh")

    assert rule.channels == frozenset({Channel.REALTIME})
    assert rule.cadence is Cadence.FINE


def test_from_row_parses_json_columns():
    rule = TriggerRule.from_row(
        _row(
            schedule_mode="specific_weekdays",
            audience='{"type": "roles", "roles": ["parent"]}',
            send_days='["Monday", "thursday"]',
            channels=["sms", "realtime"],
        ),
        default_timezone="Asia/Riyadh",
    )

    assert rule.audience == RolesAudience(frozenset({"parent"}))
    assert rule.window.days == ["monday", "thursday"]
    assert rule.channels == frozenset({Channel.SMS, Channel.REALTIME})
    assert rule.cadence is Cadence.FINE


@pytest.mark.parametrize(
    ("stored", "expected"),
    [
        ('["sms"]', frozenset({Channel.SMS})),
        ('["sms", "realtime"]', frozenset({Channel.SMS, Channel.REALTIME})),
        ("{sms,realtime}", frozenset({Channel.SMS, Channel.REALTIME})),
        ("realtime", frozenset({Channel.REALTIME})),
        ("", frozenset({Channel.SMS})),
    ],
)
def test_from_row_decodes_text_channels(stored, expected):
    rule = TriggerRule.from_row(_row(channels=stored), default_timezone="Asia/Riyadh")

    assert rule.channels == expected


def test_from_row_decodes_postgres_array_days():
    rule = TriggerRule.from_row(
        _row(schedule_mode="specific_weekdays", send_days="{Sunday,tuesday}"), default_timezone="Asia/Riyadh"
    )

    assert rule.window.days == ["sunday", "tuesday"]


def test_from_row_rejects_bad_audience():
    with pytest.raises(AudienceParseError):
        TriggerRule.from_row(_row(audience={"type": "nobody"}), default_timezone="Asia/Riyadh")


def test_from_row_rejects_unknown_kind():
    with pytest.raises(ValueError):
        TriggerRule.from_row(_row(kind="birthday"), default_timezone="Asia/Riyadh")


def test_local_moment_converts_to_rule_timezone():
    moment = LocalMoment.from_datetime(datetime(2025, 1, 5, 21, 30, tzinfo=UTC), ZoneInfo("Asia/Riyadh"))

    assert moment.today == date(2025, 1, 6)
    assert moment.hour_minute == "00:30"
    assert moment.weekday == "monday"


def test_local_moment_treats_naive_datetimes_as_utc():
    moment = LocalMoment.from_datetime(datetime(2025, 1, 6, 6, 0), ZoneInfo("Asia/Riyadh"))
    assert moment.hour_minute == "09:00"
