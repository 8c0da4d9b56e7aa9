"""
Tests for the SMS delivery channel and provider adapters.
"""

import importlib
import json
import types
from datetime import datetime, timedelta, timezone

import httpx
import pytest

import app.services.sms as sms_package
from app.config import Settings
from app.models.domain.delivery_domain import DeliveryAttempt, OutboundMessage
from app.services.sms.delivery_channel import PACING_DELAY_SECONDS, DeliveryChannel
from app.services.sms.errors import (
    SmsConfigurationError,
    SmsDeliveryError,
    SmsRejectedError,
    SmsTransientError,
)
from app.services.sms.providers import PlivoProvider, TaqnyatProvider, build_provider
from tests.conftest import FakeProvider


class SelectiveProvider(FakeProvider):
    """Rejects only the listed numbers."""

    def __init__(self, rejected: set[str], **kwargs):
        super().__init__(**kwargs)
        self.rejected = rejected

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        self.sent.append((to, message))
        if to in self.rejected:
            raise SmsRejectedError("invalid number", provider=self.name, status_code=400)
        return DeliveryAttempt(to=to, body=message, provider=self.name, success=True, cost=0.09)


# ---------------------------------------------------------------------------
# send()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_uses_primary_when_it_succeeds():
    primary = FakeProvider(name="primary")
    fallback = FakeProvider(name="fallback-id")
    channel = DeliveryChannel(primary, fallback)

    attempt = await channel.send("0501111111", "hi")

    assert attempt.success is True
    assert attempt.provider == "primary"
    assert attempt.fallback is False
    assert primary.sent == [("+966501111111", "hi")]
    assert fallback.sent == []


@pytest.mark.asyncio
async def test_send_falls_back_exactly_once_on_network_error():
    primary = FakeProvider(name="primary", error=SmsTransientError("connection reset"))
    fallback = FakeProvider(name="fallback-id")
    channel = DeliveryChannel(primary, fallback)

    attempt = await channel.send("+966501111111", "hi")

    assert attempt.success is True
    assert attempt.provider == "fallback-id"
    assert attempt.fallback is True
    assert attempt.primary_error == "connection reset"
    assert len(primary.sent) == 1
    assert len(fallback.sent) == 1


@pytest.mark.asyncio
async def test_configuration_error_never_triggers_fallback():
    primary = FakeProvider(name="primary", error=SmsConfigurationError("no token"))
    fallback = FakeProvider(name="fallback-id")
    channel = DeliveryChannel(primary, fallback)

    with pytest.raises(SmsConfigurationError):
        await channel.send("0501111111", "hi")

    assert fallback.sent == []


@pytest.mark.asyncio
async def test_both_providers_failing_reports_both_errors():
    primary = FakeProvider(name="primary", error=SmsTransientError("primary down"))
    fallback = FakeProvider(name="backup", error=SmsTransientError("backup down"))
    channel = DeliveryChannel(primary, fallback)

    with pytest.raises(SmsDeliveryError) as exc_info:
        await channel.send("0501111111", "hi")

    message = str(exc_info.value)
    assert "primary down" in message
    assert "backup down" in message
    assert exc_info.value.primary_error is not None
    assert exc_info.value.fallback_error is not None


@pytest.mark.asyncio
async def test_primary_failure_without_fallback_raises_delivery_error():
    channel = DeliveryChannel(FakeProvider(name="primary", error=SmsTransientError("down")))

    with pytest.raises(SmsDeliveryError):
        await channel.send("0501111111", "hi")


def test_fallback_with_same_name_as_primary_is_ignored():
    channel = DeliveryChannel(FakeProvider(name="taqnyat"), FakeProvider(name="taqnyat"))
    assert channel.fallback is None
    assert channel.provider_info()["fallback_provider"] == "none"


# ---------------------------------------------------------------------------
# send_bulk()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_identical_bodies_on_bulk_provider_use_one_call():
    primary = FakeProvider(name="taqnyat", supports_bulk=True)
    channel = DeliveryChannel(primary)
    messages = [OutboundMessage(phone, "Training cancelled") for phone in ("0501", "0502", "0503")]

    result = await channel.send_bulk(messages)

    assert len(primary.bulk_calls) == 1
    phones, body = primary.bulk_calls[0]
    assert phones == ["+966501", "+966502", "+966503"]
    assert body == "Training cancelled"
    assert primary.sent == []
    assert result.successful == 3


@pytest.mark.asyncio
async def test_distinct_bodies_are_sent_sequentially():
    primary = FakeProvider(name="taqnyat", supports_bulk=True)
    channel = DeliveryChannel(primary)
    messages = [OutboundMessage("0501", "a"), OutboundMessage("0502", "b")]

    result = await channel.send_bulk(messages)

    assert primary.bulk_calls == []
    assert len(primary.sent) == 2
    assert result.successful == 2


@pytest.mark.asyncio
async def test_single_message_goes_through_send_path():
    primary = FakeProvider(name="taqnyat", supports_bulk=True)
    channel = DeliveryChannel(primary)

    await channel.send_bulk([OutboundMessage("0501", "only one")])

    assert primary.bulk_calls == []
    assert len(primary.sent) == 1


@pytest.mark.asyncio
async def test_non_bulk_provider_sends_identical_bodies_one_by_one():
    primary = FakeProvider(name="plivo", supports_bulk=False)
    channel = DeliveryChannel(primary)

    result = await channel.send_bulk([OutboundMessage(p, "same") for p in ("0501", "0502", "0503")])

    assert len(primary.sent) == 3
    assert result.successful == 3


@pytest.mark.asyncio
async def test_rejected_recipient_does_not_abort_batch():
    primary = SelectiveProvider(rejected={"+966502"}, name="primary")
    channel = DeliveryChannel(primary)

    result = await channel.send_bulk(
        [OutboundMessage("0501", "a"), OutboundMessage("0502", "b"), OutboundMessage("0503", "c")]
    )

    assert result.successful == 2
    assert result.failed == 1
    assert result.errors[0]["phone"] == "0502"


@pytest.mark.asyncio
async def test_configuration_error_aborts_sequential_batch():
    primary = FakeProvider(name="primary", error=SmsConfigurationError("no token"))
    channel = DeliveryChannel(primary)

    with pytest.raises(SmsConfigurationError):
        await channel.send_bulk([OutboundMessage("0501", "a"), OutboundMessage("0502", "b")])

    assert len(primary.sent) == 1


def test_package_attribute_is_the_delivery_channel_module():
    module = importlib.import_module("app.services.sms.delivery_channel")

    assert isinstance(sms_package.delivery_channel, types.ModuleType)
    assert sms_package.delivery_channel is module
    assert sms_package.DeliveryChannel is DeliveryChannel


@pytest.mark.asyncio
async def test_pacing_only_above_threshold(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr("app.services.sms.delivery_channel.asyncio.sleep", fake_sleep)
    channel = DeliveryChannel(FakeProvider(name="primary"))

    await channel.send_bulk([OutboundMessage(f"050{i}", f"m{i}") for i in range(10)])
    assert delays == []

    await channel.send_bulk([OutboundMessage(f"050{i}", f"m{i}") for i in range(11)])
    assert delays == [PACING_DELAY_SECONDS] * 11


def test_cost_and_validation_helpers():
    channel = DeliveryChannel(TaqnyatProvider(bearer_token="t", sender="Academy"))

    assert channel.calculate_cost("hello", recipient_count=2).total_cost == pytest.approx(0.18)
    assert channel.validate_phone("0501234567") is True
    assert channel.validate_phone("12345") is False


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------


def _taqnyat(handler) -> TaqnyatProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TaqnyatProvider(bearer_token="token", sender="Academy", client=client)


@pytest.mark.asyncio
async def test_taqnyat_bulk_chunks_at_1000_recipients():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        return httpx.Response(
            200, json={"statusCode": 201, "messageId": 1, "cost": 0.5, "totalCount": len(body["recipients"])}
        )

    provider = _taqnyat(handler)
    phones = [f"+9665{i:08d}" for i in range(2500)]

    result = await provider.send_bulk(phones, "hello")

    assert len(requests) == 3
    assert [len(r["recipients"]) for r in requests] == [1000, 1000, 500]
    assert requests[0]["recipients"][0] == "966500000000"
    assert result.successful == 2500
    assert result.total_cost == pytest.approx(1.5)


@pytest.mark.asyncio
async def test_taqnyat_failed_chunk_is_recorded_not_raised():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503, json={"message": "busy"})
        body = json.loads(request.content)
        return httpx.Response(200, json={"statusCode": 201, "totalCount": len(body["recipients"])})

    provider = _taqnyat(handler)
    result = await provider.send_bulk([f"+9665{i:08d}" for i in range(1500)], "hello")

    assert result.failed == 1000
    assert result.successful == 500
    assert len(result.errors[0]["phones"]) == 3
    assert len(result.retryable) == 1000
    assert result.retryable[0] == "966500000000"


@pytest.mark.asyncio
async def test_taqnyat_body_status_other_than_201_is_rejection():
    provider = _taqnyat(lambda request: httpx.Response(200, json={"statusCode": 400, "message": "bad sender"}))

    with pytest.raises(SmsRejectedError, match="bad sender"):
        await provider.send("+966501234567", "hi")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [(401, SmsConfigurationError), (503, SmsTransientError), (422, SmsRejectedError)],
)
async def test_taqnyat_http_errors_are_classified(status_code, error_type):
    provider = _taqnyat(lambda request: httpx.Response(status_code, json={"message": "nope"}))

    with pytest.raises(error_type):
        await provider.send("+966501234567", "hi")


@pytest.mark.asyncio
async def test_taqnyat_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(SmsTransientError):
        await _taqnyat(handler).send("+966501234567", "hi")


@pytest.mark.asyncio
async def test_taqnyat_without_token_is_configuration_error():
    provider = TaqnyatProvider(bearer_token=None, sender="Academy")

    assert provider.is_configured() is False
    with pytest.raises(SmsConfigurationError):
        await provider.send("+966501234567", "hi")


@pytest.mark.asyncio
async def test_plivo_sends_e164_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"message_uuid": ["uuid-1"]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = PlivoProvider(auth_id="AID", auth_token="secret", sender_id="Academy", client=client)

    attempt = await provider.send("966501234567", "hi")

    assert seen["url"].endswith("/Account/AID/Message/")
    assert seen["auth"].startswith("Basic ")
    assert seen["body"] == {"src": "Academy", "dst": "+966501234567", "text": "hi"}
    assert attempt.message_id == "uuid-1"
    assert attempt.provider == "plivo"


def test_build_provider_unknown_name_uses_mock():
    provider = build_provider("carrier-pigeon", Settings())
    assert provider.name == "mock"


def test_channel_from_settings_drops_fallback_equal_to_primary():
    config = Settings(SMS_PROVIDER="taqnyat", SMS_FALLBACK_PROVIDER="taqnyat", TAQNYAT_BEARER_TOKEN="t")
    channel = DeliveryChannel.from_settings(config)

    assert channel.primary.name == "taqnyat"
    assert channel.fallback is None


def test_channel_from_settings_builds_distinct_fallback():
    config = Settings(SMS_PROVIDER="taqnyat", SMS_FALLBACK_PROVIDER="plivo")
    channel = DeliveryChannel.from_settings(config)

    assert channel.fallback.name == "plivo"
    assert channel.provider_info()["fallback_configured"] is False


@pytest.mark.asyncio
async def test_bulk_transient_chunk_is_retried_through_fallback():
    primary = _taqnyat(lambda request: httpx.Response(503, json={"message": "busy"}))
    fallback = FakeProvider(name="plivo")
    channel = DeliveryChannel(primary, fallback, pacing_delay=0)

    result = await channel.send_bulk([OutboundMessage(p, "same") for p in ("0501111111", "0502222222")])

    assert [to for to, _ in fallback.sent] == ["966501111111", "966502222222"]
    assert result.successful == 2
    assert result.failed == 0
    assert result.fallback == 2
    assert result.retryable == []
    assert result.to_dict()["fallback"] == 2


@pytest.mark.asyncio
async def test_bulk_rejected_chunk_is_not_retried():
    primary = _taqnyat(lambda request: httpx.Response(422, json={"message": "bad sender"}))
    fallback = FakeProvider(name="plivo")
    channel = DeliveryChannel(primary, fallback, pacing_delay=0)

    result = await channel.send_bulk([OutboundMessage(p, "same") for p in ("0501111111", "0502222222")])

    assert fallback.sent == []
    assert result.failed == 2


@pytest.mark.asyncio
async def test_bulk_fallback_failure_keeps_recipient_failed():
    class FlakyFallback(FakeProvider):
        async def send(self, to, message):
            self.sent.append((to, message))
            if to.endswith("2222222"):
                raise SmsTransientError("plivo down", provider=self.name)
            return DeliveryAttempt(to=to, body=message, provider=self.name, success=True)

    primary = _taqnyat(lambda request: httpx.Response(503, json={"message": "busy"}))
    channel = DeliveryChannel(primary, FlakyFallback(name="plivo"), pacing_delay=0)

    result = await channel.send_bulk([OutboundMessage(p, "same") for p in ("0501111111", "0502222222")])

    assert result.successful == 1
    assert result.failed == 1
    assert result.fallback == 1
    assert result.errors[-1] == {"error": "plivo down", "phone": "966502222222"}


@pytest.mark.asyncio
async def test_taqnyat_send_scheduled_payload():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"statusCode": 201, "messageId": 77, "cost": 0.09})

    provider = _taqnyat(handler)
    send_at = datetime(2025, 1, 6, 12, 30, 45, tzinfo=timezone(timedelta(hours=3)))

    attempt = await provider.send_scheduled("0501234567", "Reminder", send_at, delete_id=42)

    assert requests[0] == {
        "recipients": ["966501234567"],
        "body": "Reminder",
        "sender": "Academy",
        "scheduledDatetime": "2025-01-06T09:30",
        "deleteId": 42,
    }
    assert attempt.scheduled_at == "2025-01-06T09:30"
    assert attempt.message_id == "77"


@pytest.mark.asyncio
async def test_taqnyat_send_scheduled_without_delete_id():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"statusCode": 201, "messageId": 1})

    provider = _taqnyat(handler)

    await provider.send_scheduled("0501234567", "Reminder", datetime(2025, 1, 6, 9, 30))

    assert "deleteId" not in requests[0]
    assert requests[0]["scheduledDatetime"] == "2025-01-06T09:30"


@pytest.mark.asyncio
async def test_taqnyat_cancel_scheduled():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"statusCode": 201, "message": "deleted"})

    provider = _taqnyat(handler)

    result = await provider.cancel_scheduled(42)

    assert seen == {"method": "DELETE", "path": "/v1/messages/delete", "body": {"deleteId": 42}}
    assert result["message"] == "deleted"


@pytest.mark.asyncio
async def test_taqnyat_cancel_scheduled_not_found_is_rejection():
    provider = _taqnyat(lambda request: httpx.Response(404, json={"message": "unknown deleteId"}))

    with pytest.raises(SmsRejectedError):
        await provider.cancel_scheduled(42)


@pytest.mark.asyncio
async def test_taqnyat_get_senders():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages/senders"
        assert request.headers["Authorization"] == "Bearer token"
        return httpx.Response(200, json={"statusCode": 201, "senders": [{"senderName": "Academy"}]})

    channel = DeliveryChannel(_taqnyat(handler))

    assert await channel.get_senders() == [{"senderName": "Academy"}]


@pytest.mark.asyncio
async def test_senders_empty_when_provider_has_none():
    assert await DeliveryChannel(FakeProvider()).get_senders() == []
    provider = _taqnyat(lambda request: httpx.Response(200, json={"statusCode": 404}))
    assert await provider.get_senders() == []
