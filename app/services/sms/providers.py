"""
SMS provider adapters.

Each adapter is responsible only for translating a send request into the
vendor's wire format and normalizing the response (or failure) into a
DeliveryAttempt / SmsError. Failover lives in the delivery channel.

Providers:
    taqnyat : Production (Saudi local provider, native bulk endpoint)
    plivo   : Staging / international
    mock    : Local development, no network
"""

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from app.config import Settings
from app.infrastructure.observability.logging import get_logger, log_delivery
from app.models.domain.delivery_domain import BatchResult, DeliveryAttempt
from app.services.sms.errors import (
    SmsConfigurationError,
    SmsError,
    SmsRejectedError,
    SmsTransientError,
)
from app.services.sms.phone import count_segments, format_phone, to_e164, to_taqnyat_format

logger = get_logger(__name__)

# Request timeouts
SEND_TIMEOUT_SECONDS = 30
BULK_TIMEOUT_SECONDS = 60
BALANCE_TIMEOUT_SECONDS = 10
MANAGE_TIMEOUT_SECONDS = 15

TAQNYAT_BULK_CHUNK_SIZE = 1000
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}


def _classify_http_error(provider: str, status_code: int, detail: str) -> SmsError:
    """Map an HTTP failure status onto the SMS error taxonomy."""
    if status_code in AUTH_STATUS_CODES:
        return SmsConfigurationError(
            f"{provider} rejected credentials (HTTP {status_code}): {detail}", provider=provider
        )
    if status_code in TRANSIENT_STATUS_CODES:
        return SmsTransientError(
            f"{provider} unavailable (HTTP {status_code}): {detail}",
            provider=provider,
            status_code=status_code,
        )
    return SmsRejectedError(
        f"{provider} rejected message (HTTP {status_code}): {detail}",
        provider=provider,
        status_code=status_code,
    )


def _response_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)[:200]
    return str(data)[:200]


class SmsProvider:
    """Interface every provider adapter implements."""

    name: str = "base"
    supports_bulk: bool = False

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        raise NotImplementedError

    async def send_bulk(self, phones: list[str], message: str) -> BatchResult:
        raise NotImplementedError(f"{self.name} has no native bulk endpoint")

    async def get_balance(self) -> dict[str, Any]:
        return {"balance": 0, "currency": "SAR", "credits": 0}

    async def get_senders(self) -> list:
        return []

    def is_configured(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class HttpSmsProvider(SmsProvider):
    """Shared httpx plumbing for network-backed providers."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(SEND_TIMEOUT_SECONDS)
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
            self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SmsTransientError(f"{self.name} request timed out: {e}", provider=self.name) from e
        except httpx.RequestError as e:
            raise SmsTransientError(f"{self.name} network error: {e}", provider=self.name) from e


class TaqnyatProvider(HttpSmsProvider):
    """Taqnyat REST API (https://dev.taqnyat.sa/en/doc/sms/)."""

    name = "taqnyat"
    supports_bulk = True

    def __init__(
        self,
        bearer_token: str | None,
        sender: str,
        base_url: str = "https://api.taqnyat.sa",
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(client)
        self.bearer_token = bearer_token
        self.sender = sender
        self.base_url = base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.bearer_token)

    def _headers(self) -> dict:
        if not self.bearer_token:
            raise SmsConfigurationError("TAQNYAT_BEARER_TOKEN is not configured", provider=self.name)
        return {
            "Authorization": f"Bearer {self.bearer_token}",
            "Content-Type": "application/json",
        }

    async def _post_messages(self, recipients: list[str], message: str, timeout: float, **extra) -> dict:
        headers = self._headers()
        response = await self._request(
            "POST",
            f"{self.base_url}/v1/messages",
            json={"recipients": recipients, "body": message, "sender": self.sender, **extra},
            headers=headers,
            timeout=timeout,
        )

        if not response.is_success:
            raise _classify_http_error(self.name, response.status_code, _response_detail(response))

        try:
            data = response.json()
        except ValueError as e:
            raise SmsTransientError(f"Invalid Taqnyat response: {e}", provider=self.name) from e

        # Taqnyat reports its own status inside the body
        if data.get("statusCode") != 201:
            raise SmsRejectedError(
                data.get("message") or f"Taqnyat error: statusCode {data.get('statusCode')}",
                provider=self.name,
                status_code=data.get("statusCode"),
            )
        return data

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        phone = to_taqnyat_format(to)
        data = await self._post_messages([phone], message, SEND_TIMEOUT_SECONDS)

        attempt = DeliveryAttempt(
            to=phone,
            body=message,
            provider=self.name,
            success=True,
            message_id=str(data.get("messageId")) if data.get("messageId") is not None else None,
            cost=float(data.get("cost") or 0),
            currency=data.get("currency") or "SAR",
            segments=int(data.get("msgLength") or 1),
        )
        log_delivery(self.name, phone, True, message_id=attempt.message_id, cost=attempt.cost)
        return attempt

    async def send_bulk(self, phones: list[str], message: str) -> BatchResult:
        """Send one body to many recipients, chunked to the API limit."""
        formatted = [to_taqnyat_format(p) for p in phones]
        chunks = [
            formatted[i : i + TAQNYAT_BULK_CHUNK_SIZE]
            for i in range(0, len(formatted), TAQNYAT_BULK_CHUNK_SIZE)
        ]

        results = BatchResult()
        for chunk in chunks:
            try:
                data = await self._post_messages(chunk, message, BULK_TIMEOUT_SECONDS)
                results.record_success(
                    cost=float(data.get("cost") or 0), count=int(data.get("totalCount") or len(chunk))
                )
                logger.info(
                    "Taqnyat bulk chunk sent",
                    sent=data.get("totalCount") or len(chunk),
                    cost=data.get("cost"),
                )
            except SmsConfigurationError:
                raise
            except SmsError as e:
                results.record_failure(
                    str(e), chunk, count=len(chunk), retryable=isinstance(e, SmsTransientError)
                )
                logger.warning("Taqnyat bulk chunk failed", chunk_size=len(chunk), error=str(e))

        return results

    async def send_scheduled(
        self, to: str, message: str, send_at: datetime, delete_id: int | None = None
    ) -> DeliveryAttempt:
        """
        Queue one SMS on Taqnyat for later delivery.

        Args:
            to: Phone number in any local or international format
            message: UTF-8 body
            send_at: Delivery time; naive values are taken as UTC
            delete_id: Caller-chosen id that cancel_scheduled() accepts later

        Returns:
            DeliveryAttempt with scheduled_at set to the minute Taqnyat was given
        """
        phone = to_taqnyat_format(format_phone(to))
        if send_at.tzinfo is None:
            send_at = send_at.replace(tzinfo=UTC)
        # Taqnyat takes yyyy-mm-ddThh:mm in UTC
        scheduled_at = send_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M")

        extra: dict[str, Any] = {"scheduledDatetime": scheduled_at}
        if delete_id:
            extra["deleteId"] = delete_id
        data = await self._post_messages([phone], message, SEND_TIMEOUT_SECONDS, **extra)

        logger.info("Taqnyat SMS scheduled", to=phone, scheduled_at=scheduled_at, delete_id=delete_id)
        return DeliveryAttempt(
            to=phone,
            body=message,
            provider=self.name,
            success=True,
            message_id=str(data.get("messageId")) if data.get("messageId") is not None else None,
            cost=float(data.get("cost") or 0),
            currency=data.get("currency") or "SAR",
            scheduled_at=scheduled_at,
        )

    async def cancel_scheduled(self, delete_id: int) -> dict[str, Any]:
        """Cancel a scheduled send by the delete id it was queued with."""
        response = await self._request(
            "DELETE",
            f"{self.base_url}/v1/messages/delete",
            json={"deleteId": delete_id},
            headers=self._headers(),
            timeout=MANAGE_TIMEOUT_SECONDS,
        )
        if not response.is_success:
            raise _classify_http_error(self.name, response.status_code, _response_detail(response))

        logger.info("Taqnyat scheduled SMS cancelled", delete_id=delete_id)
        try:
            return response.json()
        except ValueError:
            return {}

    async def get_senders(self) -> list:
        """Sender names active on the Taqnyat account."""
        response = await self._request(
            "GET",
            f"{self.base_url}/v1/messages/senders",
            headers=self._headers(),
            timeout=MANAGE_TIMEOUT_SECONDS,
        )
        if not response.is_success:
            raise _classify_http_error(self.name, response.status_code, _response_detail(response))

        try:
            data = response.json()
        except ValueError as e:
            raise SmsTransientError(f"Invalid Taqnyat response: {e}", provider=self.name) from e

        if data.get("statusCode") == 201 and data.get("senders"):
            return data["senders"]
        return []

    async def get_balance(self) -> dict[str, Any]:
        try:
            response = await self._request(
                "GET",
                f"{self.base_url}/account/balance",
                headers=self._headers(),
                timeout=BALANCE_TIMEOUT_SECONDS,
            )
            data = response.json()
            if data.get("statusCode") == 200:
                balance = float(data.get("balance") or 0)
                return {
                    "balance": balance,
                    "currency": data.get("currency") or "SAR",
                    "credits": int(balance / 0.09),
                    "account_status": data.get("accountStatus"),
                    "expiry_date": data.get("accountExpiryDate"),
                }
            return {"balance": 0, "currency": "SAR", "credits": 0}
        except (SmsError, ValueError) as e:
            logger.error("Taqnyat balance check failed", error=str(e))
            return {"balance": 0, "currency": "SAR", "credits": 0, "error": str(e)}


class PlivoProvider(HttpSmsProvider):
    """Plivo Message API over plain REST."""

    name = "plivo"
    supports_bulk = False

    def __init__(
        self,
        auth_id: str | None,
        auth_token: str | None,
        sender_id: str,
        base_url: str = "https://api.plivo.com/v1",
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(client)
        self.auth_id = auth_id
        self.auth_token = auth_token
        self.sender_id = sender_id
        self.base_url = base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.auth_id and self.auth_token)

    def _auth(self) -> tuple[str, str]:
        if not self.is_configured():
            raise SmsConfigurationError(
                "PLIVO_AUTH_ID / PLIVO_AUTH_TOKEN is not configured", provider=self.name
            )
        return (self.auth_id, self.auth_token)

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        auth = self._auth()
        phone = to_e164(to)

        response = await self._request(
            "POST",
            f"{self.base_url}/Account/{self.auth_id}/Message/",
            json={"src": self.sender_id, "dst": phone, "text": message},
            auth=auth,
            timeout=SEND_TIMEOUT_SECONDS,
        )
        if not response.is_success:
            raise _classify_http_error(self.name, response.status_code, _response_detail(response))

        data = response.json()
        message_uuid = data.get("message_uuid")
        if isinstance(message_uuid, list):
            message_uuid = message_uuid[0] if message_uuid else None

        log_delivery(self.name, phone, True, message_id=message_uuid)

        # Plivo does not report cost on send
        return DeliveryAttempt(
            to=phone,
            body=message,
            provider=self.name,
            success=True,
            message_id=message_uuid,
            cost=0.0,
            currency="USD",
            segments=count_segments(message),
        )

    async def get_balance(self) -> dict[str, Any]:
        try:
            response = await self._request(
                "GET",
                f"{self.base_url}/Account/{self.auth_id}/",
                auth=self._auth(),
                timeout=BALANCE_TIMEOUT_SECONDS,
            )
            data = response.json()
            balance = float(data.get("cash_credits") or 0)
            return {"balance": balance, "currency": "USD", "credits": int(balance / 0.007)}
        except (SmsError, ValueError) as e:
            logger.error("Plivo balance check failed", error=str(e))
            return {"balance": 0, "currency": "USD", "credits": 0, "error": str(e)}


class MockProvider(SmsProvider):
    """Development provider: logs the message and pretends it was sent."""

    name = "mock"
    supports_bulk = False

    def __init__(self, latency_seconds: float = 0.1):
        self.latency_seconds = latency_seconds

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        preview = message if len(message) <= 50 else f"{message[:50]}..."
        logger.info("Mock SMS send", to=to, preview=preview)

        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        return DeliveryAttempt(
            to=to,
            body=message,
            provider=self.name,
            success=True,
            message_id=f"mock_{int(time.time() * 1000)}",
            cost=0.0,
            segments=count_segments(message),
        )

    async def get_balance(self) -> dict[str, Any]:
        return {"balance": 9999, "currency": "SAR", "credits": 99999}


def build_provider(name: str | None, config: Settings) -> SmsProvider:
    """Instantiate the adapter for a provider id; unknown ids fall back to mock."""
    provider_name = (name or "mock").strip().lower()

    if provider_name == "taqnyat":
        return TaqnyatProvider(
            bearer_token=config.TAQNYAT_BEARER_TOKEN,
            sender=config.TAQNYAT_SENDER_NAME or config.SMS_SENDER_NAME,
            base_url=config.TAQNYAT_BASE_URL,
        )

    if provider_name == "plivo":
        return PlivoProvider(
            auth_id=config.PLIVO_AUTH_ID,
            auth_token=config.PLIVO_AUTH_TOKEN,
            sender_id=config.PLIVO_SENDER_ID or config.SMS_SENDER_NAME,
            base_url=config.PLIVO_BASE_URL,
        )

    if provider_name != "mock":
        logger.warning("Unknown SMS provider, using mock", provider=provider_name)

    return MockProvider()
