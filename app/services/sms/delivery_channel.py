"""
SMS delivery channel with automatic provider failover.

The channel owns one primary provider and an optional, distinct fallback.
A single send goes to the primary first; any failure other than a
configuration error is retried once through the fallback. Bulk sends use
the primary's native multi-recipient endpoint when every message shares a
body, otherwise they degrade to paced sequential sends.
"""

import asyncio

from app.config import Settings, settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.delivery_domain import BatchResult, CostEstimate, DeliveryAttempt, OutboundMessage
from app.services.sms.errors import SmsConfigurationError, SmsDeliveryError
from app.services.sms.phone import estimate_cost, format_phone, is_valid_saudi_mobile
from app.services.sms.providers import SmsProvider, build_provider

logger = get_logger(__name__)

# Sequential bulk sends pause between messages above this size
PACING_THRESHOLD = 10
PACING_DELAY_SECONDS = 0.05


class DeliveryChannel:
    """
    Provider-agnostic SMS channel.

    Usage:
        attempt = await channel.send("0501234567", "Hello")
        batch = await channel.send_bulk([OutboundMessage(phone, body), ...])
    """

    def __init__(
        self,
        primary: SmsProvider,
        fallback: SmsProvider | None = None,
        country_code: str = "966",
        sender_name: str = "AcademySMS",
        pacing_delay: float = PACING_DELAY_SECONDS,
    ):
        if fallback is not None and fallback.name == primary.name:
            fallback = None
        self.primary = primary
        self.fallback = fallback
        self.country_code = country_code
        self.sender_name = sender_name
        self.pacing_delay = pacing_delay

    @classmethod
    def from_settings(cls, config: Settings) -> "DeliveryChannel":
        fallback_name = config.fallback_provider()
        return cls(
            primary=build_provider(config.SMS_PROVIDER, config),
            fallback=build_provider(fallback_name, config) if fallback_name else None,
            country_code=config.SMS_COUNTRY_CODE,
            sender_name=config.SMS_SENDER_NAME,
        )

    def format_phone(self, phone: str) -> str:
        return format_phone(phone, self.country_code)

    async def send(self, to: str, message: str) -> DeliveryAttempt:
        """
        Send one SMS, failing over to the fallback provider if needed.

        Args:
            to: Phone number in any local or international format
            message: UTF-8 body (Arabic allowed)

        Returns:
            DeliveryAttempt: successful attempt, tagged fallback=True when the
            fallback provider delivered it

        Raises:
            SmsConfigurationError: Primary provider is not configured
            SmsDeliveryError: Every configured provider failed
        """
        phone = self.format_phone(to)

        try:
            return await self.primary.send(phone, message)
        except SmsConfigurationError:
            logger.error("SMS provider misconfigured", provider=self.primary.name)
            raise
        except Exception as primary_error:
            logger.error(
                "SMS primary provider failed",
                provider=self.primary.name,
                to=phone,
                error=str(primary_error),
                error_type=type(primary_error).__name__,
            )

            if self.fallback is None:
                raise SmsDeliveryError(
                    str(primary_error),
                    primary_error=primary_error,
                    provider=self.primary.name,
                ) from primary_error

            logger.warning(
                "Falling back to secondary SMS provider",
                primary=self.primary.name,
                fallback=self.fallback.name,
            )
            try:
                attempt = await self.fallback.send(phone, message)
            except Exception as fallback_error:
                logger.error(
                    "SMS fallback provider also failed",
                    provider=self.fallback.name,
                    to=phone,
                    error=str(fallback_error),
                )
                raise SmsDeliveryError(
                    f"SMS failed on both providers. "
                    f"Primary ({self.primary.name}): {primary_error} | "
                    f"Fallback ({self.fallback.name}): {fallback_error}",
                    primary_error=primary_error,
                    fallback_error=fallback_error,
                    provider=self.fallback.name,
                ) from fallback_error

            attempt.fallback = True
            attempt.primary_error = str(primary_error)
            return attempt

    async def send_bulk(self, messages: list[OutboundMessage]) -> BatchResult:
        """
        Send many messages.

        Identical bodies on a bulk-capable primary go out in one request per
        1000 recipients; recipients of chunks that failed transiently are then
        retried one by one through the fallback. Anything else is sent one by
        one. Per-recipient failures are collected and never abort the batch.
        """
        if not messages:
            return BatchResult()

        bodies = {m.body for m in messages}
        if len(messages) > 1 and len(bodies) == 1 and self.primary.supports_bulk:
            phones = [self.format_phone(m.phone) for m in messages]
            body = bodies.pop()
            logger.info("Sending bulk SMS via native endpoint", provider=self.primary.name, count=len(phones))
            results = await self.primary.send_bulk(phones, body)
            if results.retryable and self.fallback is not None:
                await self._retry_with_fallback(results, body)
            return results

        results = BatchResult()
        paced = len(messages) > PACING_THRESHOLD

        for msg in messages:
            try:
                attempt = await self.send(msg.phone, msg.body)
                results.record_success(attempt.cost)
            except SmsConfigurationError:
                raise
            except Exception as e:
                results.record_failure(str(e), [msg.phone])

            if paced and self.pacing_delay:
                await asyncio.sleep(self.pacing_delay)

        logger.info(
            "Sequential SMS batch completed",
            successful=results.successful,
            failed=results.failed,
        )
        return results

    async def _retry_with_fallback(self, results: BatchResult, body: str) -> None:
        """Resend transiently failed bulk recipients one by one through the fallback."""
        phones = list(results.retryable)
        results.retryable.clear()
        paced = len(phones) > PACING_THRESHOLD

        logger.warning(
            "Retrying failed bulk recipients via fallback provider",
            primary=self.primary.name,
            fallback=self.fallback.name,
            count=len(phones),
        )

        for phone in phones:
            try:
                attempt = await self.fallback.send(phone, body)
            except SmsConfigurationError:
                logger.error("SMS fallback provider misconfigured", provider=self.fallback.name)
                break
            except Exception as e:
                results.record_failure(str(e), [phone], count=0)
            else:
                results.failed -= 1
                results.record_success(attempt.cost)
                results.fallback += 1

            if paced and self.pacing_delay:
                await asyncio.sleep(self.pacing_delay)

        logger.info(
            "Bulk fallback retry completed",
            fallback=self.fallback.name,
            recovered=results.fallback,
            still_failed=results.failed,
        )

    def calculate_cost(self, message: str, recipient_count: int = 1) -> CostEstimate:
        return estimate_cost(message, self.primary.name, recipient_count)

    def validate_phone(self, phone: str) -> bool:
        return is_valid_saudi_mobile(phone)

    async def get_balance(self) -> dict:
        return await self.primary.get_balance()

    async def get_senders(self) -> list:
        return await self.primary.get_senders()

    def provider_info(self) -> dict:
        """Configuration summary safe for logs and admin screens."""
        return {
            "provider": self.primary.name,
            "fallback_provider": self.fallback.name if self.fallback else "none",
            "sender_name": self.sender_name,
            "primary_configured": self.primary.is_configured(),
            "fallback_configured": self.fallback.is_configured() if self.fallback else False,
            "supports_bulk": self.primary.supports_bulk,
        }

    async def close(self) -> None:
        await self.primary.close()
        if self.fallback is not None:
            await self.fallback.close()


# Singleton instance for application use
delivery_channel = DeliveryChannel.from_settings(settings)
