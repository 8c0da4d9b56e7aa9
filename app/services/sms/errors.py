"""SMS delivery error taxonomy."""


class SmsError(Exception):
    """Base exception for SMS delivery failures."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.recoverable = recoverable


class SmsConfigurationError(SmsError):
    """Provider credentials or settings are missing. Never retried."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, provider=provider, recoverable=False)


class SmsTransientError(SmsError):
    """Network failure or provider outage; eligible for fallback."""


class SmsRejectedError(SmsError):
    """Provider refused this recipient (invalid number, blocked sender)."""

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        super().__init__(message, provider=provider, status_code=status_code, recoverable=False)


class SmsDeliveryError(SmsError):
    """Delivery failed on every configured provider."""

    def __init__(
        self,
        message: str,
        primary_error: Exception | None = None,
        fallback_error: Exception | None = None,
        provider: str | None = None,
    ):
        super().__init__(message, provider=provider, recoverable=False)
        self.primary_error = primary_error
        self.fallback_error = fallback_error
