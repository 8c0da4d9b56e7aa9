"""
SMS delivery package.

Phone normalization, provider adapters, and the failover-aware delivery
channel the trigger scheduler sends through.
"""

from .delivery_channel import DeliveryChannel  # noqa: F401
from .errors import (  # noqa: F401
    SmsConfigurationError,
    SmsDeliveryError,
    SmsError,
    SmsRejectedError,
    SmsTransientError,
)
from .providers import MockProvider, PlivoProvider, SmsProvider, TaqnyatProvider  # noqa: F401
