"""
Phone number normalization and SMS cost estimation.

Pure helpers shared by every provider adapter: canonical international
format, per-provider wire formats, and segment-based cost estimates.
"""

import math
import re

from app.models.domain.delivery_domain import CostEstimate

DEFAULT_COUNTRY_CODE = "966"

# Characters per segment by encoding
GSM_SEGMENT_LENGTH = 160
UNICODE_SEGMENT_LENGTH = 70

# Per-segment rates in SAR
SEGMENT_RATES = {
    "taqnyat": 0.09,
    "plivo": 0.007 * 3.75,  # USD -> SAR
}

_NON_DIGITS = re.compile(r"\D")
_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_SAUDI_MOBILE = re.compile(r"^(\+966|966|0)?5[0-9]{8}$")


def format_phone(phone: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize any local or international input to +<country><national>.

    "0501234567", "00966501234567", "+966 050 123 4567" all become
    "+966501234567". Trunk zeros after the country code are dropped.
    """
    target = _NON_DIGITS.sub("", str(country_code or DEFAULT_COUNTRY_CODE)) or DEFAULT_COUNTRY_CODE
    digits = _NON_DIGITS.sub("", str(phone or "").strip())

    if not digits:
        return f"+{target}"

    if digits.startswith("00"):
        digits = digits[2:]

    if digits.startswith(target):
        national = digits[len(target):].lstrip("0")
        return f"+{target}{national}"

    return f"+{target}{digits.lstrip('0')}"


def is_valid_saudi_mobile(phone: str | None) -> bool:
    """Saudi mobiles start with 5 and carry 9 digits after the country code."""
    return bool(_SAUDI_MOBILE.match(re.sub(r"\s", "", str(phone or ""))))


def to_taqnyat_format(phone: str) -> str:
    """Taqnyat wants international digits without '+' or '00'."""
    return _NON_DIGITS.sub("", str(phone)).lstrip("0") or phone


def to_e164(phone: str) -> str:
    """E.164 with a leading '+', as Plivo expects."""
    phone = str(phone)
    if phone.startswith("+"):
        return phone
    return f"+{_NON_DIGITS.sub('', phone)}"


def is_unicode(message: str) -> bool:
    return bool(_NON_ASCII.search(message or ""))


def count_segments(message: str) -> int:
    limit = UNICODE_SEGMENT_LENGTH if is_unicode(message) else GSM_SEGMENT_LENGTH
    return max(1, math.ceil(len(message or "") / limit))


def estimate_cost(message: str, provider: str, recipient_count: int = 1) -> CostEstimate:
    """
    Estimate what a message will cost on the given provider.

    Arabic (any non-ASCII) text is sent as UCS-2 with 70 chars/segment,
    plain ASCII as GSM-7 with 160 chars/segment.
    """
    segments = count_segments(message)
    rate = SEGMENT_RATES.get(provider, 0.0)
    return CostEstimate(
        segments=segments,
        cost_per_message=round(segments * rate, 4),
        total_cost=round(segments * rate * recipient_count, 4),
        currency="SAR",
        is_unicode=is_unicode(message),
    )
