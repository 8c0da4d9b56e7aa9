"""
Delivery Domain Models
Shapes produced by the SMS delivery channel. None of these are persisted
directly; the scheduler turns them into message log rows.
"""

from dataclasses import dataclass, field


@dataclass(slots=True)
class OutboundMessage:
    """One message addressed to one phone number."""

    phone: str
    body: str
    name: str | None = None


@dataclass(slots=True)
class DeliveryAttempt:
    """Result of handing one message to a provider."""

    to: str
    body: str
    provider: str
    success: bool
    message_id: str | None = None
    cost: float = 0.0
    currency: str = "SAR"
    segments: int = 1
    fallback: bool = False
    primary_error: str | None = None
    error: str | None = None
    scheduled_at: str | None = None


@dataclass(slots=True)
class BatchResult:
    """Aggregate outcome of a bulk send."""

    successful: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    total_cost: float = 0.0
    fallback: int = 0
    # Recipients whose failure was transient and may be retried elsewhere
    retryable: list[str] = field(default_factory=list)

    def record_success(self, cost: float | None = None, count: int = 1) -> None:
        self.successful += count
        self.total_cost += cost or 0.0

    def record_failure(
        self, error: str, phones: list[str], count: int | None = None, retryable: bool = False
    ) -> None:
        self.failed += count if count is not None else len(phones)
        entry = {"error": error}
        if len(phones) == 1:
            entry["phone"] = phones[0]
        else:
            entry["phones"] = phones[:3]
        self.errors.append(entry)
        if retryable:
            self.retryable.extend(phones)

    def to_dict(self) -> dict:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
            "total_cost": round(self.total_cost, 4),
            "fallback": self.fallback,
        }


@dataclass(frozen=True, slots=True)
class CostEstimate:
    segments: int
    cost_per_message: float
    total_cost: float
    currency: str
    is_unicode: bool

    def to_dict(self) -> dict:
        return {
            "segments": self.segments,
            "cost_per_message": self.cost_per_message,
            "total_cost": self.total_cost,
            "currency": self.currency,
            "is_unicode": self.is_unicode,
        }
