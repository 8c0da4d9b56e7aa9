"""
SMS API request models.
Used by the delivery-status webhook for input validation.
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class DeliveryStatusReport(BaseModel):
    """Delivery report posted by an SMS provider."""

    model_config = ConfigDict(extra="allow")

    message_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("message_id", "MessageUUID"),
        description="Provider message id (Plivo sends MessageUUID)",
    )
    status: str = Field(default="", description="Provider status, e.g. delivered, failed")
    to: str = Field(default="", description="Recipient phone number")
    provider: str | None = Field(default=None, description="Reporting provider id")
    error: str | None = Field(default=None, description="Provider error text")

    @property
    def normalized_status(self) -> str:
        return self.status.strip().lower()
