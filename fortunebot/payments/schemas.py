"""
Pydantic models for the payment provider webhook.

Only the fields the top-up flow reads are declared; everything else the
provider sends is accepted and ignored.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckoutSession(BaseModel):
    model_config = ConfigDict(extra="allow")

    # The checkout link carries the LINE userId here (see messages.out_of_credits_message)
    client_reference_id: Optional[str] = None


class PaymentEventData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    object: CheckoutSession = Field(default_factory=CheckoutSession)


class PaymentEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Provider event id, used as the top-up reference")
    type: str
    data: PaymentEventData = Field(default_factory=PaymentEventData)

    @property
    def user_id(self) -> Optional[str]:
        return self.data.object.client_reference_id or None


class TopupResponse(BaseModel):
    status: str = Field(..., description="applied | duplicate | closed | ignored")
    balance: Optional[int] = None
