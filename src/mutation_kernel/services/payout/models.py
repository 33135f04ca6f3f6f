"""
Payout Domain Models

Payout lifecycle, request inputs and the payloads of payout events.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class PayoutMethod(str, Enum):
    STANDARD = "standard"
    INSTANT = "instant"


class PayoutStatus(str, Enum):
    """
    Payout lifecycle states

    SCHEDULED -> PROCESSING -> PAID
                            -> FAILED
    """

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class Payout(BaseModel):
    """A settlement of earned rewards to a user"""

    payout_id: str = Field(..., description="Unique payout identifier")
    user_id: str
    submission_id: str = Field(..., description="Submission whose reward is paid out")
    amount: float
    currency: str
    method: PayoutMethod
    status: PayoutStatus
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    processing_at: datetime | None = None
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str = ""

    model_config = {"frozen": True}


class RequestPayoutInput(BaseModel):
    """
    Semantic inputs of a payout request

    scheduled_at may be omitted (the payout is then scheduled for now);
    currency may be omitted (the service default applies).
    """

    user_id: str
    submission_id: str
    amount: float
    currency: str = ""
    method: PayoutMethod = PayoutMethod.STANDARD
    scheduled_at: datetime | None = None

    @field_validator("user_id", "submission_id", "currency")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class PayoutHistory(BaseModel):
    items: list[Payout]
    limit: int
    offset: int
    total: int


# Event payloads


class PayoutProcessingPayload(BaseModel):
    payout_id: str
    user_id: str
    amount: float
    method: str
    processing_at: datetime


class PayoutPaidPayload(BaseModel):
    payout_id: str
    user_id: str
    amount: float
    method: str
    paid_at: datetime


class PayoutFailedPayload(BaseModel):
    payout_id: str
    user_id: str
    amount: float
    method: str
    reason: str
    failed_at: datetime


class RewardPayoutEligiblePayload(BaseModel):
    """Inbound payload announcing that a submission's reward can be paid"""

    submission_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    gross_amount: float
    eligible_at: str = ""
