"""
Escrow Ledger Domain Models

Holds lock campaign funds for a creator; releases and refunds draw the
hold down. Every movement is also appended to an append-only ledger from
which wallet balances are computed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from mutation_kernel.kernel.errors import Conflict


class HoldStatus(str, Enum):
    """
    Escrow hold lifecycle

    ACTIVE -> PARTIAL_RELEASE -> FULLY_RELEASED | REFUNDED
    FULLY_RELEASED and REFUNDED are terminal.
    """

    ACTIVE = "active"
    PARTIAL_RELEASE = "partial_release"
    FULLY_RELEASED = "fully_released"
    REFUNDED = "refunded"

    @property
    def closed(self) -> bool:
        return self in (HoldStatus.FULLY_RELEASED, HoldStatus.REFUNDED)


class LedgerEntryType(str, Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class EscrowHold(BaseModel):
    escrow_id: str
    campaign_id: str
    creator_id: str
    original_amount: float
    released_amount: float = 0.0
    refunded_amount: float = 0.0
    remaining_amount: float
    status: HoldStatus
    held_at: datetime
    updated_at: datetime

    model_config = {"frozen": True}


class LedgerEntry(BaseModel):
    entry_id: str
    escrow_id: str
    campaign_id: str
    entry_type: LedgerEntryType
    amount: float
    occurred_at: datetime

    model_config = {"frozen": True}


class WalletBalance(BaseModel):
    """Campaign balances computed from the ledger"""

    campaign_id: str
    held_balance: float = 0.0
    released_balance: float = 0.0
    refunded_balance: float = 0.0
    net_escrow_balance: float = 0.0
    calculated_at: datetime


class CreateHoldInput(BaseModel):
    campaign_id: str
    creator_id: str
    amount: float

    @field_validator("campaign_id", "creator_id")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class ReleaseInput(BaseModel):
    escrow_id: str
    amount: float

    @field_validator("escrow_id")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class RefundInput(BaseModel):
    escrow_id: str
    amount: float | None = Field(
        default=None, description="Amount to refund (None = the whole remaining balance)"
    )

    @field_validator("escrow_id")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


# Event payloads


class HoldCreatedPayload(BaseModel):
    escrow_id: str
    campaign_id: str
    creator_id: str
    amount: float
    held_at: datetime


class PartialReleasePayload(BaseModel):
    escrow_id: str
    amount: float
    remaining_balance: float
    released_at: datetime


class HoldFullyReleasedPayload(BaseModel):
    escrow_id: str
    released_at: datetime


class RefundProcessedPayload(BaseModel):
    escrow_id: str
    amount: float
    refunded_at: datetime


# Domain errors


class HoldClosed(Conflict):
    """Raised when releasing or refunding a fully released or refunded hold"""

    code = "hold_closed"


class InsufficientEscrow(Conflict):
    """Raised when a release or refund exceeds the remaining balance"""

    code = "insufficient_escrow"
