"""Escrow ledger reference service"""

from mutation_kernel.services.escrow.models import (
    CreateHoldInput,
    EscrowHold,
    HoldClosed,
    HoldStatus,
    InsufficientEscrow,
    RefundInput,
    ReleaseInput,
    WalletBalance,
)
from mutation_kernel.services.escrow.service import EscrowService, register_escrow_events

__all__ = [
    "CreateHoldInput",
    "EscrowHold",
    "EscrowService",
    "HoldClosed",
    "HoldStatus",
    "InsufficientEscrow",
    "RefundInput",
    "ReleaseInput",
    "WalletBalance",
    "register_escrow_events",
]
