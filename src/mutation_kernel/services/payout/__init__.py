"""Payout settlement reference service"""

from mutation_kernel.services.payout.models import (
    Payout,
    PayoutHistory,
    PayoutMethod,
    PayoutStatus,
    RequestPayoutInput,
)
from mutation_kernel.services.payout.service import PayoutService, register_payout_events

__all__ = [
    "Payout",
    "PayoutHistory",
    "PayoutMethod",
    "PayoutService",
    "PayoutStatus",
    "RequestPayoutInput",
    "register_payout_events",
]
