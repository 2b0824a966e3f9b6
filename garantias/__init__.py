"""
Guarantee Ledger for Vehicle Auctions

This package provides:
- Append-only movement ledger with derived user balances
- Guarantee payment lifecycle: pendiente → validado / rechazado
- Winner assignment, reassignment and payment-deadline expiration
- Auction lifecycle through competition result and billing
- Refund lifecycle: solicitado → confirmado → procesado, with balance holds
"""

from .errors import (
    ConflictError,
    ForbiddenError,
    GarantiasError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AuctionStatus,
    Caller,
    Movement,
    MovementKind,
    MovementStatus,
    RefundStatus,
    UserBalance,
    UserType,
)
from .service import GarantiasService

__all__ = [
    "AuctionStatus",
    "Caller",
    "Movement",
    "MovementKind",
    "MovementStatus",
    "RefundStatus",
    "UserBalance",
    "UserType",
    "GarantiasService",
    "GarantiasError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ForbiddenError",
    "InvalidStateTransitionError",
]
