"""
Token Loyalty Ledger

This module provides:
- Entity store for users, businesses, tokens, rewards and transactions
- Earn and redeem workflows settled through an external gateway
- Transaction lifecycle: pending → completed / failed
- Balances derived from completed transactions only
- Per-user, per-token serialization of redemptions
"""

from .errors import (
    LedgerError,
    NotFoundError,
    ConflictError,
    ValidationError,
    InvalidStatusTransitionError,
    NotMintableError,
    InsufficientBalanceError,
    SettlementFailureError,
)
from .models import (
    EntityKind,
    TransactionType,
    TransactionStatus,
    User,
    Business,
    Token,
    Reward,
    Transaction,
)
from .service import LoyaltyService
from .settlement import SettlementGateway, SimulatedSettlementGateway
from .storage import InMemoryStorage, LedgerStorage

__all__ = [
    "LedgerError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "InvalidStatusTransitionError",
    "NotMintableError",
    "InsufficientBalanceError",
    "SettlementFailureError",
    "EntityKind",
    "TransactionType",
    "TransactionStatus",
    "User",
    "Business",
    "Token",
    "Reward",
    "Transaction",
    "LoyaltyService",
    "SettlementGateway",
    "SimulatedSettlementGateway",
    "InMemoryStorage",
    "LedgerStorage",
]
