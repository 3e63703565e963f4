# Importing every table module registers it on Base.metadata

from .base import Base
from .user import User, PlatformAccount, UserRole
from .wallet import Wallet, LedgerTransaction, TransactionType, TransactionStatus
from .challenge import (
    Challenge,
    ChallengeOpponent,
    Scorecard,
    VerificationRecord,
    ChallengeStatus,
    OpponentStatus,
)
from .dispute import Dispute, DisputeStatus, DisputeResolution

__all__ = [
    "Base",
    "User",
    "PlatformAccount",
    "UserRole",
    "Wallet",
    "LedgerTransaction",
    "TransactionType",
    "TransactionStatus",
    "Challenge",
    "ChallengeOpponent",
    "Scorecard",
    "VerificationRecord",
    "ChallengeStatus",
    "OpponentStatus",
    "Dispute",
    "DisputeStatus",
    "DisputeResolution",
]
