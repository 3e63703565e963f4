# Repository layer - Data access with Pydantic responses

from .base import BaseRepository
from .user_repository import UserRepository
from .wallet_repository import WalletRepository
from .challenge_repository import ChallengeRepository
from .dispute_repository import DisputeRepository

__all__ = [
    "BaseRepository",
    "UserRepository",
    "WalletRepository",
    "ChallengeRepository",
    "DisputeRepository",
]
