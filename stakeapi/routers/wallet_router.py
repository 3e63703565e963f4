import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from stakeapi.core.auth_middleware import get_current_user
from stakeapi.deps import get_wallet_service
from stakeapi.models.wallet import TransactionType
from stakeapi.schemas.user import User as UserSchema
from stakeapi.schemas.wallet import (
    DepositRequest,
    IntegrityCheckResponse,
    LedgerResult,
    TransactionHistoryResponse,
    TransactionStatsResponse,
    WalletResponse,
    WithdrawalRequest,
    WithdrawalResponse,
)
from stakeapi.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("/", response_model=WalletResponse)
def get_wallet(
    current_user: UserSchema = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> WalletResponse:
    """Current balance (the wallet is opened on first access)."""
    return service.get_wallet(current_user)


@router.get("/transactions", response_model=TransactionHistoryResponse)
def get_transactions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    type: Optional[TransactionType] = Query(None, description="Filter by transaction type"),
    current_user: UserSchema = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> TransactionHistoryResponse:
    return service.get_transactions(current_user, limit=limit, offset=offset, type=type)


@router.get("/stats", response_model=TransactionStatsResponse)
def get_transaction_stats(
    current_user: UserSchema = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> TransactionStatsResponse:
    return service.get_transaction_stats(current_user)


@router.post("/deposit", response_model=LedgerResult)
async def deposit(
    request: DepositRequest,
    current_user: UserSchema = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> LedgerResult:
    return await service.deposit(current_user, request.amount, request.payment_method)


@router.post("/withdraw", response_model=WithdrawalResponse)
async def withdraw(
    request: WithdrawalRequest,
    current_user: UserSchema = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> WithdrawalResponse:
    return await service.withdraw(current_user, request.amount, request.destination)


@router.get("/integrity", response_model=IntegrityCheckResponse)
def verify_integrity(
    current_user: UserSchema = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> IntegrityCheckResponse:
    return service.verify_integrity(current_user.id)
