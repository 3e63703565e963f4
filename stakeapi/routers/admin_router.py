"""
Admin Router

Admin-only endpoints
- dispute review and resolution
- platform wallet, manual adjustments and payout disbursement
- timer sweep and per-challenge ledger audit
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from stakeapi.core.auth_middleware import create_access_token, require_admin
from stakeapi.deps import (
    get_dispute_service,
    get_timer_service,
    get_user_service,
    get_wallet_service,
)
from stakeapi.models.dispute import DisputeStatus
from stakeapi.schemas.challenge import SweepResponse
from stakeapi.schemas.dispute import (
    DisputeResolveRequest,
    DisputeResolveResponse,
    DisputeResponse,
    DisputeStatsResponse,
    DisputeStatusUpdate,
)
from stakeapi.schemas.user import User as UserSchema, UserCreate, UserTokenResponse
from stakeapi.schemas.wallet import (
    AdminAdjustmentRequest,
    ChallengeLedgerResponse,
    DisburseRequest,
    IntegrityCheckResponse,
    LedgerResult,
    LedgerTransactionEntry,
    PlatformWalletResponse,
)
from stakeapi.services.dispute_service import DisputeService
from stakeapi.services.timer_service import TimerService
from stakeapi.services.user_service import UserService
from stakeapi.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserTokenResponse)
def register_user(
    request: UserCreate,
    admin: UserSchema = Depends(require_admin),
    service: UserService = Depends(get_user_service),
) -> UserTokenResponse:
    """Register a directory user and issue an access token for them."""
    user = service.register_user(request)
    return UserTokenResponse(user=user, access_token=create_access_token(user))


# ---------------------------------------------------------------------------
# disputes
# ---------------------------------------------------------------------------


@router.get("/disputes", response_model=List[DisputeResponse])
def list_disputes(
    status: Optional[DisputeStatus] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    admin: UserSchema = Depends(require_admin),
    service: DisputeService = Depends(get_dispute_service),
) -> List[DisputeResponse]:
    return service.list_disputes(status=status, limit=limit, offset=offset)


@router.get("/disputes/stats", response_model=DisputeStatsResponse)
def get_dispute_stats(
    admin: UserSchema = Depends(require_admin),
    service: DisputeService = Depends(get_dispute_service),
) -> DisputeStatsResponse:
    return service.get_dispute_stats()


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse)
def get_dispute(
    dispute_id: str = Path(...),
    admin: UserSchema = Depends(require_admin),
    service: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return service.get_dispute(dispute_id)


@router.put("/disputes/{dispute_id}/status", response_model=DisputeResponse)
def update_dispute_status(
    request: DisputeStatusUpdate,
    dispute_id: str = Path(...),
    admin: UserSchema = Depends(require_admin),
    service: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return service.update_dispute_status(dispute_id, request.status, request.admin_notes)


@router.post("/disputes/{dispute_id}/resolve", response_model=DisputeResolveResponse)
def resolve_dispute(
    request: DisputeResolveRequest,
    dispute_id: str = Path(...),
    admin: UserSchema = Depends(require_admin),
    service: DisputeService = Depends(get_dispute_service),
) -> DisputeResolveResponse:
    """Reverse any incorrect payout and settle the challenge per the resolution."""
    return service.resolve_dispute(
        dispute_id, request.resolution, admin, admin_notes=request.admin_notes
    )


# ---------------------------------------------------------------------------
# wallets
# ---------------------------------------------------------------------------


@router.get("/platform-wallet", response_model=PlatformWalletResponse)
def get_platform_wallet(
    admin: UserSchema = Depends(require_admin),
    service: WalletService = Depends(get_wallet_service),
) -> PlatformWalletResponse:
    return service.get_platform_wallet()


@router.post("/wallets/adjust", response_model=LedgerResult)
def adjust_wallet(
    request: AdminAdjustmentRequest,
    admin: UserSchema = Depends(require_admin),
    service: WalletService = Depends(get_wallet_service),
) -> LedgerResult:
    return service.admin_adjust(admin, request.user_id, request.amount, request.reason)


@router.get("/wallets/{user_id}/integrity", response_model=IntegrityCheckResponse)
def verify_wallet_integrity(
    user_id: str = Path(...),
    admin: UserSchema = Depends(require_admin),
    service: WalletService = Depends(get_wallet_service),
) -> IntegrityCheckResponse:
    return service.verify_integrity(user_id)


@router.post("/transactions/{transaction_id}/disburse", response_model=LedgerTransactionEntry)
def disburse_withdrawal(
    request: DisburseRequest,
    transaction_id: int = Path(...),
    admin: UserSchema = Depends(require_admin),
    service: WalletService = Depends(get_wallet_service),
) -> LedgerTransactionEntry:
    """Mark a pending withdrawal as paid out."""
    return service.disburse(transaction_id, request.external_id)


# ---------------------------------------------------------------------------
# challenges
# ---------------------------------------------------------------------------


@router.post("/timers/sweep", response_model=SweepResponse)
def sweep_expired_timers(
    limit: int = Query(100, ge=1, le=1000),
    admin: UserSchema = Depends(require_admin),
    service: TimerService = Depends(get_timer_service),
) -> SweepResponse:
    return service.sweep_expired(limit=limit)


@router.get("/challenges/{challenge_id}/ledger", response_model=ChallengeLedgerResponse)
def get_challenge_ledger(
    challenge_id: str = Path(...),
    admin: UserSchema = Depends(require_admin),
    service: WalletService = Depends(get_wallet_service),
) -> ChallengeLedgerResponse:
    return service.get_challenge_ledger(challenge_id)
