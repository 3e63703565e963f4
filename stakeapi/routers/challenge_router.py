import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from stakeapi.core.auth_middleware import get_current_user, get_current_user_optional
from stakeapi.deps import get_challenge_service, get_dispute_service
from stakeapi.models.challenge import ChallengeStatus
from stakeapi.schemas.challenge import (
    ChallengeCreate,
    ChallengeJoin,
    ChallengeRespond,
    ChallengeResponse,
    DeleteResult,
    ScorecardStatusResponse,
    ScorecardSubmit,
    SettlementSummary,
    SubmissionResult,
    TimerStatusResponse,
    VerificationSubmit,
)
from stakeapi.schemas.dispute import DisputeCreate, DisputeResponse
from stakeapi.schemas.user import User as UserSchema
from stakeapi.services.challenge_service import ChallengeService
from stakeapi.services.dispute_service import DisputeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/challenges", tags=["challenges"])


@router.post("/", response_model=ChallengeResponse)
def create_challenge(
    request: ChallengeCreate,
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ChallengeResponse:
    """Create a challenge. The challenger's share of the stake is escrowed immediately."""
    return service.create_challenge(current_user, request)


@router.get("/public", response_model=List[ChallengeResponse])
def list_public_challenges(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: Optional[UserSchema] = Depends(get_current_user_optional),
    service: ChallengeService = Depends(get_challenge_service),
) -> List[ChallengeResponse]:
    return service.list_public_challenges(current_user, limit=limit, offset=offset)


@router.get("/mine", response_model=List[ChallengeResponse])
def list_my_challenges(
    status: Optional[ChallengeStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> List[ChallengeResponse]:
    return service.list_user_challenges(current_user, status=status, limit=limit, offset=offset)


@router.get("/{challenge_id}", response_model=ChallengeResponse)
def get_challenge(
    challenge_id: str = Path(..., description="Challenge ID"),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ChallengeResponse:
    return service.get_challenge(challenge_id)


@router.post("/{challenge_id}/respond", response_model=ChallengeResponse)
def respond_to_challenge(
    request: ChallengeRespond,
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ChallengeResponse:
    return service.respond(
        challenge_id, current_user, request.accept, platform_username=request.platform_username
    )


@router.post("/{challenge_id}/join", response_model=ChallengeResponse)
def join_challenge(
    request: ChallengeJoin,
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ChallengeResponse:
    return service.join_public_challenge(
        challenge_id, current_user, platform_username=request.platform_username
    )


@router.post("/{challenge_id}/ready", response_model=ChallengeResponse)
def mark_ready(
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ChallengeResponse:
    return service.mark_ready(challenge_id, current_user)


@router.post("/{challenge_id}/cancel", response_model=ChallengeResponse)
def cancel_challenge(
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ChallengeResponse:
    return service.cancel_challenge(challenge_id, current_user)


@router.delete("/{challenge_id}", response_model=DeleteResult)
def delete_challenge(
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> DeleteResult:
    return service.delete_challenge(challenge_id, current_user)


@router.post("/{challenge_id}/scorecards", response_model=SubmissionResult)
def submit_scorecard(
    request: ScorecardSubmit,
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> SubmissionResult:
    return service.submit_scorecard(challenge_id, current_user, request)


@router.get("/{challenge_id}/scorecard-status", response_model=ScorecardStatusResponse)
def get_scorecard_status(
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> ScorecardStatusResponse:
    return service.get_scorecard_status(challenge_id, current_user)


@router.post("/{challenge_id}/verifications", response_model=SubmissionResult)
async def submit_verification(
    request: VerificationSubmit,
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> SubmissionResult:
    """Screenshot evidence after a scorecard conflict."""
    return await service.submit_verification(challenge_id, current_user, request.evidence_urls)


@router.post("/{challenge_id}/proof", response_model=SubmissionResult)
async def submit_proof(
    request: VerificationSubmit,
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> SubmissionResult:
    """Direct photographic proof from an active challenge."""
    return await service.submit_proof(challenge_id, current_user, request.evidence_urls)


@router.get("/{challenge_id}/timer-status", response_model=TimerStatusResponse)
def get_timer_status(
    challenge_id: str = Path(...),
    kind: str = Query("scorecard", pattern="^(scorecard|verification)$"),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> TimerStatusResponse:
    return service.get_timer_status(challenge_id, kind)


@router.post("/{challenge_id}/claim-reward", response_model=SettlementSummary)
def claim_reward(
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
) -> SettlementSummary:
    return service.claim_reward(challenge_id, current_user)


@router.post("/{challenge_id}/disputes", response_model=DisputeResponse)
def raise_dispute(
    request: DisputeCreate,
    challenge_id: str = Path(...),
    current_user: UserSchema = Depends(get_current_user),
    service: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return service.raise_dispute(challenge_id, current_user, request)
