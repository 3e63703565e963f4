from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator

from stakeapi.models.challenge import ChallengeStatus, OpponentStatus


class ChallengeCreate(BaseModel):
    """Create challenge request"""

    game: str = Field(..., min_length=1, max_length=100, description="Game title")
    platform: str = Field(..., min_length=1, max_length=50, description="Gaming platform")
    stake: Decimal = Field(..., gt=0, max_digits=16, decimal_places=2, description="Declared stake")
    opponents: List[str] = Field(default_factory=list, description="Opponent usernames")
    is_public: bool = Field(False, description="Open for anyone to join")
    rules: Optional[str] = Field(None, max_length=2000)
    platform_username: Optional[str] = Field(
        None, max_length=100, description="Challenger gamertag for this platform"
    )

    @field_validator("opponents")
    @classmethod
    def strip_opponents(cls, value: List[str]) -> List[str]:
        cleaned = [v.strip() for v in value if v and v.strip()]
        if len(set(u.lower() for u in cleaned)) != len(cleaned):
            raise ValueError("duplicate opponent usernames")
        return cleaned


class ChallengeRespond(BaseModel):
    accept: bool = Field(..., description="True to accept, False to decline")
    platform_username: Optional[str] = Field(None, max_length=100)


class ChallengeJoin(BaseModel):
    platform_username: Optional[str] = Field(None, max_length=100)


class ScorecardSubmit(BaseModel):
    """Self-reported result"""

    score_a: int = Field(..., ge=0, description="Player A score")
    score_b: int = Field(..., ge=0, description="Player B score")
    player_a_username: str = Field(..., min_length=1, max_length=100, description="Player A gamertag")
    player_b_username: str = Field(..., min_length=1, max_length=100, description="Player B gamertag")


class VerificationSubmit(BaseModel):
    """Evidence for the verification service"""

    evidence_urls: List[HttpUrl] = Field(..., min_length=1, max_length=10)
    note: Optional[str] = Field(None, max_length=1000)


class OpponentEntry(BaseModel):
    username: str
    user_id: Optional[str] = None
    status: OpponentStatus
    response_at: Optional[datetime] = None
    funds_deducted: bool = False
    deduction: Decimal = Decimal("0")
    platform_usernames: Dict[str, str] = Field(default_factory=dict)
    ready: bool = False

    class Config:
        from_attributes = True


class ScorecardEntry(BaseModel):
    reported_by: str
    score_a: int
    score_b: int
    player_a_username: str
    player_b_username: str
    submitted_at: datetime

    class Config:
        from_attributes = True


class VerificationEntry(BaseModel):
    submitted_by: str
    stage: str
    status: str
    claimed_winner: Optional[str] = None
    reported_winner: Optional[str] = None
    confidence: Optional[float] = None
    raw_score_text: Optional[str] = None
    detected_identities: List[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    score_corrected: bool = False
    submitted_at: datetime

    class Config:
        from_attributes = True


class ChallengeResponse(BaseModel):
    id: str
    challenger_id: str
    challenger_username: str
    challenger_ready: bool = False
    challenger_deduction: Decimal = Decimal("0")
    game: str
    platform: str
    stake: Decimal
    is_public: bool
    rules: Optional[str] = None
    status: ChallengeStatus
    winner: Optional[str] = None
    winner_id: Optional[str] = None
    outcome: Optional[str] = None
    reward_claimed: bool = False
    settlement_round: int = 0
    scorecard_deadline: Optional[datetime] = None
    verification_deadline: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    opponents: List[OpponentEntry] = Field(default_factory=list)
    scorecards: List[ScorecardEntry] = Field(default_factory=list)
    verifications: List[VerificationEntry] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ScorecardStatusResponse(BaseModel):
    status: ChallengeStatus
    has_existing_scorecard: bool
    has_conflict: bool
    requires_proof: bool
    waiting_for_second_player: bool
    scorecards: List[ScorecardEntry]


class TimerStatusResponse(BaseModel):
    kind: str = Field(..., description="scorecard | verification")
    status: ChallengeStatus
    has_timer: bool
    deadline: Optional[datetime] = None
    time_remaining_seconds: int = 0
    timer_expired: bool = False
    forfeited: bool = Field(False, description="True when this check settled the challenge by forfeit")


class Payout(BaseModel):
    wallet_id: str
    type: str
    amount: Decimal


class SettlementSummary(BaseModel):
    """Result of releasing a challenge's escrow"""

    challenge_id: str
    outcome: str
    winner: Optional[str] = None
    winner_id: Optional[str] = None
    pool: Decimal
    payouts: List[Payout] = Field(default_factory=list)
    replayed: bool = Field(False, description="Escrow had already been released")


class SweepResponse(BaseModel):
    checked: int
    forfeited: int
    challenge_ids: List[str] = Field(default_factory=list)


class SubmissionResult(BaseModel):
    """Challenge state after an evidence submission"""

    challenge: ChallengeResponse
    settlement: Optional[SettlementSummary] = None
    message: str


class DeleteResult(BaseModel):
    challenge_id: str
    deleted: bool
    status: ChallengeStatus
