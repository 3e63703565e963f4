import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.schema import UniqueConstraint

from stakeapi.models.base import BaseModel, BigIntPK, new_id

Money = Numeric(18, 2)

# winner value for completed challenges that paid nobody a reward (tie/split/refund)
NO_CONTEST_WINNER = "__no_contest__"


class ChallengeStatus(str, enum.Enum):
    PENDING = "pending"
    READY_PENDING = "ready-pending"
    ACTIVE = "active"
    SCORECARD_PENDING = "scorecard-pending"
    SCORECARD_CONFLICT = "scorecard-conflict"
    AI_VERIFICATION_PENDING = "ai-verification-pending"
    AI_CONFLICT = "ai-conflict"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OpponentStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    JOINED = "joined"


class SettlementOutcome(str, enum.Enum):
    WIN = "win"
    FORFEIT = "forfeit"
    DRAW = "draw"
    CHALLENGER_WINS = "challenger_wins"
    OPPONENT_WINS = "opponent_wins"
    SPLIT = "split"
    REFUND = "refund"


class VerificationStage(str, enum.Enum):
    VERIFICATION = "verification"  # after a scorecard conflict
    PROOF = "proof"  # direct photographic proof from an active challenge


class VerificationRecordStatus(str, enum.Enum):
    ANALYZING = "analyzing"
    RECORDED = "recorded"
    FAILED = "failed"


class Challenge(BaseModel):
    __tablename__ = "challenges"
    __table_args__ = (
        Index("idx_challenges_status", "status"),
        Index("idx_challenges_challenger", "challenger_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    challenger_id: Mapped[str] = mapped_column(String(64), nullable=False)
    challenger_username: Mapped[str] = mapped_column(String(100), nullable=False)
    challenger_platform_usernames: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=dict
    )
    challenger_ready: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    challenger_deduction: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )

    game: Mapped[str] = mapped_column(String(100), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    stake: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rules: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ChallengeStatus.PENDING.value
    )
    winner: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    winner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reward_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # bumped whenever a dispute reverses and re-issues the payout
    settlement_round: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    scorecard_deadline: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    verification_deadline: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    opponents: Mapped[List["ChallengeOpponent"]] = relationship(
        back_populates="challenge",
        cascade="all, delete-orphan",
        order_by="ChallengeOpponent.id",
        lazy="selectin",
    )
    scorecards: Mapped[List["Scorecard"]] = relationship(
        back_populates="challenge",
        cascade="all, delete-orphan",
        order_by="Scorecard.id",
        lazy="selectin",
    )
    verifications: Mapped[List["VerificationRecord"]] = relationship(
        back_populates="challenge",
        cascade="all, delete-orphan",
        order_by="VerificationRecord.id",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Challenge(id={self.id}, status={self.status}, stake={self.stake})>"


class ChallengeOpponent(BaseModel):
    __tablename__ = "challenge_opponents"
    __table_args__ = (
        UniqueConstraint("challenge_id", "username", name="uq_challenge_opponent"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    challenge_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=OpponentStatus.PENDING.value
    )
    response_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    funds_deducted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deduction: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    platform_usernames: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    ready: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    challenge: Mapped[Challenge] = relationship(back_populates="opponents")

    @property
    def is_participating(self) -> bool:
        return self.status in (OpponentStatus.ACCEPTED.value, OpponentStatus.JOINED.value)


class Scorecard(BaseModel):
    __tablename__ = "challenge_scorecards"
    __table_args__ = (
        UniqueConstraint("challenge_id", "reported_by", name="uq_scorecard_reporter"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    challenge_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    reported_by: Mapped[str] = mapped_column(String(100), nullable=False)
    reported_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    score_a: Mapped[int] = mapped_column(Integer, nullable=False)
    score_b: Mapped[int] = mapped_column(Integer, nullable=False)
    player_a_username: Mapped[str] = mapped_column(String(100), nullable=False)
    player_b_username: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    challenge: Mapped[Challenge] = relationship(back_populates="scorecards")


class VerificationRecord(BaseModel):
    """One verification-service result per (challenge, submitter, stage)."""

    __tablename__ = "challenge_verifications"
    __table_args__ = (
        UniqueConstraint(
            "challenge_id", "submitted_by", "stage", name="uq_verification_submitter"
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    challenge_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    submitted_by: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=VerificationRecordStatus.ANALYZING.value
    )
    evidence_urls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    claimed_winner: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reported_winner: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    raw_score_text: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    detected_identities: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    score_corrected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_signals: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    challenge: Mapped[Challenge] = relationship(back_populates="verifications")
