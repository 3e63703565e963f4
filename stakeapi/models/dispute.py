import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stakeapi.models.base import BaseModel, new_id


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"


class DisputeResolution(str, enum.Enum):
    CHALLENGER_WINS = "challenger_wins"
    OPPONENT_WINS = "opponent_wins"
    SPLIT = "split"
    REFUND = "refund"


class Dispute(BaseModel):
    __tablename__ = "disputes"
    __table_args__ = (
        Index("idx_disputes_challenge", "challenge_id"),
        Index("idx_disputes_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    raised_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    raised_by_username: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DisputeStatus.PENDING.value
    )
    resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self):
        return f"<Dispute(id={self.id}, challenge_id={self.challenge_id}, status={self.status})>"
