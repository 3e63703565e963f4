from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from stakeapi.models.base import utcnow
from stakeapi.models.challenge import (
    Challenge as ChallengeModel,
    ChallengeOpponent,
    ChallengeStatus,
)
from stakeapi.repositories.base import BaseRepository
from stakeapi.schemas.challenge import ChallengeResponse
from stakeapi.schemas.evidence import normalize_username


class ChallengeRepository(BaseRepository[ChallengeModel, ChallengeResponse]):
    """Challenge rows. Mutation happens in the state machine, under a row lock."""

    def __init__(self, db: Session):
        super().__init__(ChallengeModel, ChallengeResponse, db)

    def to_schema(self, challenge: ChallengeModel) -> ChallengeResponse:
        return self._to_schema(challenge)

    def get_model(self, challenge_id: str) -> Optional[ChallengeModel]:
        return self._get_model(challenge_id)

    def get_for_update(self, challenge_id: str) -> Optional[ChallengeModel]:
        challenge = self._get_model_for_update(challenge_id)
        if challenge is not None:
            # children are re-read too so a second writer sees the first one's rows
            self.db.refresh(challenge, attribute_names=["opponents", "scorecards", "verifications"])
        return challenge

    def add(self, challenge: ChallengeModel) -> ChallengeModel:
        self.db.add(challenge)
        self.db.flush()
        return challenge

    def list_public_open(
        self, exclude_user_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[ChallengeResponse]:
        query = self.db.query(ChallengeModel).filter(
            ChallengeModel.is_public.is_(True),
            ChallengeModel.status == ChallengeStatus.PENDING.value,
        )
        if exclude_user_id:
            query = query.filter(ChallengeModel.challenger_id != exclude_user_id)
        rows = (
            query.order_by(ChallengeModel.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._to_schema(row) for row in rows]

    def list_for_user(
        self,
        user_id: str,
        username: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ChallengeResponse]:
        opponent_of = (
            self.db.query(ChallengeOpponent.challenge_id)
            .filter(
                or_(
                    ChallengeOpponent.user_id == user_id,
                    ChallengeOpponent.username == username,
                )
            )
            .scalar_subquery()
        )
        query = self.db.query(ChallengeModel).filter(
            or_(
                ChallengeModel.challenger_id == user_id,
                ChallengeModel.id.in_(opponent_of),
            )
        )
        if status:
            query = query.filter(ChallengeModel.status == status)
        rows = (
            query.order_by(ChallengeModel.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._to_schema(row) for row in rows]

    def list_expired_timers(self, now=None, limit: int = 100) -> List[str]:
        now = now or utcnow()
        rows = (
            self.db.query(ChallengeModel.id)
            .filter(
                or_(
                    (ChallengeModel.status == ChallengeStatus.SCORECARD_PENDING.value)
                    & (ChallengeModel.scorecard_deadline <= now),
                    (ChallengeModel.status == ChallengeStatus.AI_VERIFICATION_PENDING.value)
                    & (ChallengeModel.verification_deadline <= now),
                )
            )
            .order_by(ChallengeModel.id)
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    def delete_model(self, challenge: ChallengeModel) -> None:
        self.db.delete(challenge)
        self.db.flush()


def find_opponent(challenge: ChallengeModel, username: str) -> Optional[ChallengeOpponent]:
    target = normalize_username(username)
    return next(
        (opp for opp in challenge.opponents if normalize_username(opp.username) == target),
        None,
    )
