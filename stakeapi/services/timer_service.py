"""
Submission deadlines and auto-forfeit.

A deadline is checked lazily whenever someone polls the challenge and by the
periodic sweep. If it expired with exactly one submitter, that submitter wins
by forfeit and the other side's escrow goes into the reward pool. A check
against an already-settled challenge does nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import BaseAPIException, NotFoundError
from stakeapi.database.session import atomic
from stakeapi.models.base import as_utc, utcnow
from stakeapi.models.challenge import (
    Challenge,
    ChallengeStatus,
    SettlementOutcome,
    VerificationRecordStatus,
    VerificationStage,
)
from stakeapi.repositories.challenge_repository import ChallengeRepository
from stakeapi.schemas.challenge import SettlementSummary, SweepResponse, TimerStatusResponse
from stakeapi.services.challenge_state import find_participant, transition
from stakeapi.services.escrow_service import EscrowService
from stakeapi.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

TIMER_KINDS = {
    "scorecard": (ChallengeStatus.SCORECARD_PENDING, "scorecard_deadline"),
    "verification": (ChallengeStatus.AI_VERIFICATION_PENDING, "verification_deadline"),
}


@dataclass
class TimerCheck:
    forfeited: bool = False
    settlement: Optional[SettlementSummary] = None


def _expired_kind(challenge: Challenge, now: datetime) -> Optional[str]:
    for kind, (status, field) in TIMER_KINDS.items():
        deadline = as_utc(getattr(challenge, field))
        if challenge.status == status.value and deadline is not None and deadline <= now:
            return kind
    return None


class TimerService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        escrow: Optional[EscrowService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.repo = ChallengeRepository(db)
        self.escrow = escrow or EscrowService(db, settings, LedgerService(db, settings))
        self.clock = clock

    def _sole_submitter_id(self, challenge: Challenge, kind: str) -> Optional[str]:
        if kind == "scorecard":
            submitters = {sc.reported_by_id for sc in challenge.scorecards}
        else:
            submitters = {
                v.submitted_by_id
                for v in challenge.verifications
                if v.stage == VerificationStage.VERIFICATION.value
                and v.status == VerificationRecordStatus.RECORDED.value
            }
        if len(submitters) != 1:
            return None
        return next(iter(submitters))

    def check(self, challenge_id: str) -> TimerCheck:
        """Forfeit the challenge if its running deadline has passed."""
        now = self.clock()
        challenge = self.repo.get_model(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        if _expired_kind(challenge, now) is None:
            return TimerCheck()

        with atomic(self.db):
            challenge = self.repo.get_for_update(challenge_id)
            # re-check under the lock: another request may have settled it
            kind = _expired_kind(challenge, now)
            if kind is None:
                return TimerCheck()

            submitter_id = self._sole_submitter_id(challenge, kind)
            winner = find_participant(challenge, submitter_id) if submitter_id else None
            if winner is None:
                logger.warning(
                    f"Deadline expired on challenge {challenge_id} ({kind}) without a sole submitter"
                )
                return TimerCheck()

            settlement = self.escrow.release_to_winner(challenge, winner, SettlementOutcome.FORFEIT)
            transition(challenge, ChallengeStatus.COMPLETED)

        logger.info(
            f"Challenge {challenge_id} forfeited to {winner.username} after {kind} deadline"
        )
        return TimerCheck(forfeited=True, settlement=settlement)

    def get_timer_status(self, challenge_id: str, kind: str = "scorecard") -> TimerStatusResponse:
        if kind not in TIMER_KINDS:
            raise NotFoundError(f"Unknown timer {kind}")
        result = self.check(challenge_id)

        challenge = self.repo.get_model(challenge_id)
        self.db.refresh(challenge)
        status, field = TIMER_KINDS[kind]
        deadline = as_utc(getattr(challenge, field))
        now = self.clock()
        running = challenge.status == status.value and deadline is not None
        remaining = 0
        if running:
            remaining = max(0, int((deadline - now).total_seconds()))

        return TimerStatusResponse(
            kind=kind,
            status=ChallengeStatus(challenge.status),
            has_timer=deadline is not None,
            deadline=deadline,
            time_remaining_seconds=remaining,
            timer_expired=deadline is not None and deadline <= now,
            forfeited=result.forfeited,
        )

    def sweep_expired(self, limit: int = 100) -> SweepResponse:
        now = self.clock()
        ids = self.repo.list_expired_timers(now, limit=limit)
        forfeited = []
        for challenge_id in ids:
            try:
                if self.check(challenge_id).forfeited:
                    forfeited.append(challenge_id)
            except BaseAPIException as e:
                logger.error(f"Timer sweep failed for challenge {challenge_id}: {e}")
        logger.info(f"Timer sweep checked {len(ids)} challenges, forfeited {len(forfeited)}")
        return SweepResponse(checked=len(ids), forfeited=len(forfeited), challenge_ids=forfeited)
