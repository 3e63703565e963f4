"""
Dispute resolution.

An admin resolution states who should have been paid. The resolver compares
that with what the ledger actually paid out for the challenge:

- same payouts: nothing moves (replay / already correct)
- different: every outstanding reward/fee/refund credit is reversed with an
  ``admin_adjustment`` debit, the settlement round is bumped so fresh
  idempotency keys are used, and the corrected payout is issued

so a challenge never pays out more than one full settlement, however many
times it is resolved.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from stakeapi.database.session import atomic
from stakeapi.models.base import utcnow
from stakeapi.models.challenge import NO_CONTEST_WINNER, Challenge, ChallengeStatus, SettlementOutcome
from stakeapi.models.dispute import Dispute, DisputeResolution, DisputeStatus
from stakeapi.repositories.challenge_repository import ChallengeRepository
from stakeapi.repositories.dispute_repository import DisputeRepository
from stakeapi.schemas.challenge import Payout
from stakeapi.schemas.dispute import (
    DisputeCreate,
    DisputeResolveResponse,
    DisputeResponse,
    DisputeStatsResponse,
)
from stakeapi.schemas.user import User as UserSchema
from stakeapi.schemas.wallet import LedgerTransactionEntry
from stakeapi.services.challenge_state import (
    DISPUTE_RESOLVABLE,
    Participant,
    find_participant,
    participants,
    require_status,
    transition,
)
from stakeapi.services.escrow_service import EscrowService
from stakeapi.services.ledger_service import LedgerService
from stakeapi.utils.money import to_money

logger = logging.getLogger(__name__)

RESOLUTION_OUTCOMES = {
    DisputeResolution.CHALLENGER_WINS: SettlementOutcome.CHALLENGER_WINS,
    DisputeResolution.OPPONENT_WINS: SettlementOutcome.OPPONENT_WINS,
    DisputeResolution.SPLIT: SettlementOutcome.SPLIT,
    DisputeResolution.REFUND: SettlementOutcome.REFUND,
}


def _payout_key(wallet_id: str, type: str, amount) -> Tuple[str, str, str]:
    return wallet_id, type, str(to_money(amount))


def same_payouts(planned: List[Payout], outstanding: List[LedgerTransactionEntry]) -> bool:
    return sorted(_payout_key(p.wallet_id, p.type, p.amount) for p in planned) == sorted(
        _payout_key(e.wallet_id, e.type.value, e.amount) for e in outstanding
    )


class DisputeService:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.repo = DisputeRepository(db)
        self.challenge_repo = ChallengeRepository(db)
        self.ledger = LedgerService(db, settings)
        self.escrow = EscrowService(db, settings, self.ledger)

    def _lock_challenge(self, challenge_id: str) -> Challenge:
        challenge = self.challenge_repo.get_for_update(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        return challenge

    def raise_dispute(
        self, challenge_id: str, user: UserSchema, request: DisputeCreate
    ) -> DisputeResponse:
        with atomic(self.db):
            challenge = self._lock_challenge(challenge_id)
            if find_participant(challenge, user.id) is None:
                raise AuthorizationError("Only participants can dispute this challenge")
            require_status(challenge, *DISPUTE_RESOLVABLE, action="raise a dispute")
            if self.repo.find_open(challenge.id, user.id) is not None:
                raise ConflictError("You already have an open dispute for this challenge")

            dispute = self.repo.add(
                Dispute(
                    challenge_id=challenge.id,
                    raised_by_id=user.id,
                    raised_by_username=user.username,
                    reason=request.reason,
                    evidence=list(request.evidence),
                    status=DisputeStatus.PENDING.value,
                )
            )

        logger.warning(
            f"Dispute {dispute.id} raised on challenge {challenge_id} by {user.username} "
            f"(status {challenge.status})"
        )
        return self.repo.to_schema(dispute)

    def list_disputes(
        self, status: Optional[DisputeStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[DisputeResponse]:
        return self.repo.list_disputes(
            status=status.value if status else None, limit=min(limit, 100), offset=offset
        )

    def get_dispute(self, dispute_id: str) -> DisputeResponse:
        dispute = self.repo.get_by_id(dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    def get_dispute_stats(self) -> DisputeStatsResponse:
        counts = self.repo.count_by_status()
        return DisputeStatsResponse(
            total=sum(counts.values()),
            pending=counts.get(DisputeStatus.PENDING.value, 0),
            reviewed=counts.get(DisputeStatus.REVIEWED.value, 0),
            resolved=counts.get(DisputeStatus.RESOLVED.value, 0),
        )

    def update_dispute_status(
        self, dispute_id: str, status: DisputeStatus, admin_notes: Optional[str] = None
    ) -> DisputeResponse:
        if status == DisputeStatus.RESOLVED:
            raise ValidationError("Use the resolve endpoint to resolve a dispute")
        with atomic(self.db):
            dispute = self.repo.get_for_update(dispute_id)
            if dispute is None:
                raise NotFoundError(f"Dispute {dispute_id} not found")
            if dispute.status == DisputeStatus.RESOLVED.value:
                raise ConflictError("Dispute is already resolved")
            dispute.status = status.value
            if admin_notes is not None:
                dispute.admin_notes = admin_notes
        return self.repo.to_schema(dispute)

    def _winner_for(self, challenge: Challenge, resolution: DisputeResolution) -> Optional[Participant]:
        people = participants(challenge)
        if resolution == DisputeResolution.CHALLENGER_WINS:
            return people[0]
        if resolution == DisputeResolution.OPPONENT_WINS:
            opponents = [p for p in people if not p.is_challenger and p.user_id]
            if not opponents:
                raise ValidationError("Challenge has no participating opponent")
            return opponents[0]
        return None

    def resolve_dispute(
        self,
        dispute_id: str,
        resolution: DisputeResolution,
        admin: UserSchema,
        admin_notes: Optional[str] = None,
    ) -> DisputeResolveResponse:
        """Apply an admin decision to the challenge's money and status.

        Raises:
            NotFoundError: unknown dispute
            InvalidTransition: challenge never became active (or was cancelled)
        """
        outcome = RESOLUTION_OUTCOMES[resolution]
        with atomic(self.db):
            dispute = self.repo.get_for_update(dispute_id)
            if dispute is None:
                raise NotFoundError(f"Dispute {dispute_id} not found")
            challenge = self._lock_challenge(dispute.challenge_id)
            require_status(challenge, *DISPUTE_RESOLVABLE, action="resolve a dispute")

            winner = self._winner_for(challenge, resolution)
            planned = self.escrow.planned_payouts(challenge, winner)
            outstanding = self.escrow.outstanding_releases(challenge.id)

            reversed_ids: List[int] = []
            changed = not (challenge.reward_claimed and same_payouts(planned, outstanding))
            if changed:
                reason = f"dispute {dispute.id}: {resolution.value}"
                for entry in outstanding:
                    reversed_ids.append(entry.id)
                    self.escrow.reverse(challenge, entry, reason)
                if challenge.reward_claimed or outstanding:
                    challenge.settlement_round += 1
                challenge.reward_claimed = False

                if winner is not None:
                    settlement = self.escrow.release_to_winner(challenge, winner, outcome)
                else:
                    settlement = self.escrow.refund_all(
                        challenge, outcome, winner_marker=NO_CONTEST_WINNER
                    )
            else:
                challenge.outcome = outcome.value
                settlement = self.escrow.existing_settlement(challenge)

            transition(challenge, ChallengeStatus.COMPLETED, via_dispute=True)

            now = utcnow()
            for open_dispute in self.repo.open_for_challenge(challenge.id):
                open_dispute.status = DisputeStatus.RESOLVED.value
                open_dispute.resolution = resolution.value
                open_dispute.resolved_by = admin.id
                open_dispute.resolved_at = now
                if admin_notes is not None:
                    open_dispute.admin_notes = admin_notes
            # the dispute being resolved may already have been marked resolved before
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = resolution.value
            dispute.resolved_by = admin.id
            dispute.resolved_at = dispute.resolved_at or now

        logger.warning(
            f"Dispute {dispute_id} resolved as {resolution.value} by {admin.username}: "
            f"challenge={challenge.id} changed={changed} reversed={reversed_ids} "
            f"round={challenge.settlement_round}"
        )
        return DisputeResolveResponse(
            dispute=self.repo.to_schema(dispute),
            settlement=settlement,
            reversed_transaction_ids=reversed_ids,
            changed=changed,
        )
