"""
Escrow / stake manager.

Each participant pre-funds ``stake * STAKE_FUNDING_RATIO`` when they enter a
challenge. The pool is the sum of the recorded deductions, and it leaves
escrow exactly once per settlement round:

- win/forfeit: winner gets ``pool * WINNER_REWARD_RATIO``, platform gets the rest
- draw/split/refund/cancel: each participant gets back their own deduction

Every ledger call here uses ``commit=False``; the state machine commits the
status change and the money movement together.

Idempotency keys:
    challenge:{id}:stake:{user}
    challenge:{id}:r{round}:reward | fee | refund:{user}
    challenge:{id}:reversal:{tx_id}
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import AlreadySettled
from stakeapi.models.challenge import Challenge, ChallengeOpponent, SettlementOutcome
from stakeapi.models.wallet import TransactionType
from stakeapi.schemas.challenge import Payout, SettlementSummary
from stakeapi.schemas.wallet import LedgerTransactionEntry
from stakeapi.services.challenge_state import Participant, participants
from stakeapi.services.ledger_service import LedgerService
from stakeapi.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)

RELEASE_TYPES = (
    TransactionType.CHALLENGE_REWARD,
    TransactionType.ADMIN_FEE,
    TransactionType.REFUND,
)


class EscrowService:
    def __init__(self, db: Session, settings: Settings, ledger: Optional[LedgerService] = None):
        self.db = db
        self.settings = settings
        self.ledger = ledger or LedgerService(db, settings)

    # ------------------------------------------------------------------
    # amounts
    # ------------------------------------------------------------------

    def required_stake(self, stake: Decimal) -> Decimal:
        return to_money(Decimal(stake) * self.settings.STAKE_FUNDING_RATIO)

    def pool(self, challenge: Challenge) -> Decimal:
        return to_money(sum((p.deduction for p in participants(challenge)), ZERO))

    def split_pool(self, pool: Decimal) -> Tuple[Decimal, Decimal]:
        reward = to_money(pool * self.settings.WINNER_REWARD_RATIO)
        # fee takes the rounding remainder so reward + fee == pool exactly
        return reward, to_money(pool - reward)

    # ------------------------------------------------------------------
    # funding
    # ------------------------------------------------------------------

    def fund_challenger(self, challenge: Challenge) -> Decimal:
        amount = self.required_stake(challenge.stake)
        self.ledger.debit(
            challenge.challenger_id,
            amount,
            TransactionType.CHALLENGE_DEDUCTION,
            reference=challenge.id,
            description=f"Stake for {challenge.game} challenge",
            metadata={"role": "challenger", "stake": str(challenge.stake)},
            idempotency_key=f"challenge:{challenge.id}:stake:{challenge.challenger_id}",
            commit=False,
        )
        challenge.challenger_deduction = amount
        return amount

    def fund_opponent(self, challenge: Challenge, opponent: ChallengeOpponent) -> Decimal:
        amount = self.required_stake(challenge.stake)
        self.ledger.debit(
            opponent.user_id,
            amount,
            TransactionType.CHALLENGE_DEDUCTION,
            reference=challenge.id,
            description=f"Stake for {challenge.game} challenge vs {challenge.challenger_username}",
            metadata={"role": "opponent", "stake": str(challenge.stake)},
            idempotency_key=f"challenge:{challenge.id}:stake:{opponent.user_id}",
            commit=False,
        )
        opponent.deduction = amount
        opponent.funds_deducted = True
        return amount

    # ------------------------------------------------------------------
    # release
    # ------------------------------------------------------------------

    def _guard(self, challenge: Challenge) -> None:
        if challenge.reward_claimed:
            raise AlreadySettled(
                details={"challenge_id": challenge.id, "winner": challenge.winner}
            )

    def _key(self, challenge: Challenge, suffix: str) -> str:
        return f"challenge:{challenge.id}:r{challenge.settlement_round}:{suffix}"

    def planned_payouts(
        self, challenge: Challenge, winner: Optional[Participant]
    ) -> List[Payout]:
        """Payouts a settlement would issue: to ``winner`` or, if None, refunds."""
        if winner is not None:
            reward, fee = self.split_pool(self.pool(challenge))
            payouts = [
                Payout(wallet_id=winner.user_id, type=TransactionType.CHALLENGE_REWARD.value, amount=reward)
            ]
            if fee > ZERO:
                payouts.append(
                    Payout(
                        wallet_id=self.settings.PLATFORM_WALLET_ID,
                        type=TransactionType.ADMIN_FEE.value,
                        amount=fee,
                    )
                )
            return payouts
        return [
            Payout(wallet_id=p.user_id, type=TransactionType.REFUND.value, amount=to_money(p.deduction))
            for p in participants(challenge)
            if p.deduction > ZERO
        ]

    def release_to_winner(
        self, challenge: Challenge, winner: Participant, outcome: SettlementOutcome
    ) -> SettlementSummary:
        """Credit reward + admin fee. Raises AlreadySettled on replay."""
        self._guard(challenge)
        pool = self.pool(challenge)
        reward, fee = self.split_pool(pool)

        if reward > ZERO:
            self.ledger.credit(
                winner.user_id,
                reward,
                TransactionType.CHALLENGE_REWARD,
                reference=challenge.id,
                description=f"Won {challenge.game} challenge ({outcome.value})",
                metadata={"pool": str(pool), "outcome": outcome.value},
                idempotency_key=self._key(challenge, "reward"),
                commit=False,
            )
        if fee > ZERO:
            self.ledger.credit(
                self.settings.PLATFORM_WALLET_ID,
                fee,
                TransactionType.ADMIN_FEE,
                reference=challenge.id,
                description=f"Platform fee for challenge {challenge.id}",
                metadata={"pool": str(pool), "winner": winner.username},
                idempotency_key=self._key(challenge, "fee"),
                commit=False,
            )

        challenge.winner = winner.username
        challenge.winner_id = winner.user_id
        challenge.outcome = outcome.value
        challenge.reward_claimed = True
        logger.info(
            f"Challenge {challenge.id} settled to {winner.username}: pool={pool} reward={reward} fee={fee}"
        )
        return SettlementSummary(
            challenge_id=challenge.id,
            outcome=outcome.value,
            winner=winner.username,
            winner_id=winner.user_id,
            pool=pool,
            payouts=self.planned_payouts(challenge, winner),
        )

    def refund_all(
        self, challenge: Challenge, outcome: SettlementOutcome, winner_marker: Optional[str] = None
    ) -> SettlementSummary:
        """Return each participant's own recorded deduction."""
        self._guard(challenge)
        payouts = self.planned_payouts(challenge, None)
        for payout in payouts:
            self.ledger.credit(
                payout.wallet_id,
                payout.amount,
                TransactionType.REFUND,
                reference=challenge.id,
                description=f"Refund for {challenge.game} challenge ({outcome.value})",
                metadata={"outcome": outcome.value},
                idempotency_key=self._key(challenge, f"refund:{payout.wallet_id}"),
                commit=False,
            )

        challenge.reward_claimed = True
        challenge.outcome = outcome.value
        if winner_marker is not None:
            challenge.winner = winner_marker
            challenge.winner_id = None
        logger.info(
            f"Challenge {challenge.id} refunded ({outcome.value}): "
            + ", ".join(f"{p.wallet_id}={p.amount}" for p in payouts)
        )
        return SettlementSummary(
            challenge_id=challenge.id,
            outcome=outcome.value,
            winner=challenge.winner,
            pool=self.pool(challenge),
            payouts=payouts,
        )

    def existing_settlement(self, challenge: Challenge) -> SettlementSummary:
        """Describe the payout already issued (for idempotent replays)."""
        outstanding = self.outstanding_releases(challenge.id)
        return SettlementSummary(
            challenge_id=challenge.id,
            outcome=challenge.outcome or "",
            winner=challenge.winner,
            winner_id=challenge.winner_id,
            pool=self.pool(challenge),
            payouts=[
                Payout(wallet_id=tx.wallet_id, type=tx.type.value, amount=tx.amount)
                for tx in outstanding
            ],
            replayed=True,
        )

    # ------------------------------------------------------------------
    # reversal
    # ------------------------------------------------------------------

    def outstanding_releases(self, challenge_id: str) -> List[LedgerTransactionEntry]:
        """Reward/fee/refund credits for a challenge that have not been reversed."""
        entries = self.ledger.transactions_for_reference(challenge_id)
        reversed_ids = {
            e.metadata.get("reverses")
            for e in entries
            if e.type == TransactionType.ADMIN_ADJUSTMENT and e.metadata.get("reverses")
        }
        return [
            e
            for e in entries
            if e.type in RELEASE_TYPES and e.amount > ZERO and e.id not in reversed_ids
        ]

    def reverse(self, challenge: Challenge, entry: LedgerTransactionEntry, reason: str) -> LedgerTransactionEntry:
        """Claw back one credit with an admin_adjustment debit (may overdraw)."""
        result = self.ledger.debit(
            entry.wallet_id,
            entry.amount,
            TransactionType.ADMIN_ADJUSTMENT,
            reference=challenge.id,
            description=f"Reversal of {entry.type.value} #{entry.id}: {reason}",
            metadata={"reverses": entry.id, "reason": reason},
            idempotency_key=f"challenge:{challenge.id}:reversal:{entry.id}",
            allow_negative=True,
            commit=False,
        )
        logger.warning(
            f"Reversed {entry.type.value} #{entry.id} on challenge {challenge.id}: "
            f"wallet={entry.wallet_id} amount={entry.amount} balance={result.balance}"
        )
        return result.transaction

    def net_position(self, challenge_id: str) -> Dict[str, Decimal]:
        """escrowed vs released, net of reversals"""
        entries = self.ledger.transactions_for_reference(challenge_id)
        escrowed = sum(
            (-e.amount for e in entries if e.type == TransactionType.CHALLENGE_DEDUCTION), ZERO
        )
        released = sum((e.amount for e in entries if e.type in RELEASE_TYPES), ZERO)
        reversed_total = sum(
            (-e.amount for e in entries if e.type == TransactionType.ADMIN_ADJUSTMENT), ZERO
        )
        return {
            "escrowed": to_money(escrowed),
            "released": to_money(released - reversed_total),
        }
