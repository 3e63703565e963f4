"""
Challenge status transitions.

    pending -> ready-pending -> active
    pending -> cancelled
    active -> scorecard-pending -> completed | scorecard-conflict
    active -> completed                      (direct photographic proof)
    scorecard-conflict -> ai-verification-pending -> completed | ai-conflict

An admin dispute resolution may complete a challenge from any status at or
after ``active``; that edge is only reachable with ``via_dispute=True``.
``completed`` and ``cancelled`` are terminal.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional

from stakeapi.core.exceptions import InvalidTransition
from stakeapi.models.base import utcnow
from stakeapi.models.challenge import Challenge, ChallengeStatus
from stakeapi.schemas.evidence import normalize_username

S = ChallengeStatus

TRANSITIONS: Dict[ChallengeStatus, FrozenSet[ChallengeStatus]] = {
    S.PENDING: frozenset({S.READY_PENDING, S.CANCELLED}),
    S.READY_PENDING: frozenset({S.ACTIVE}),
    S.ACTIVE: frozenset({S.SCORECARD_PENDING, S.COMPLETED}),
    S.SCORECARD_PENDING: frozenset({S.COMPLETED, S.SCORECARD_CONFLICT}),
    S.SCORECARD_CONFLICT: frozenset({S.AI_VERIFICATION_PENDING}),
    S.AI_VERIFICATION_PENDING: frozenset({S.COMPLETED, S.AI_CONFLICT}),
    S.AI_CONFLICT: frozenset(),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

DISPUTE_RESOLVABLE: FrozenSet[ChallengeStatus] = frozenset(
    {
        S.ACTIVE,
        S.SCORECARD_PENDING,
        S.SCORECARD_CONFLICT,
        S.AI_VERIFICATION_PENDING,
        S.AI_CONFLICT,
        S.COMPLETED,
    }
)

TERMINAL: FrozenSet[ChallengeStatus] = frozenset({S.COMPLETED, S.CANCELLED})


def current_status(challenge: Challenge) -> ChallengeStatus:
    return ChallengeStatus(challenge.status)


def can_transition(current: ChallengeStatus, target: ChallengeStatus, via_dispute: bool = False) -> bool:
    if target in TRANSITIONS[current]:
        return True
    return via_dispute and target == S.COMPLETED and current in DISPUTE_RESOLVABLE


def transition(challenge: Challenge, target: ChallengeStatus, via_dispute: bool = False) -> None:
    current = current_status(challenge)
    if current == target and via_dispute and target == S.COMPLETED:
        return
    if not can_transition(current, target, via_dispute):
        raise InvalidTransition(
            f"Cannot move challenge from {current.value} to {target.value}",
            details={"challenge_id": challenge.id, "from": current.value, "to": target.value},
        )
    now = utcnow()
    challenge.status = target.value
    if target == S.ACTIVE:
        challenge.started_at = now
    elif target == S.COMPLETED:
        challenge.completed_at = now
    elif target == S.CANCELLED:
        challenge.cancelled_at = now


def require_status(challenge: Challenge, *allowed: ChallengeStatus, action: str) -> ChallengeStatus:
    current = current_status(challenge)
    if current not in allowed:
        raise InvalidTransition(
            f"Cannot {action} while challenge is {current.value}",
            details={
                "challenge_id": challenge.id,
                "status": current.value,
                "allowed": [s.value for s in allowed],
            },
        )
    return current


@dataclass
class Participant:
    user_id: Optional[str]
    username: str
    is_challenger: bool
    deduction: Decimal
    platform_usernames: Dict[str, str] = field(default_factory=dict)
    ready: bool = False

    @property
    def identities(self) -> List[str]:
        """Login name plus declared gamertags, normalized."""
        names = [normalize_username(self.username)]
        names.extend(normalize_username(n) for n in self.platform_usernames.values() if n)
        return [n for n in names if n]


def participants(challenge: Challenge) -> List[Participant]:
    """Challenger plus every opponent who accepted or joined."""
    result = [
        Participant(
            user_id=challenge.challenger_id,
            username=challenge.challenger_username,
            is_challenger=True,
            deduction=challenge.challenger_deduction or Decimal("0"),
            platform_usernames=dict(challenge.challenger_platform_usernames or {}),
            ready=challenge.challenger_ready,
        )
    ]
    for opp in challenge.opponents:
        if opp.is_participating:
            result.append(
                Participant(
                    user_id=opp.user_id,
                    username=opp.username,
                    is_challenger=False,
                    deduction=opp.deduction or Decimal("0"),
                    platform_usernames=dict(opp.platform_usernames or {}),
                    ready=opp.ready,
                )
            )
    return result


def find_participant(challenge: Challenge, user_id: str) -> Optional[Participant]:
    return next((p for p in participants(challenge) if p.user_id == user_id), None)
