"""
Winner reconciliation.

Turns independent claims about a challenge outcome into one canonical winner:

1. Every name is normalized (trim + lowercase) before comparison.
2. Verification results are score-corrected first. When the raw score line
   yields two numbers, the higher-scoring identified player wins, whatever the
   free-text ``claimed_winner`` or reasoning says.
3. Two claims of the same kind are compared. Scorecards agree only on an
   identical score line that credits the same player; verification claims
   agree on the same normalized winner, and an Unknown winner never agrees
   with anything.
4. The canonical name is mapped to a participant by login name, then declared
   gamertag (exact, then unique substring), then a directory lookup. If no
   participant matches, ``WinnerUnresolved`` is raised and nothing is paid.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from stakeapi.config import Settings
from stakeapi.core.exceptions import WinnerUnresolved
from stakeapi.models.challenge import Challenge
from stakeapi.repositories.user_repository import UserRepository
from stakeapi.schemas.evidence import (
    UNKNOWN_WINNER,
    Evidence,
    ScorecardEvidence,
    VerificationAnalysis,
    VerificationEvidence,
    normalize_username,
)
from stakeapi.services.challenge_state import Participant, participants

logger = logging.getLogger(__name__)

# a score stands on its own; digits inside gamertags like "Player1" are not scores
SCORE_PATTERN = re.compile(r"(?<!\w)(\d+)\s*[-:\u2013]\s*(\d+)(?!\w)")


def extract_score_pair(raw: Optional[str]) -> Optional[Tuple[int, int]]:
    if not raw:
        return None
    match = SCORE_PATTERN.search(raw)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def score_implied_winner(analysis: VerificationAnalysis) -> Optional[str]:
    """Winner according to the numbers alone, or None if they don't decide it."""
    if len(analysis.player_scores) >= 2:
        ranked = sorted(analysis.player_scores, key=lambda p: p.score, reverse=True)
        if ranked[0].score > ranked[1].score:
            return ranked[0].name
        return None

    pair = extract_score_pair(analysis.raw_score_text)
    if pair is None or len(analysis.detected_identities) < 2:
        return None
    first, second = pair
    if first == second:
        return None
    # raw score text lists players in the order they were detected
    return analysis.detected_identities[0] if first > second else analysis.detected_identities[1]


@dataclass
class CorrectedVerification:
    evidence: VerificationEvidence
    reported_winner: Optional[str]
    score_corrected: bool


def correct_verification(
    submitted_by: str, analysis: VerificationAnalysis, confidence_threshold: float
) -> CorrectedVerification:
    reported = analysis.claimed_winner
    implied = score_implied_winner(analysis)

    if implied is not None:
        winner = implied
        corrected = bool(reported) and normalize_username(implied) != normalize_username(reported)
        if corrected:
            logger.warning(
                f"Verification by {submitted_by} named {reported!r} but score "
                f"{analysis.raw_score_text!r} implies {implied!r}; using score"
            )
    elif reported and analysis.confidence >= confidence_threshold:
        winner, corrected = reported, False
    else:
        winner, corrected = UNKNOWN_WINNER, False

    return CorrectedVerification(
        evidence=VerificationEvidence(
            submitted_by=submitted_by,
            winner=winner,
            confidence=analysis.confidence,
            detected_identities=list(analysis.detected_identities),
        ),
        reported_winner=reported,
        score_corrected=corrected,
    )


@dataclass
class Reconciliation:
    agreed: bool
    winner: Optional[str] = None
    draw: bool = False


def reconcile(claims: Sequence[Evidence]) -> Reconciliation:
    """Compare every claim against the first one.

    Returns agreed=False as soon as any pair disagrees. When all agree, the
    shared winner is returned, or draw=True for tied scorecards.
    """
    if len(claims) < 2:
        return Reconciliation(agreed=False)

    first = claims[0]
    for other in claims[1:]:
        if type(other) is not type(first) or not first.agrees_with(other):
            return Reconciliation(agreed=False)

    if isinstance(first, ScorecardEvidence) and first.is_draw:
        return Reconciliation(agreed=True, draw=True)
    return Reconciliation(agreed=True, winner=first.claimed_winner())


def identity_corroborated(participant: Participant, detected: Sequence[str]) -> bool:
    """True if one of the participant's names shows up among the detected players."""
    seen = [normalize_username(d) for d in detected if d]
    for name in participant.identities:
        for d in seen:
            if name == d or (len(name) >= 3 and (name in d or d in name)):
                return True
    return False


class ReconciliationEngine:
    def __init__(self, settings: Settings, user_repo: UserRepository):
        self.settings = settings
        self.user_repo = user_repo

    def correct(self, submitted_by: str, analysis: VerificationAnalysis) -> CorrectedVerification:
        return correct_verification(
            submitted_by, analysis, self.settings.PROOF_CONFIDENCE_THRESHOLD
        )

    def qualifies_for_direct_settle(
        self, claimant: Participant, corrected: CorrectedVerification
    ) -> bool:
        return (
            corrected.evidence.claimed_winner() is not None
            and corrected.evidence.confidence >= self.settings.PROOF_CONFIDENCE_THRESHOLD
            and identity_corroborated(claimant, corrected.evidence.detected_identities)
        )

    def resolve_winner(self, challenge: Challenge, winner_name: Optional[str]) -> Participant:
        """Map a canonical winner name onto a wallet-owning participant."""
        people = [p for p in participants(challenge) if p.user_id]
        target = normalize_username(winner_name)

        if target and target != normalize_username(UNKNOWN_WINNER):
            # (a) login username
            for person in people:
                if normalize_username(person.username) == target:
                    return person

            # (b) declared gamertags: exact, then a unique substring hit
            exact = [
                p for p in people
                if any(normalize_username(n) == target for n in p.platform_usernames.values())
            ]
            if len(exact) == 1:
                return exact[0]
            partial = _unique_substring_matches(people, target)
            if len(exact) == 0 and len(partial) == 1:
                return partial[0]

            # (c) directory lookup, only if it lands on a participant
            by_id = {p.user_id: p for p in people}
            hits = [
                by_id[user.id]
                for user in self.user_repo.find_by_platform_username(target)
                if user.id in by_id
            ]
            if len(hits) == 1:
                return hits[0]

        logger.error(
            f"Winner unresolved for challenge {challenge.id}: {winner_name!r} "
            f"(participants: {[p.username for p in people]})"
        )
        raise WinnerUnresolved(
            details={"challenge_id": challenge.id, "winner": winner_name}
        )


def _unique_substring_matches(people: List[Participant], target: str) -> List[Participant]:
    if len(target) < 3:
        return []
    hits = []
    for person in people:
        names = [normalize_username(n) for n in person.platform_usernames.values() if n]
        if any(target in n or n in target for n in names if len(n) >= 3):
            hits.append(person)
    return hits
