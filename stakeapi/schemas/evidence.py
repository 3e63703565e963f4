"""
Evidence submitted for a challenge outcome.

Two kinds of claims exist and both expose ``claimed_winner()``:

- ScorecardEvidence: a participant's self-reported score line.
- VerificationEvidence: the verification service's reading of uploaded
  screenshots, already score-corrected.

``Evidence`` is a discriminated union on ``kind`` so a list of claims can be
reconciled without isinstance checks on loosely shaped dicts.
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

UNKNOWN_WINNER = "Unknown"


def normalize_username(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class EvidenceKind(str, Enum):
    SCORECARD = "scorecard"
    VERIFICATION = "verification"


class PlayerScore(BaseModel):
    name: str
    score: int


class VerificationContext(BaseModel):
    """Context sent to the verification service along with the images"""

    challenge_id: str
    game: str
    platform: str
    submitted_by: str
    participants: List[str] = Field(default_factory=list, description="Known gamertags")


class VerificationAnalysis(BaseModel):
    """Raw answer from the verification service"""

    claimed_winner: Optional[str] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    raw_score_text: Optional[str] = None
    detected_identities: List[str] = Field(default_factory=list)
    player_scores: List[PlayerScore] = Field(default_factory=list)
    reasoning: Optional[str] = None


class ScorecardEvidence(BaseModel):
    kind: Literal[EvidenceKind.SCORECARD] = EvidenceKind.SCORECARD
    submitted_by: str
    score_a: int
    score_b: int
    player_a_username: str
    player_b_username: str

    class Config:
        from_attributes = True

    @property
    def scores(self) -> Tuple[int, int]:
        return (self.score_a, self.score_b)

    @property
    def is_draw(self) -> bool:
        return self.score_a == self.score_b

    def claimed_winner(self) -> Optional[str]:
        if self.is_draw:
            return None
        if self.score_a > self.score_b:
            return self.player_a_username
        return self.player_b_username

    def agrees_with(self, other: "ScorecardEvidence") -> bool:
        # same score line and the same player credited with it; a tie names nobody
        return self.scores == other.scores and normalize_username(
            self.claimed_winner()
        ) == normalize_username(other.claimed_winner())


class VerificationEvidence(BaseModel):
    kind: Literal[EvidenceKind.VERIFICATION] = EvidenceKind.VERIFICATION
    submitted_by: str
    winner: Optional[str] = None
    confidence: float = 0.0
    detected_identities: List[str] = Field(default_factory=list)

    def claimed_winner(self) -> Optional[str]:
        if normalize_username(self.winner) in ("", normalize_username(UNKNOWN_WINNER)):
            return None
        return self.winner

    def agrees_with(self, other: "VerificationEvidence") -> bool:
        mine, theirs = self.claimed_winner(), other.claimed_winner()
        if mine is None or theirs is None:
            return False
        return normalize_username(mine) == normalize_username(theirs)


Evidence = Annotated[
    Union[ScorecardEvidence, VerificationEvidence], Field(discriminator="kind")
]
