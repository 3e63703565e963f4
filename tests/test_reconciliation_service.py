from decimal import Decimal
from unittest.mock import Mock

import pytest

from stakeapi.core.exceptions import WinnerUnresolved
from stakeapi.models.challenge import Challenge, ChallengeOpponent
from stakeapi.schemas.evidence import (
    PlayerScore,
    ScorecardEvidence,
    VerificationAnalysis,
    VerificationEvidence,
)
from stakeapi.schemas.user import User as UserSchema
from stakeapi.services.challenge_state import participants
from stakeapi.services.reconciliation_service import (
    ReconciliationEngine,
    correct_verification,
    extract_score_pair,
    identity_corroborated,
    reconcile,
)


@pytest.fixture
def challenge():
    return Challenge(
        id="c-1",
        challenger_id="u-alice",
        challenger_username="alice",
        challenger_platform_usernames={"psn": "AliceGT"},
        challenger_deduction=Decimal("10"),
        game="FIFA 25",
        platform="psn",
        stake=Decimal("20"),
        opponents=[
            ChallengeOpponent(
                username="bob",
                user_id="u-bob",
                status="accepted",
                deduction=Decimal("10"),
                platform_usernames={"psn": "BobTheBuilder"},
            )
        ],
    )


@pytest.fixture
def user_repo():
    repo = Mock()
    repo.find_by_platform_username.return_value = []
    return repo


@pytest.fixture
def engine(settings, user_repo):
    return ReconciliationEngine(settings, user_repo)


def card(who, a, b, player_a="AliceGT", player_b="BobTheBuilder"):
    return ScorecardEvidence(
        submitted_by=who, score_a=a, score_b=b, player_a_username=player_a, player_b_username=player_b
    )


def verdict(who, winner):
    return VerificationEvidence(submitted_by=who, winner=winner, confidence=0.9)


class TestScoreExtraction:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("6-7", (6, 7)),
            ("Final score 3 : 1", (3, 1)),
            ("2 – 2 after extra time", (2, 2)),
            ("Player1 3-2 Player2", (3, 2)),
            ("Player1 vs Player2", None),
            ("no digits here", None),
            (None, None),
        ],
    )
    def test_extract_score_pair(self, raw, expected):
        assert extract_score_pair(raw) == expected


class TestScoreCorrection:
    """Score evidence outranks narrative text"""

    def test_score_overrides_contradicting_claim(self):
        # Arrange: the service names the 6-scoring player as winner
        analysis = VerificationAnalysis(
            claimed_winner="AliceGT",
            confidence=0.95,
            raw_score_text="6-7",
            detected_identities=["AliceGT", "BobTheBuilder"],
            reasoning="AliceGT clearly won the match",
        )

        # Act
        corrected = correct_verification("alice", analysis, 0.8)

        # Assert
        assert corrected.evidence.winner == "BobTheBuilder"
        assert corrected.reported_winner == "AliceGT"
        assert corrected.score_corrected is True

    def test_player_scores_take_precedence_over_raw_text(self):
        analysis = VerificationAnalysis(
            claimed_winner="AliceGT",
            confidence=0.9,
            raw_score_text="3-1",
            detected_identities=["AliceGT", "BobTheBuilder"],
            player_scores=[PlayerScore(name="AliceGT", score=1), PlayerScore(name="BobTheBuilder", score=3)],
        )
        assert correct_verification("bob", analysis, 0.8).evidence.winner == "BobTheBuilder"

    def test_digits_in_gamertags_do_not_flip_the_winner(self):
        analysis = VerificationAnalysis(
            claimed_winner="Player1",
            confidence=0.9,
            raw_score_text="Player1 3-2 Player2",
            detected_identities=["Player1", "Player2"],
        )
        corrected = correct_verification("alice", analysis, 0.8)
        assert corrected.evidence.winner == "Player1"
        assert corrected.score_corrected is False

    def test_consistent_claim_is_not_marked_corrected(self):
        analysis = VerificationAnalysis(
            claimed_winner="bobthebuilder",
            confidence=0.5,
            raw_score_text="1-4",
            detected_identities=["AliceGT", "BobTheBuilder"],
        )
        corrected = correct_verification("bob", analysis, 0.8)
        assert corrected.evidence.winner == "BobTheBuilder"
        assert corrected.score_corrected is False

    def test_low_confidence_without_score_is_unknown(self):
        analysis = VerificationAnalysis(claimed_winner="AliceGT", confidence=0.4)
        corrected = correct_verification("alice", analysis, 0.8)
        assert corrected.evidence.winner == "Unknown"
        assert corrected.evidence.claimed_winner() is None

    def test_tied_score_falls_back_to_confident_claim(self):
        analysis = VerificationAnalysis(
            claimed_winner="AliceGT",
            confidence=0.9,
            raw_score_text="2-2 (4-3 pens)",
            detected_identities=["AliceGT", "BobTheBuilder"],
        )
        assert correct_verification("alice", analysis, 0.8).evidence.winner == "AliceGT"


class TestReconcile:
    def test_single_claim_never_agrees(self):
        assert reconcile([card("alice", 3, 1)]).agreed is False

    def test_identical_scorecards_agree(self):
        outcome = reconcile([card("alice", 3, 1), card("bob", 3, 1)])
        assert outcome.agreed is True
        assert outcome.winner == "AliceGT"
        assert outcome.draw is False

    def test_differing_scorecards_disagree(self):
        assert reconcile([card("alice", 3, 1), card("bob", 1, 3)]).agreed is False

    def test_same_score_line_crediting_different_players_disagrees(self):
        mine = card("alice", 10, 5, "AliceGT", "BobTheBuilder")
        theirs = card("bob", 10, 5, "BobTheBuilder", "AliceGT")

        assert reconcile([mine, theirs]).agreed is False

    def test_player_labels_compare_case_insensitively(self):
        outcome = reconcile([card("alice", 3, 1), card("bob", 3, 1, " alicegt", "bobthebuilder")])
        assert outcome.agreed is True
        assert outcome.winner == "AliceGT"

    def test_tie_agrees_whatever_the_label_order(self):
        outcome = reconcile([card("alice", 2, 2), card("bob", 2, 2, "BobTheBuilder", "AliceGT")])
        assert outcome.agreed is True
        assert outcome.draw is True

    def test_tied_scorecards_are_a_draw(self):
        outcome = reconcile([card("alice", 2, 2), card("bob", 2, 2)])
        assert outcome.agreed is True
        assert outcome.draw is True

    def test_verification_agreement_ignores_case_and_whitespace(self):
        outcome = reconcile([verdict("alice", "AliceGT"), verdict("bob", "  alicegt ")])
        assert outcome.agreed is True
        assert outcome.winner == "AliceGT"

    def test_unknown_never_agrees(self):
        assert reconcile([verdict("alice", "Unknown"), verdict("bob", "Unknown")]).agreed is False

    def test_mixed_kinds_never_agree(self):
        assert reconcile([card("alice", 3, 1), verdict("bob", "AliceGT")]).agreed is False


class TestIdentity:
    def test_corroborated_by_gamertag_or_login(self, challenge):
        alice, bob = participants(challenge)
        assert identity_corroborated(alice, ["ALICEGT", "someone"]) is True
        assert identity_corroborated(bob, ["bob"]) is True
        assert identity_corroborated(bob, ["AliceGT"]) is False


class TestResolveWinner:
    """Canonical name -> wallet-owning participant"""

    def test_login_username_first(self, engine, challenge):
        assert engine.resolve_winner(challenge, " ALICE ").user_id == "u-alice"

    def test_exact_gamertag(self, engine, challenge):
        assert engine.resolve_winner(challenge, "bobthebuilder").user_id == "u-bob"

    def test_unique_substring_of_gamertag(self, engine, challenge):
        assert engine.resolve_winner(challenge, "TheBuilder").user_id == "u-bob"

    def test_directory_lookup_limited_to_participants(self, engine, challenge, user_repo):
        user_repo.find_by_platform_username.return_value = [UserSchema(id="u-bob", username="bob")]
        assert engine.resolve_winner(challenge, "B0b_Xbox").user_id == "u-bob"

        user_repo.find_by_platform_username.return_value = [UserSchema(id="u-carol", username="carol")]
        with pytest.raises(WinnerUnresolved):
            engine.resolve_winner(challenge, "CarolC")

    @pytest.mark.parametrize("name", [None, "", "Unknown", "stranger"])
    def test_unresolvable_names_fail_closed(self, engine, challenge, name):
        with pytest.raises(WinnerUnresolved) as exc_info:
            engine.resolve_winner(challenge, name)
        assert "contact support" in exc_info.value.message
