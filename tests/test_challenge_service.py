from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from stakeapi.core.exceptions import (
    AuthorizationError,
    DuplicateSubmission,
    InsufficientFunds,
    InvalidTransition,
    ValidationError,
)
from stakeapi.models.challenge import (
    NO_CONTEST_WINNER,
    Challenge,
    ChallengeStatus,
    OpponentStatus,
)
from stakeapi.schemas.challenge import ChallengeCreate, ScorecardSubmit
from stakeapi.services.challenge_service import ChallengeService


def scorecard(a, b, player_a="AliceGT", player_b="BobTheBuilder"):
    return ScorecardSubmit(score_a=a, score_b=b, player_a_username=player_a, player_b_username=player_b)


class TestCreateAndRespond:
    """Creation, acceptance, decline and cancellation"""

    def test_create_escrows_half_the_stake(self, make_challenge, balance):
        # Act
        challenge = make_challenge(stake="20")

        # Assert
        assert challenge.status == ChallengeStatus.PENDING
        assert challenge.challenger_deduction == Decimal("10.00")
        assert challenge.challenger_platform_usernames == {"psn": "AliceGT"}
        assert [o.username for o in challenge.opponents] == ["bob"]
        assert balance("u-alice") == Decimal("90")

    def test_create_with_insufficient_funds_leaves_nothing_behind(self, make_challenge, db, balance):
        with pytest.raises(InsufficientFunds):
            make_challenge(stake="300")

        assert db.query(Challenge).count() == 0
        assert balance("u-alice") == Decimal("100")

    def test_create_validates_opponents(self, challenge_service, users):
        with pytest.raises(ValidationError):
            challenge_service.create_challenge(
                users["alice"],
                ChallengeCreate(game="FIFA 25", platform="psn", stake=Decimal("10"), opponents=["alice"]),
            )
        with pytest.raises(ValidationError):
            challenge_service.create_challenge(
                users["alice"],
                ChallengeCreate(game="FIFA 25", platform="psn", stake=Decimal("10")),
            )

    def test_accept_funds_opponent_and_moves_to_ready_pending(self, challenge_service, make_challenge, users, balance):
        challenge = make_challenge()

        result = challenge_service.respond(challenge.id, users["bob"], accept=True)

        assert result.status == ChallengeStatus.READY_PENDING
        assert result.opponents[0].status == OpponentStatus.ACCEPTED
        assert result.opponents[0].funds_deducted is True
        assert result.opponents[0].platform_usernames == {"psn": "BobTheBuilder"}
        assert balance("u-bob") == Decimal("90")

    def test_accept_waits_for_every_opponent(self, challenge_service, make_challenge, users):
        challenge = make_challenge(opponents=("bob", "carol"))

        result = challenge_service.respond(challenge.id, users["bob"], accept=True)
        assert result.status == ChallengeStatus.PENDING

        result = challenge_service.respond(challenge.id, users["carol"], accept=True)
        assert result.status == ChallengeStatus.READY_PENDING

    def test_accept_without_funds_keeps_challenge_pending(self, challenge_service, make_challenge, users, balance):
        challenge = make_challenge(stake="100")
        # bob spends most of his balance on another challenge first
        make_challenge(stake="120", opponents=("carol",), challenger="bob")
        assert balance("u-bob") == Decimal("40")

        with pytest.raises(InsufficientFunds):
            challenge_service.respond(challenge.id, users["bob"], accept=True)

        reloaded = challenge_service.get_challenge(challenge.id)
        assert reloaded.status == ChallengeStatus.PENDING
        assert reloaded.opponents[0].status == OpponentStatus.PENDING
        assert reloaded.opponents[0].funds_deducted is False
        assert balance("u-bob") == Decimal("40")

    def test_decline_refunds_every_deduction_and_cancels(self, challenge_service, make_challenge, users, balance):
        challenge = make_challenge(opponents=("bob", "carol"))
        challenge_service.respond(challenge.id, users["bob"], accept=True)

        result = challenge_service.respond(challenge.id, users["carol"], accept=False)

        assert result.status == ChallengeStatus.CANCELLED
        assert balance("u-alice") == Decimal("100")
        assert balance("u-bob") == Decimal("100")
        assert balance("u-carol") == Decimal("100")

    def test_second_response_is_rejected(self, challenge_service, make_challenge, users):
        challenge = make_challenge(opponents=("bob", "carol"))
        challenge_service.respond(challenge.id, users["bob"], accept=True)

        with pytest.raises(InvalidTransition):
            challenge_service.respond(challenge.id, users["bob"], accept=True)

    def test_uninvited_user_cannot_respond(self, challenge_service, make_challenge, users):
        challenge = make_challenge()
        with pytest.raises(AuthorizationError):
            challenge_service.respond(challenge.id, users["carol"], accept=True)

    def test_cancel_refunds_challenger(self, challenge_service, make_challenge, users, balance):
        challenge = make_challenge()

        with pytest.raises(AuthorizationError):
            challenge_service.cancel_challenge(challenge.id, users["bob"])
        result = challenge_service.cancel_challenge(challenge.id, users["alice"])

        assert result.status == ChallengeStatus.CANCELLED
        assert balance("u-alice") == Decimal("100")
        with pytest.raises(InvalidTransition):
            challenge_service.cancel_challenge(challenge.id, users["alice"])

    def test_delete_keeps_row_once_money_moved(self, challenge_service, make_challenge, users, balance):
        challenge = make_challenge()

        result = challenge_service.delete_challenge(challenge.id, users["alice"])

        assert result.deleted is False
        assert result.status == ChallengeStatus.CANCELLED
        assert balance("u-alice") == Decimal("100")


class TestPublicChallenges:
    def test_single_joiner_makes_it_ready(self, challenge_service, make_challenge, users, balance):
        challenge = make_challenge(opponents=(), is_public=True)
        assert [c.id for c in challenge_service.list_public_challenges(users["bob"])] == [challenge.id]
        assert challenge_service.list_public_challenges(users["alice"]) == []

        result = challenge_service.join_public_challenge(challenge.id, users["bob"])

        assert result.status == ChallengeStatus.READY_PENDING
        assert result.opponents[0].status == OpponentStatus.JOINED
        assert balance("u-bob") == Decimal("90")
        with pytest.raises(InvalidTransition):
            challenge_service.join_public_challenge(challenge.id, users["carol"])

    def test_challenger_cannot_join_own_challenge(self, challenge_service, make_challenge, users):
        challenge = make_challenge(opponents=(), is_public=True)
        with pytest.raises(ValidationError):
            challenge_service.join_public_challenge(challenge.id, users["alice"])

    def test_private_challenge_cannot_be_joined(self, challenge_service, make_challenge, users):
        challenge = make_challenge()
        with pytest.raises(AuthorizationError):
            challenge_service.join_public_challenge(challenge.id, users["carol"])


class TestReady:
    def test_active_only_after_everyone_is_ready(self, challenge_service, make_challenge, users):
        challenge = make_challenge()
        challenge_service.respond(challenge.id, users["bob"], accept=True)

        first = challenge_service.mark_ready(challenge.id, users["alice"])
        second = challenge_service.mark_ready(challenge.id, users["bob"])

        assert first.status == ChallengeStatus.READY_PENDING
        assert second.status == ChallengeStatus.ACTIVE
        assert second.started_at is not None

    def test_ready_before_acceptance_is_invalid(self, challenge_service, make_challenge, users):
        challenge = make_challenge()
        with pytest.raises(InvalidTransition):
            challenge_service.mark_ready(challenge.id, users["alice"])

    def test_user_challenge_listing(self, challenge_service, active_challenge, users):
        challenge = active_challenge()
        assert [c.id for c in challenge_service.list_user_challenges(users["bob"])] == [challenge.id]
        assert challenge_service.list_user_challenges(users["carol"]) == []
        assert challenge_service.list_user_challenges(users["alice"], status=ChallengeStatus.PENDING) == []


class TestScorecards:
    """Self-reported results"""

    def test_matching_scorecards_settle_19_and_1(self, challenge_service, active_challenge, users, balance, settings):
        # Arrange
        challenge = active_challenge(stake="20")

        # Act
        first = challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(10, 5))
        second = challenge_service.submit_scorecard(challenge.id, users["bob"], scorecard(10, 5))

        # Assert
        assert first.challenge.status == ChallengeStatus.SCORECARD_PENDING
        assert first.challenge.scorecard_deadline is not None
        assert first.settlement is None
        assert second.challenge.status == ChallengeStatus.COMPLETED
        assert second.challenge.winner == "alice"
        assert second.challenge.winner_id == "u-alice"
        assert second.challenge.reward_claimed is True
        assert second.settlement.pool == Decimal("20.00")
        assert balance("u-alice") == Decimal("109")
        assert balance("u-bob") == Decimal("90")
        assert balance(settings.PLATFORM_WALLET_ID) == Decimal("1")

    def test_differing_scorecards_conflict_without_moving_money(self, challenge_service, active_challenge, users, balance):
        challenge = active_challenge()

        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(10, 5))
        result = challenge_service.submit_scorecard(challenge.id, users["bob"], scorecard(5, 10))

        assert result.challenge.status == ChallengeStatus.SCORECARD_CONFLICT
        assert result.settlement is None
        assert balance("u-alice") == Decimal("90")
        assert balance("u-bob") == Decimal("90")

        status = challenge_service.get_scorecard_status(challenge.id, users["alice"])
        assert status.has_conflict is True
        assert status.requires_proof is True
        assert len(status.scorecards) == 2

    def test_same_winner_but_different_score_still_conflicts(self, challenge_service, active_challenge, users):
        challenge = active_challenge()

        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(3, 1))
        result = challenge_service.submit_scorecard(challenge.id, users["bob"], scorecard(3, 2))

        assert result.challenge.status == ChallengeStatus.SCORECARD_CONFLICT

    def test_same_score_under_swapped_labels_conflicts(self, challenge_service, active_challenge, users, balance):
        challenge = active_challenge(stake="20")

        challenge_service.submit_scorecard(
            challenge.id, users["alice"], scorecard(10, 5, "AliceGT", "BobTheBuilder")
        )
        result = challenge_service.submit_scorecard(
            challenge.id, users["bob"], scorecard(10, 5, "BobTheBuilder", "AliceGT")
        )

        # each report credits its own author, so nobody is paid
        assert result.challenge.status == ChallengeStatus.SCORECARD_CONFLICT
        assert result.settlement is None
        assert balance("u-alice") == Decimal("90")
        assert balance("u-bob") == Decimal("90")

    def test_second_writer_sees_first_scorecard_from_a_stale_session(
        self, engine, challenge_service, active_challenge, users, settings, verification_client, clock, balance
    ):
        # Arrange
        challenge = active_challenge(stake="20")
        Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        other_db = Session()
        stale = other_db.get(Challenge, challenge.id)
        assert stale.status == ChallengeStatus.ACTIVE.value
        assert len(stale.scorecards) == 0
        other_service = ChallengeService(
            other_db, settings, verification_client=verification_client, clock=clock
        )

        # Act
        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(3, 1))
        result = other_service.submit_scorecard(challenge.id, users["bob"], scorecard(3, 1))
        other_db.close()

        # Assert
        assert result.challenge.status == ChallengeStatus.COMPLETED
        assert result.challenge.winner == "alice"
        assert len(result.challenge.scorecards) == 2
        assert balance("u-alice") == Decimal("109")

    def test_tied_scorecards_refund_as_draw(self, challenge_service, active_challenge, users, balance, settings):
        challenge = active_challenge()

        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(2, 2))
        result = challenge_service.submit_scorecard(challenge.id, users["bob"], scorecard(2, 2))

        assert result.challenge.status == ChallengeStatus.COMPLETED
        assert result.challenge.winner == NO_CONTEST_WINNER
        assert result.challenge.outcome == "draw"
        assert balance("u-alice") == Decimal("100")
        assert balance("u-bob") == Decimal("100")
        assert balance(settings.PLATFORM_WALLET_ID) == Decimal("0")

    def test_duplicate_scorecard_is_rejected(self, challenge_service, active_challenge, users):
        challenge = active_challenge()
        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(1, 0))

        with pytest.raises(DuplicateSubmission):
            challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(1, 0))

        status = challenge_service.get_scorecard_status(challenge.id, users["alice"])
        assert status.waiting_for_second_player is True

    def test_scorecard_before_active_is_invalid(self, challenge_service, make_challenge, users):
        challenge = make_challenge()
        with pytest.raises(InvalidTransition):
            challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(1, 0))

    def test_outsider_cannot_submit(self, challenge_service, active_challenge, users):
        challenge = active_challenge()
        with pytest.raises(AuthorizationError):
            challenge_service.submit_scorecard(challenge.id, users["carol"], scorecard(1, 0))


class TestClaimReward:
    def test_claim_after_settlement_is_an_idempotent_replay(self, challenge_service, active_challenge, users, balance):
        challenge = active_challenge()
        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(4, 1))
        challenge_service.submit_scorecard(challenge.id, users["bob"], scorecard(4, 1))

        first = challenge_service.claim_reward(challenge.id, users["alice"])
        second = challenge_service.claim_reward(challenge.id, users["alice"])

        assert first.replayed is True
        assert second.replayed is True
        assert {(p.wallet_id, p.amount) for p in second.payouts} == {
            ("u-alice", Decimal("19.00")),
            ("platform", Decimal("1.00")),
        }
        assert balance("u-alice") == Decimal("109")

    def test_loser_cannot_claim(self, challenge_service, active_challenge, users):
        challenge = active_challenge()
        challenge_service.submit_scorecard(challenge.id, users["alice"], scorecard(4, 1))
        challenge_service.submit_scorecard(challenge.id, users["bob"], scorecard(4, 1))

        with pytest.raises(AuthorizationError):
            challenge_service.claim_reward(challenge.id, users["bob"])

    def test_claim_before_completion_is_invalid(self, challenge_service, active_challenge, users):
        challenge = active_challenge()
        with pytest.raises(InvalidTransition):
            challenge_service.claim_reward(challenge.id, users["alice"])
