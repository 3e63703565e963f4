from decimal import Decimal

import pytest

from stakeapi.core.exceptions import (
    DuplicateSubmission,
    InvalidTransition,
    VerificationUnavailable,
    WinnerUnresolved,
)
from stakeapi.models.challenge import ChallengeStatus, VerificationRecord, VerificationRecordStatus
from stakeapi.schemas.challenge import ScorecardSubmit

URLS = ["https://cdn.example.com/shots/1.png"]


@pytest.fixture
def conflicted_challenge(challenge_service, active_challenge, users):
    """Active challenge whose two scorecards disagree"""

    def _make():
        challenge = active_challenge()
        challenge_service.submit_scorecard(
            challenge.id,
            users["alice"],
            ScorecardSubmit(score_a=3, score_b=1, player_a_username="AliceGT", player_b_username="BobTheBuilder"),
        )
        result = challenge_service.submit_scorecard(
            challenge.id,
            users["bob"],
            ScorecardSubmit(score_a=1, score_b=3, player_a_username="AliceGT", player_b_username="BobTheBuilder"),
        )
        assert result.challenge.status == ChallengeStatus.SCORECARD_CONFLICT
        return result.challenge

    return _make


@pytest.mark.asyncio
class TestVerificationAfterConflict:
    """scorecard-conflict -> ai-verification-pending -> completed | ai-conflict"""

    async def test_agreeing_verifications_settle(
        self, challenge_service, conflicted_challenge, users, verification_client, make_analysis, balance
    ):
        # Arrange
        challenge = conflicted_challenge()
        verification_client.analyze.return_value = make_analysis("AliceGT", raw="3-1")

        # Act
        first = await challenge_service.submit_verification(challenge.id, users["alice"], URLS)
        second = await challenge_service.submit_verification(challenge.id, users["bob"], URLS)

        # Assert
        assert first.challenge.status == ChallengeStatus.AI_VERIFICATION_PENDING
        assert first.challenge.verification_deadline is not None
        assert second.challenge.status == ChallengeStatus.COMPLETED
        assert second.challenge.winner == "alice"
        assert balance("u-alice") == Decimal("109")
        assert verification_client.analyze.await_count == 2

        urls, context = verification_client.analyze.await_args.args
        assert urls == URLS
        assert context.challenge_id == challenge.id
        assert context.submitted_by == "bob"
        assert "AliceGT" in context.participants

    async def test_disagreeing_verifications_freeze_settlement(
        self, challenge_service, conflicted_challenge, users, verification_client, make_analysis, balance
    ):
        challenge = conflicted_challenge()
        verification_client.analyze.side_effect = [
            make_analysis("AliceGT", raw="3-1"),
            make_analysis("BobTheBuilder", raw="1-3"),
        ]

        await challenge_service.submit_verification(challenge.id, users["alice"], URLS)
        result = await challenge_service.submit_verification(challenge.id, users["bob"], URLS)

        assert result.challenge.status == ChallengeStatus.AI_CONFLICT
        assert result.settlement is None
        assert balance("u-alice") == Decimal("90")
        assert balance("u-bob") == Decimal("90")

    async def test_score_text_overrides_wrong_claim(
        self, challenge_service, conflicted_challenge, users, verification_client, make_analysis
    ):
        challenge = conflicted_challenge()
        # the service names AliceGT, but the score line says BobTheBuilder scored 7
        verification_client.analyze.return_value = make_analysis(
            "AliceGT", raw="6-7", reasoning="AliceGT won"
        )

        await challenge_service.submit_verification(challenge.id, users["alice"], URLS)
        result = await challenge_service.submit_verification(challenge.id, users["bob"], URLS)

        assert result.challenge.status == ChallengeStatus.COMPLETED
        assert result.challenge.winner == "bob"
        record = result.challenge.verifications[0]
        assert record.claimed_winner == "BobTheBuilder"
        assert record.reported_winner == "AliceGT"
        assert record.score_corrected is True

    async def test_unknown_verifications_escalate(
        self, challenge_service, conflicted_challenge, users, verification_client, make_analysis
    ):
        challenge = conflicted_challenge()
        verification_client.analyze.return_value = make_analysis("AliceGT", confidence=0.3)

        await challenge_service.submit_verification(challenge.id, users["alice"], URLS)
        result = await challenge_service.submit_verification(challenge.id, users["bob"], URLS)

        assert result.challenge.status == ChallengeStatus.AI_CONFLICT

    async def test_service_failure_is_retryable_and_not_recorded_as_unknown(
        self, challenge_service, conflicted_challenge, users, verification_client, make_analysis, db
    ):
        challenge = conflicted_challenge()
        verification_client.analyze.side_effect = VerificationUnavailable("timed out")

        with pytest.raises(VerificationUnavailable) as exc_info:
            await challenge_service.submit_verification(challenge.id, users["alice"], URLS)

        assert exc_info.value.details["retryable"] is True
        record = db.query(VerificationRecord).filter_by(challenge_id=challenge.id).one()
        assert record.status == VerificationRecordStatus.FAILED.value
        assert record.claimed_winner is None
        assert challenge_service.get_challenge(challenge.id).status == ChallengeStatus.SCORECARD_CONFLICT

        # retry succeeds and reuses the same record
        verification_client.analyze.side_effect = None
        verification_client.analyze.return_value = make_analysis("AliceGT", raw="3-1")
        result = await challenge_service.submit_verification(challenge.id, users["alice"], URLS)

        assert result.challenge.status == ChallengeStatus.AI_VERIFICATION_PENDING
        assert db.query(VerificationRecord).filter_by(challenge_id=challenge.id).count() == 1

    async def test_second_submission_by_same_user_is_rejected_before_analysis(
        self, challenge_service, conflicted_challenge, users, verification_client, make_analysis
    ):
        challenge = conflicted_challenge()
        verification_client.analyze.return_value = make_analysis("AliceGT", raw="3-1")
        await challenge_service.submit_verification(challenge.id, users["alice"], URLS)

        with pytest.raises(DuplicateSubmission):
            await challenge_service.submit_verification(challenge.id, users["alice"], URLS)

        assert verification_client.analyze.await_count == 1

    async def test_verification_requires_a_conflict(
        self, challenge_service, active_challenge, users, verification_client
    ):
        challenge = active_challenge()
        with pytest.raises(InvalidTransition):
            await challenge_service.submit_verification(challenge.id, users["alice"], URLS)
        verification_client.analyze.assert_not_awaited()


@pytest.mark.asyncio
class TestDirectProof:
    """Photographic proof from an active challenge"""

    async def test_confident_corroborated_proof_settles_immediately(
        self, challenge_service, active_challenge, users, verification_client, make_analysis, balance, settings
    ):
        challenge = active_challenge()
        verification_client.analyze.return_value = make_analysis("AliceGT", confidence=0.95, raw="2-0")

        result = await challenge_service.submit_proof(challenge.id, users["alice"], URLS)

        assert result.challenge.status == ChallengeStatus.COMPLETED
        assert result.challenge.winner == "alice"
        assert result.settlement.outcome == "win"
        assert balance("u-alice") == Decimal("109")
        assert balance(settings.PLATFORM_WALLET_ID) == Decimal("1")

    async def test_low_confidence_proof_is_deferred(
        self, challenge_service, active_challenge, users, verification_client, make_analysis, balance
    ):
        challenge = active_challenge()
        verification_client.analyze.return_value = make_analysis("AliceGT", confidence=0.5)

        result = await challenge_service.submit_proof(challenge.id, users["alice"], URLS)

        assert result.challenge.status == ChallengeStatus.ACTIVE
        assert result.settlement is None
        assert result.challenge.verifications[0].claimed_winner == "Unknown"
        assert balance("u-alice") == Decimal("90")

    async def test_uncorroborated_proof_waits_for_counterpart(
        self, challenge_service, active_challenge, users, verification_client, make_analysis
    ):
        challenge = active_challenge()
        # neither submitter shows up among the detected players
        verification_client.analyze.return_value = make_analysis(
            "BobTheBuilder", confidence=0.95, detected=["Someone", "Else"]
        )

        deferred = await challenge_service.submit_proof(challenge.id, users["alice"], URLS)
        settled = await challenge_service.submit_proof(challenge.id, users["bob"], URLS)

        assert deferred.challenge.status == ChallengeStatus.ACTIVE
        assert settled.challenge.status == ChallengeStatus.COMPLETED
        assert settled.challenge.winner == "bob"

    async def test_unresolvable_winner_fails_closed(
        self, challenge_service, active_challenge, users, verification_client, make_analysis, balance, db
    ):
        challenge = active_challenge()
        verification_client.analyze.return_value = make_analysis(
            "Stranger", confidence=0.95, detected=["AliceGT", "Stranger"]
        )

        with pytest.raises(WinnerUnresolved):
            await challenge_service.submit_proof(challenge.id, users["alice"], URLS)

        reloaded = challenge_service.get_challenge(challenge.id)
        assert reloaded.status == ChallengeStatus.ACTIVE
        assert reloaded.winner is None
        assert balance("u-alice") == Decimal("90")
        record = db.query(VerificationRecord).filter_by(challenge_id=challenge.id).one()
        assert record.status == VerificationRecordStatus.FAILED.value
