"""
Challenge lifecycle.

Every mutating operation follows the same shape:

    with atomic(db):
        challenge = repo.get_for_update(id)   # per-challenge serialization
        ... validate against the *re-read* state ...
        ... escrow / ledger calls with commit=False ...
        transition(challenge, new_status)
    # commit: status + ledger rows land together, or neither does

Verification and proof submissions call the external verification service.
That call happens between two short locked transactions, never inside one.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import (
    AuthorizationError,
    DuplicateSubmission,
    InvalidTransition,
    NotFoundError,
    ValidationError,
    VerificationUnavailable,
    WinnerUnresolved,
)
from stakeapi.database.session import atomic
from stakeapi.models.base import as_utc, utcnow
from stakeapi.models.challenge import (
    NO_CONTEST_WINNER,
    Challenge,
    ChallengeOpponent,
    ChallengeStatus,
    OpponentStatus,
    Scorecard,
    SettlementOutcome,
    VerificationRecord,
    VerificationRecordStatus,
    VerificationStage,
)
from stakeapi.repositories.challenge_repository import ChallengeRepository, find_opponent
from stakeapi.repositories.user_repository import UserRepository
from stakeapi.schemas.challenge import (
    ChallengeCreate,
    ChallengeResponse,
    DeleteResult,
    ScorecardEntry,
    ScorecardStatusResponse,
    ScorecardSubmit,
    SettlementSummary,
    SubmissionResult,
    TimerStatusResponse,
)
from stakeapi.schemas.evidence import (
    ScorecardEvidence,
    VerificationContext,
    VerificationEvidence,
    normalize_username,
)
from stakeapi.schemas.user import User as UserSchema
from stakeapi.services.challenge_state import (
    Participant,
    find_participant,
    participants,
    require_status,
    transition,
)
from stakeapi.services.escrow_service import EscrowService
from stakeapi.services.ledger_service import LedgerService
from stakeapi.services.reconciliation_service import (
    CorrectedVerification,
    ReconciliationEngine,
    reconcile,
)
from stakeapi.services.timer_service import TimerService
from stakeapi.services.verification_service import VerificationClient

logger = logging.getLogger(__name__)

S = ChallengeStatus


class ChallengeService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        verification_client: Optional[VerificationClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.repo = ChallengeRepository(db)
        self.user_repo = UserRepository(db)
        self.ledger = LedgerService(db, settings)
        self.escrow = EscrowService(db, settings, self.ledger)
        self.engine = ReconciliationEngine(settings, self.user_repo)
        self.timers = TimerService(db, settings, escrow=self.escrow, clock=clock)
        self.verification_client = verification_client
        self.clock = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _lock(self, challenge_id: str) -> Challenge:
        challenge = self.repo.get_for_update(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        return challenge

    def _require_participant(self, challenge: Challenge, user: UserSchema) -> Participant:
        participant = find_participant(challenge, user.id)
        if participant is None:
            raise AuthorizationError("You are not a participant in this challenge")
        return participant

    def _require_challenger(self, challenge: Challenge, user: UserSchema) -> None:
        if challenge.challenger_id != user.id:
            raise AuthorizationError("Only the challenger can do this")

    def _gamertags(self, user: UserSchema, platform: str, override: Optional[str]) -> dict:
        tags = dict(user.platform_usernames or {})
        if override:
            tags[platform] = override.strip()
        return tags

    def _settle_to(self, challenge: Challenge, winner_name: Optional[str]) -> SettlementSummary:
        """Resolve the canonical name to a participant and release escrow.

        Raises WinnerUnresolved before any ledger write if nobody matches.
        """
        winner = self.engine.resolve_winner(challenge, winner_name)
        summary = self.escrow.release_to_winner(challenge, winner, SettlementOutcome.WIN)
        transition(challenge, S.COMPLETED)
        return summary

    def _settle_draw(self, challenge: Challenge) -> SettlementSummary:
        summary = self.escrow.refund_all(
            challenge, SettlementOutcome.DRAW, winner_marker=NO_CONTEST_WINNER
        )
        transition(challenge, S.COMPLETED)
        return summary

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_challenge(self, challenge_id: str) -> ChallengeResponse:
        # polling a challenge doubles as the lazy deadline check
        self.timers.check(challenge_id)
        challenge = self.repo.get_model(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        return self.repo.to_schema(challenge)

    def list_public_challenges(
        self, user: Optional[UserSchema] = None, limit: int = 50, offset: int = 0
    ) -> List[ChallengeResponse]:
        return self.repo.list_public_open(
            exclude_user_id=user.id if user else None, limit=min(limit, 100), offset=offset
        )

    def list_user_challenges(
        self, user: UserSchema, status: Optional[ChallengeStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[ChallengeResponse]:
        return self.repo.list_for_user(
            user.id,
            user.username,
            status=status.value if status else None,
            limit=min(limit, 100),
            offset=offset,
        )

    def get_timer_status(self, challenge_id: str, kind: str = "scorecard") -> TimerStatusResponse:
        return self.timers.get_timer_status(challenge_id, kind)

    def get_scorecard_status(self, challenge_id: str, user: UserSchema) -> ScorecardStatusResponse:
        self.timers.check(challenge_id)
        challenge = self.repo.get_model(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        self._require_participant(challenge, user)

        status = ChallengeStatus(challenge.status)
        mine = any(sc.reported_by_id == user.id for sc in challenge.scorecards)
        conflict = status in (S.SCORECARD_CONFLICT, S.AI_VERIFICATION_PENDING, S.AI_CONFLICT)
        return ScorecardStatusResponse(
            status=status,
            has_existing_scorecard=mine,
            has_conflict=conflict,
            requires_proof=status in (S.SCORECARD_CONFLICT, S.AI_VERIFICATION_PENDING),
            waiting_for_second_player=status == S.SCORECARD_PENDING and mine,
            scorecards=[ScorecardEntry.model_validate(sc) for sc in challenge.scorecards],
        )

    # ------------------------------------------------------------------
    # creation and responses
    # ------------------------------------------------------------------

    def create_challenge(self, user: UserSchema, request: ChallengeCreate) -> ChallengeResponse:
        """Create a challenge and escrow the challenger's share.

        Raises:
            ValidationError: bad opponent list
            InsufficientFunds: challenger cannot cover the required stake
        """
        if request.is_public and request.opponents:
            raise ValidationError("Public challenges cannot name opponents")
        if not request.is_public and not request.opponents:
            raise ValidationError("Private challenges need at least one opponent")
        if normalize_username(user.username) in {normalize_username(o) for o in request.opponents}:
            raise ValidationError("You cannot challenge yourself")

        with atomic(self.db):
            challenge = Challenge(
                challenger_id=user.id,
                challenger_username=user.username,
                challenger_platform_usernames=self._gamertags(
                    user, request.platform, request.platform_username
                ),
                game=request.game,
                platform=request.platform,
                stake=request.stake,
                is_public=request.is_public,
                rules=request.rules,
                status=S.PENDING.value,
            )
            for username in request.opponents:
                known = self.user_repo.get_by_username(username)
                challenge.opponents.append(
                    ChallengeOpponent(
                        username=known.username if known else username,
                        user_id=known.id if known else None,
                        status=OpponentStatus.PENDING.value,
                    )
                )
            self.repo.add(challenge)
            self.escrow.fund_challenger(challenge)

        logger.info(
            f"Challenge {challenge.id} created by {user.username}: {request.game} stake={request.stake} "
            f"public={request.is_public} opponents={request.opponents}"
        )
        return self.repo.to_schema(challenge)

    def respond(
        self,
        challenge_id: str,
        user: UserSchema,
        accept: bool,
        platform_username: Optional[str] = None,
    ) -> ChallengeResponse:
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            require_status(challenge, S.PENDING, action="respond to challenge")
            opponent = find_opponent(challenge, user.username)
            if opponent is None:
                raise AuthorizationError("You were not invited to this challenge")
            if opponent.status != OpponentStatus.PENDING.value:
                raise InvalidTransition(
                    f"You already responded ({opponent.status})",
                    details={"challenge_id": challenge.id},
                )

            opponent.user_id = user.id
            opponent.response_at = self.clock()
            opponent.platform_usernames = self._gamertags(user, challenge.platform, platform_username)

            if accept:
                self.escrow.fund_opponent(challenge, opponent)
                opponent.status = OpponentStatus.ACCEPTED.value
                if all(o.status == OpponentStatus.ACCEPTED.value for o in challenge.opponents):
                    transition(challenge, S.READY_PENDING)
            else:
                opponent.status = OpponentStatus.DECLINED.value
                self.escrow.refund_all(challenge, SettlementOutcome.REFUND)
                transition(challenge, S.CANCELLED)

        logger.info(
            f"{user.username} {'accepted' if accept else 'declined'} challenge {challenge_id} -> {challenge.status}"
        )
        return self.repo.to_schema(challenge)

    def join_public_challenge(
        self, challenge_id: str, user: UserSchema, platform_username: Optional[str] = None
    ) -> ChallengeResponse:
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            require_status(challenge, S.PENDING, action="join challenge")
            if not challenge.is_public:
                raise AuthorizationError("This challenge is not public")
            if challenge.challenger_id == user.id:
                raise ValidationError("You cannot join your own challenge")
            if any(o.is_participating for o in challenge.opponents):
                raise InvalidTransition("This challenge already has an opponent")

            opponent = ChallengeOpponent(
                username=user.username,
                user_id=user.id,
                status=OpponentStatus.JOINED.value,
                response_at=self.clock(),
                platform_usernames=self._gamertags(user, challenge.platform, platform_username),
            )
            challenge.opponents.append(opponent)
            self.db.flush()
            self.escrow.fund_opponent(challenge, opponent)
            transition(challenge, S.READY_PENDING)

        logger.info(f"{user.username} joined public challenge {challenge_id}")
        return self.repo.to_schema(challenge)

    def mark_ready(self, challenge_id: str, user: UserSchema) -> ChallengeResponse:
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            require_status(challenge, S.READY_PENDING, action="mark ready")
            self._require_participant(challenge, user)

            if challenge.challenger_id == user.id:
                challenge.challenger_ready = True
            else:
                for opp in challenge.opponents:
                    if opp.user_id == user.id and opp.is_participating:
                        opp.ready = True

            if all(p.ready for p in participants(challenge)):
                transition(challenge, S.ACTIVE)

        logger.info(f"{user.username} ready on challenge {challenge_id} -> {challenge.status}")
        return self.repo.to_schema(challenge)

    def cancel_challenge(self, challenge_id: str, user: UserSchema) -> ChallengeResponse:
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            self._require_challenger(challenge, user)
            require_status(challenge, S.PENDING, action="cancel challenge")
            self.escrow.refund_all(challenge, SettlementOutcome.REFUND)
            transition(challenge, S.CANCELLED)

        logger.info(f"Challenge {challenge_id} cancelled by {user.username}")
        return self.repo.to_schema(challenge)

    def delete_challenge(self, challenge_id: str, user: UserSchema) -> DeleteResult:
        """Cancel if still pending; drop the row only if no ledger row points at it."""
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            self._require_challenger(challenge, user)
            status = require_status(challenge, S.PENDING, S.CANCELLED, action="delete challenge")
            if status == S.PENDING:
                self.escrow.refund_all(challenge, SettlementOutcome.REFUND)
                transition(challenge, S.CANCELLED)

            deleted = not self.ledger.transactions_for_reference(challenge.id)
            if deleted:
                self.repo.delete_model(challenge)

        logger.info(f"Challenge {challenge_id} delete requested by {user.username}: deleted={deleted}")
        return DeleteResult(challenge_id=challenge_id, deleted=deleted, status=S.CANCELLED)

    # ------------------------------------------------------------------
    # scorecards
    # ------------------------------------------------------------------

    def submit_scorecard(
        self, challenge_id: str, user: UserSchema, request: ScorecardSubmit
    ) -> SubmissionResult:
        """Record a self-reported result and reconcile it with the others.

        first scorecard          -> scorecard-pending, deadline starts
        all agree (same scores)  -> completed, escrow released
        any disagreement         -> scorecard-conflict
        """
        settlement = None
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            require_status(challenge, S.ACTIVE, S.SCORECARD_PENDING, action="submit a scorecard")
            self._require_participant(challenge, user)
            if any(sc.reported_by_id == user.id for sc in challenge.scorecards):
                raise DuplicateSubmission("You have already submitted a scorecard for this challenge")

            now = self.clock()
            challenge.scorecards.append(
                Scorecard(
                    reported_by=user.username,
                    reported_by_id=user.id,
                    score_a=request.score_a,
                    score_b=request.score_b,
                    player_a_username=request.player_a_username.strip(),
                    player_b_username=request.player_b_username.strip(),
                    submitted_at=now,
                )
            )

            if challenge.status == S.ACTIVE.value:
                transition(challenge, S.SCORECARD_PENDING)
                challenge.scorecard_deadline = now + timedelta(
                    minutes=self.settings.SCORECARD_WINDOW_MINUTES
                )

            claims = [
                ScorecardEvidence(
                    submitted_by=sc.reported_by,
                    score_a=sc.score_a,
                    score_b=sc.score_b,
                    player_a_username=sc.player_a_username,
                    player_b_username=sc.player_b_username,
                )
                for sc in challenge.scorecards
            ]
            outcome = reconcile(claims)
            if len(claims) >= 2 and not outcome.agreed:
                transition(challenge, S.SCORECARD_CONFLICT)
                message = "Scorecards conflict. Submit screenshot proof for verification."
                logger.warning(f"Scorecard conflict on challenge {challenge_id}")
            elif outcome.agreed and len(claims) >= len(participants(challenge)):
                if outcome.draw:
                    settlement = self._settle_draw(challenge)
                    message = "Scorecards agree on a draw. Stakes refunded."
                else:
                    settlement = self._settle_to(challenge, outcome.winner)
                    message = f"Scorecards agree. {settlement.winner} wins."
            else:
                message = "Scorecard recorded. Waiting for the other player."

        return SubmissionResult(
            challenge=self.repo.to_schema(challenge), settlement=settlement, message=message
        )

    # ------------------------------------------------------------------
    # verification / proof
    # ------------------------------------------------------------------

    def _reserve_verification(
        self, challenge_id: str, user: UserSchema, stage: VerificationStage, evidence_urls: List[str]
    ) -> VerificationContext:
        """Short locked transaction: validate, then claim the (challenge, user, stage) slot."""
        allowed = (
            (S.ACTIVE,)
            if stage == VerificationStage.PROOF
            else (S.SCORECARD_CONFLICT, S.AI_VERIFICATION_PENDING)
        )
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            require_status(challenge, *allowed, action=f"submit {stage.value}")
            self._require_participant(challenge, user)

            now = self.clock()
            stale_after = timedelta(seconds=2 * self.settings.VERIFICATION_TIMEOUT_SECONDS)
            record = next(
                (
                    v for v in challenge.verifications
                    if v.submitted_by_id == user.id and v.stage == stage.value
                ),
                None,
            )
            if record is not None:
                in_flight = (
                    record.status == VerificationRecordStatus.ANALYZING.value
                    and as_utc(record.submitted_at) + stale_after > now
                )
                if record.status == VerificationRecordStatus.RECORDED.value or in_flight:
                    raise DuplicateSubmission(
                        f"You have already submitted {stage.value} evidence for this challenge"
                    )
                # failed or abandoned attempt: reuse the same row
                record.status = VerificationRecordStatus.ANALYZING.value
                record.error_message = None
                record.evidence_urls = evidence_urls
                record.submitted_at = now
            else:
                challenge.verifications.append(
                    VerificationRecord(
                        submitted_by=user.username,
                        submitted_by_id=user.id,
                        stage=stage.value,
                        status=VerificationRecordStatus.ANALYZING.value,
                        evidence_urls=evidence_urls,
                        submitted_at=now,
                    )
                )

            known_names = sorted(
                {name for p in participants(challenge) for name in [p.username, *p.platform_usernames.values()] if name}
            )
            return VerificationContext(
                challenge_id=challenge.id,
                game=challenge.game,
                platform=challenge.platform,
                submitted_by=user.username,
                participants=known_names,
            )

    def _release_verification_slot(
        self, challenge_id: str, user_id: str, stage: VerificationStage, reason: str
    ) -> None:
        with atomic(self.db):
            record = next(
                (
                    v for v in self._lock(challenge_id).verifications
                    if v.submitted_by_id == user_id and v.stage == stage.value
                ),
                None,
            )
            if record is not None and record.status == VerificationRecordStatus.ANALYZING.value:
                record.status = VerificationRecordStatus.FAILED.value
                record.error_message = reason

    async def _analyze(
        self, challenge_id: str, user: UserSchema, stage: VerificationStage, evidence_urls: List[str]
    ):
        if self.verification_client is None:
            raise VerificationUnavailable("Verification service is not configured")
        urls = [str(u) for u in evidence_urls]
        context = self._reserve_verification(challenge_id, user, stage, urls)
        try:
            return await self.verification_client.analyze(urls, context)
        except VerificationUnavailable as e:
            self._release_verification_slot(challenge_id, user.id, stage, e.message)
            raise

    def _record(
        self, challenge: Challenge, user: UserSchema, stage: VerificationStage, analysis, corrected: CorrectedVerification
    ) -> VerificationRecord:
        record = next(
            v for v in challenge.verifications
            if v.submitted_by_id == user.id and v.stage == stage.value
        )
        record.status = VerificationRecordStatus.RECORDED.value
        record.claimed_winner = corrected.evidence.winner
        record.reported_winner = corrected.reported_winner
        record.confidence = analysis.confidence
        record.raw_score_text = analysis.raw_score_text
        record.detected_identities = list(analysis.detected_identities)
        record.reasoning = analysis.reasoning
        record.score_corrected = corrected.score_corrected
        record.raw_signals = analysis.model_dump(mode="json")
        return record

    def _recorded_claims(self, challenge: Challenge, stage: VerificationStage) -> List[VerificationEvidence]:
        return [
            VerificationEvidence(
                submitted_by=v.submitted_by,
                winner=v.claimed_winner,
                confidence=v.confidence or 0.0,
                detected_identities=list(v.detected_identities or []),
            )
            for v in challenge.verifications
            if v.stage == stage.value and v.status == VerificationRecordStatus.RECORDED.value
        ]

    async def submit_verification(
        self, challenge_id: str, user: UserSchema, evidence_urls: List[str]
    ) -> SubmissionResult:
        """Independent verification after a scorecard conflict.

        scorecard-conflict        -> ai-verification-pending, deadline starts
        all verifications agree   -> completed
        any disagreement/Unknown  -> ai-conflict (admin must resolve)
        """
        stage = VerificationStage.VERIFICATION
        analysis = await self._analyze(challenge_id, user, stage, evidence_urls)

        settlement = None
        try:
            with atomic(self.db):
                challenge = self._lock(challenge_id)
                require_status(
                    challenge, S.SCORECARD_CONFLICT, S.AI_VERIFICATION_PENDING, action="submit verification"
                )
                corrected = self.engine.correct(user.username, analysis)
                self._record(challenge, user, stage, analysis, corrected)

                if challenge.status == S.SCORECARD_CONFLICT.value:
                    transition(challenge, S.AI_VERIFICATION_PENDING)
                    challenge.verification_deadline = self.clock() + timedelta(
                        minutes=self.settings.VERIFICATION_WINDOW_MINUTES
                    )

                claims = self._recorded_claims(challenge, stage)
                outcome = reconcile(claims)
                if len(claims) >= 2 and not outcome.agreed:
                    transition(challenge, S.AI_CONFLICT)
                    message = "Verification results conflict. An admin will review this challenge."
                    logger.warning(f"Verification conflict on challenge {challenge_id}")
                elif outcome.agreed and len(claims) >= len(participants(challenge)):
                    settlement = self._settle_to(challenge, outcome.winner)
                    message = f"Verification results agree. {settlement.winner} wins."
                else:
                    message = "Verification recorded. Waiting for the other player."
        except (InvalidTransition, WinnerUnresolved) as e:
            self._release_verification_slot(challenge_id, user.id, stage, e.message)
            raise

        return SubmissionResult(
            challenge=self.repo.to_schema(challenge), settlement=settlement, message=message
        )

    async def submit_proof(
        self, challenge_id: str, user: UserSchema, evidence_urls: List[str]
    ) -> SubmissionResult:
        """Direct photographic proof from an active challenge.

        Settles immediately when the result is high-confidence and the
        submitter shows up among the detected players. Otherwise it is held
        (possibly as Unknown) until the other side's proof agrees or a
        dispute is raised.
        """
        stage = VerificationStage.PROOF
        analysis = await self._analyze(challenge_id, user, stage, evidence_urls)

        settlement = None
        try:
            with atomic(self.db):
                challenge = self._lock(challenge_id)
                require_status(challenge, S.ACTIVE, action="submit proof")
                claimant = self._require_participant(challenge, user)
                corrected = self.engine.correct(user.username, analysis)
                self._record(challenge, user, stage, analysis, corrected)

                claims = self._recorded_claims(challenge, stage)
                outcome = reconcile(claims)
                if self.engine.qualifies_for_direct_settle(claimant, corrected):
                    settlement = self._settle_to(challenge, corrected.evidence.claimed_winner())
                    message = f"Proof verified. {settlement.winner} wins."
                elif outcome.agreed:
                    settlement = self._settle_to(challenge, outcome.winner)
                    message = f"Both proofs agree. {settlement.winner} wins."
                else:
                    message = (
                        "Proof recorded but could not be verified with enough confidence. "
                        "Waiting for the other player's proof or a dispute."
                    )
                    logger.info(
                        f"Proof on challenge {challenge_id} deferred: winner={corrected.evidence.winner} "
                        f"confidence={analysis.confidence}"
                    )
        except (InvalidTransition, WinnerUnresolved) as e:
            self._release_verification_slot(challenge_id, user.id, stage, e.message)
            raise

        return SubmissionResult(
            challenge=self.repo.to_schema(challenge), settlement=settlement, message=message
        )

    # ------------------------------------------------------------------
    # reward
    # ------------------------------------------------------------------

    def claim_reward(self, challenge_id: str, user: UserSchema) -> SettlementSummary:
        """Idempotent: a challenge already paid out returns the existing payout."""
        self.timers.check(challenge_id)
        with atomic(self.db):
            challenge = self._lock(challenge_id)
            require_status(challenge, S.COMPLETED, action="claim reward")
            participant = self._require_participant(challenge, user)
            if challenge.winner_id and challenge.winner_id != participant.user_id and not user.is_admin:
                raise AuthorizationError("Only the winner can claim this reward")

            if challenge.reward_claimed:
                logger.info(f"Reward for challenge {challenge_id} already released (replay)")
                return self.escrow.existing_settlement(challenge)

            if challenge.winner_id:
                winner = find_participant(challenge, challenge.winner_id)
            else:
                winner = self.engine.resolve_winner(challenge, challenge.winner)
            return self.escrow.release_to_winner(challenge, winner, SettlementOutcome.WIN)
