import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock, AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure project root is on path for `stakeapi` imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from stakeapi.config import Settings
from stakeapi.models import Base
from stakeapi.repositories.user_repository import UserRepository
from stakeapi.schemas.challenge import ChallengeCreate
from stakeapi.schemas.evidence import VerificationAnalysis
from stakeapi.services.challenge_service import ChallengeService
from stakeapi.services.dispute_service import DisputeService
from stakeapi.services.ledger_service import LedgerService


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        DEFAULT_WALLET_BALANCE=Decimal("100"),
        SCORECARD_WINDOW_MINUTES=5,
        VERIFICATION_WINDOW_MINUTES=5,
        PROOF_CONFIDENCE_THRESHOLD=0.8,
        VERIFICATION_TIMEOUT_SECONDS=30,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def users(db):
    repo = UserRepository(db)
    return {
        "alice": repo.create_user("alice", platform_usernames={"psn": "AliceGT"}, user_id="u-alice"),
        "bob": repo.create_user("bob", platform_usernames={"psn": "BobTheBuilder"}, user_id="u-bob"),
        "carol": repo.create_user("carol", platform_usernames={"psn": "CarolC"}, user_id="u-carol"),
        "admin": repo.create_user("admin", role="admin", user_id="u-admin"),
    }


@pytest.fixture
def verification_client():
    client = Mock()
    client.analyze = AsyncMock()
    return client


@pytest.fixture
def ledger(db, settings):
    return LedgerService(db, settings)


@pytest.fixture
def challenge_service(db, settings, verification_client, clock):
    return ChallengeService(db, settings, verification_client=verification_client, clock=clock)


@pytest.fixture
def dispute_service(db, settings):
    return DisputeService(db, settings)


@pytest.fixture
def balance(ledger):
    def _balance(wallet_id: str) -> Decimal:
        return ledger.get_balance(wallet_id)

    return _balance


@pytest.fixture
def make_challenge(challenge_service, users):
    def _make(stake="20", opponents=("bob",), is_public=False, challenger="alice"):
        return challenge_service.create_challenge(
            users[challenger],
            ChallengeCreate(
                game="FIFA 25",
                platform="psn",
                stake=Decimal(stake),
                opponents=list(opponents),
                is_public=is_public,
            ),
        )

    return _make


@pytest.fixture
def active_challenge(challenge_service, users, make_challenge):
    """alice vs bob, stake 20, both funded and ready"""

    def _make(stake="20"):
        challenge = make_challenge(stake=stake)
        challenge_service.respond(challenge.id, users["bob"], accept=True)
        challenge_service.mark_ready(challenge.id, users["alice"])
        return challenge_service.mark_ready(challenge.id, users["bob"])

    return _make


@pytest.fixture
def make_analysis():
    def _make(winner=None, confidence=0.9, raw=None, detected=("AliceGT", "BobTheBuilder"), reasoning=None):
        return VerificationAnalysis(
            claimed_winner=winner,
            confidence=confidence,
            raw_score_text=raw,
            detected_identities=list(detected),
            reasoning=reasoning,
        )

    return _make
