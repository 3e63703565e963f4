from fastapi import Depends, Request
from sqlalchemy.orm import Session

from stakeapi.config import settings
from stakeapi.database.session import get_db

# Collaborators
from stakeapi.services.payment_gateway import PaymentGateway
from stakeapi.services.verification_service import VerificationClient

# Services
from stakeapi.services.challenge_service import ChallengeService
from stakeapi.services.dispute_service import DisputeService
from stakeapi.services.timer_service import TimerService
from stakeapi.services.user_service import UserService
from stakeapi.services.wallet_service import WalletService


def get_verification_client(request: Request) -> VerificationClient:
    return request.app.container.clients.verification_client()


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.container.clients.payment_gateway()


def get_challenge_service(
    db: Session = Depends(get_db),
    verification_client: VerificationClient = Depends(get_verification_client),
) -> ChallengeService:
    return ChallengeService(db=db, settings=settings, verification_client=verification_client)


def get_dispute_service(db: Session = Depends(get_db)) -> DisputeService:
    return DisputeService(db=db, settings=settings)


def get_timer_service(db: Session = Depends(get_db)) -> TimerService:
    return TimerService(db=db, settings=settings)


def get_wallet_service(
    db: Session = Depends(get_db),
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
) -> WalletService:
    return WalletService(db=db, settings=settings, payment_gateway=payment_gateway)


def get_user_service(db: Session = Depends(get_db)) -> UserService:
    return UserService(db=db, settings=settings)
