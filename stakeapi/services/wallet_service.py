import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import ValidationError
from stakeapi.models.wallet import TransactionStatus, TransactionType
from stakeapi.schemas.user import User as UserSchema
from stakeapi.schemas.wallet import (
    ChallengeLedgerResponse,
    IntegrityCheckResponse,
    LedgerResult,
    LedgerTransactionEntry,
    PlatformWalletResponse,
    TransactionHistoryResponse,
    TransactionStatsResponse,
    WalletResponse,
    WithdrawalResponse,
)
from stakeapi.services.escrow_service import EscrowService
from stakeapi.services.ledger_service import LedgerService
from stakeapi.services.payment_gateway import (
    ManualPaymentGateway,
    PaymentGateway,
    PayoutStatus,
)
from stakeapi.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)


class WalletService:
    """User-facing wallet operations on top of the ledger."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        payment_gateway: Optional[PaymentGateway] = None,
    ):
        self.db = db
        self.settings = settings
        self.ledger = LedgerService(db, settings)
        self.gateway = payment_gateway or ManualPaymentGateway()

    def get_wallet(self, user: UserSchema) -> WalletResponse:
        return WalletResponse(user_id=user.id, balance=self.ledger.get_balance(user.id))

    def get_transactions(
        self,
        user: UserSchema,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> TransactionHistoryResponse:
        return self.ledger.get_history(user.id, limit=limit, offset=offset, type=type)

    def get_transaction_stats(self, user: UserSchema) -> TransactionStatsResponse:
        self.ledger.get_balance(user.id)
        totals = self.ledger.repo.sum_by_type(user.id)
        _, count = self.ledger.repo.ledger_sum(user.id)

        def total(*types: TransactionType) -> Decimal:
            return to_money(sum((totals.get(t.value, ZERO) for t in types), ZERO))

        return TransactionStatsResponse(
            total_deposits=total(TransactionType.DEPOSIT),
            total_withdrawals=-total(TransactionType.WITHDRAWAL),
            total_rewards=total(TransactionType.CHALLENGE_REWARD, TransactionType.TOURNAMENT_REWARD),
            total_deductions=-total(TransactionType.CHALLENGE_DEDUCTION, TransactionType.TOURNAMENT_ENTRY),
            total_refunds=total(TransactionType.REFUND, TransactionType.TOURNAMENT_REFUND),
            total_adjustments=total(TransactionType.ADMIN_ADJUSTMENT),
            transaction_count=count,
        )

    async def deposit(
        self, user: UserSchema, amount: Decimal, payment_method: str = "manual"
    ) -> LedgerResult:
        """Charge through the gateway first; only a confirmed charge is credited.

        Raises:
            PaymentGatewayError: the gateway failed. Nothing is written.
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Deposit amount must be positive")

        external_id = await self.gateway.deposit(
            user.id, amount, {"payment_method": payment_method}
        )
        result = self.ledger.credit(
            user.id,
            amount,
            TransactionType.DEPOSIT,
            description=f"Deposit via {payment_method}",
            metadata={"payment_method": payment_method, "gateway": self.gateway.name},
            idempotency_key=f"deposit:{external_id}",
            external_id=external_id,
        )
        logger.info(f"Deposit {external_id} credited to {user.id}: {amount}")
        return result

    async def withdraw(self, user: UserSchema, amount: Decimal, destination: str) -> WithdrawalResponse:
        """Debit first (pending), then ask the gateway to pay out.

        The debit is committed before the gateway call so no lock is held
        while waiting on the network. If the payout fails or is still
        pending, the row stays ``pending`` until an operator disburses it.
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Withdrawal amount must be positive")

        result = self.ledger.debit(
            user.id,
            amount,
            TransactionType.WITHDRAWAL,
            description=f"Withdrawal to {destination}",
            metadata={"destination": destination, "gateway": self.gateway.name},
            status=TransactionStatus.PENDING,
        )

        payout = await self.gateway.payout(user.id, amount, destination)
        transaction = result.transaction
        if payout.status == PayoutStatus.SUCCEEDED:
            transaction = self.ledger.mark_disbursed(transaction.id, payout.external_id)
            message = "Withdrawal sent"
        elif payout.status == PayoutStatus.PENDING:
            message = "Withdrawal is being processed"
        else:
            logger.error(
                f"Payout failed for withdrawal #{transaction.id} ({user.id}, {amount}): {payout.message}"
            )
            message = "Withdrawal recorded; payout will be retried by support"

        return WithdrawalResponse(
            transaction=transaction,
            balance=result.balance,
            disbursed=transaction.status == TransactionStatus.COMPLETED.value,
            message=message,
        )

    def disburse(self, transaction_id: int, external_id: Optional[str]) -> LedgerTransactionEntry:
        return self.ledger.mark_disbursed(transaction_id, external_id)

    def admin_adjust(self, admin: UserSchema, user_id: str, amount: Decimal, reason: str) -> LedgerResult:
        amount = to_money(amount)
        if amount == ZERO:
            raise ValidationError("Adjustment amount must not be zero")

        metadata = {"admin": admin.id, "reason": reason}
        description = f"Admin adjustment: {reason}"
        if amount > ZERO:
            result = self.ledger.credit(
                user_id, amount, TransactionType.ADMIN_ADJUSTMENT,
                description=description, metadata=metadata,
            )
        else:
            result = self.ledger.debit(
                user_id, -amount, TransactionType.ADMIN_ADJUSTMENT,
                description=description, metadata=metadata,
            )
        logger.warning(f"Admin {admin.username} adjusted wallet {user_id} by {amount}: {reason}")
        return result

    def get_platform_wallet(self) -> PlatformWalletResponse:
        wallet_id = self.settings.PLATFORM_WALLET_ID
        balance = self.ledger.get_balance(wallet_id)
        fees = self.ledger.repo.sum_by_type(wallet_id).get(TransactionType.ADMIN_FEE.value, ZERO)
        return PlatformWalletResponse(wallet_id=wallet_id, balance=balance, total_fees=to_money(fees))

    def verify_integrity(self, user_id: str) -> IntegrityCheckResponse:
        return self.ledger.verify_integrity(user_id)

    def get_challenge_ledger(self, challenge_id: str) -> ChallengeLedgerResponse:
        escrow = EscrowService(self.db, self.settings, self.ledger)
        position = escrow.net_position(challenge_id)
        surplus = position["escrowed"] - position["released"]
        return ChallengeLedgerResponse(
            challenge_id=challenge_id,
            entries=self.ledger.transactions_for_reference(challenge_id),
            total_escrowed=position["escrowed"],
            total_released=position["released"],
            surplus=surplus,
            balanced=surplus == ZERO,
        )
