"""
Ledger: the only way money moves.

``credit`` / ``debit`` lock the wallet row, re-read the balance, append one
ledger row and move the balance in the same transaction. A caller-supplied
``idempotency_key`` makes an operation safe to replay: the second call gets
back the row written by the first one instead of a new movement.

Pass ``commit=False`` when the movement is part of a larger unit of work
(a challenge transition); the caller then commits or rolls back everything
together.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import ConflictError, InsufficientFunds, ValidationError
from stakeapi.models.base import utcnow
from stakeapi.models.wallet import (
    LedgerTransaction,
    TransactionStatus,
    TransactionType,
    Wallet,
)
from stakeapi.repositories.wallet_repository import WalletRepository
from stakeapi.schemas.wallet import (
    IntegrityCheckResponse,
    LedgerResult,
    LedgerTransactionEntry,
    TransactionHistoryResponse,
    WalletResponse,
)
from stakeapi.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.repo = WalletRepository(db)

    # ------------------------------------------------------------------
    # wallets
    # ------------------------------------------------------------------

    def _opening_balance(self, wallet_id: str) -> Decimal:
        if wallet_id == self.settings.PLATFORM_WALLET_ID:
            return ZERO
        return to_money(self.settings.DEFAULT_WALLET_BALANCE)

    def _lock_wallet(self, wallet_id: str) -> Wallet:
        """Lock the wallet row, creating it (with its opening balance) if needed."""
        created = self.repo.insert_wallet_if_missing(wallet_id)
        wallet = self.repo.get_wallet_for_update(wallet_id)
        if wallet is None:  # pragma: no cover - insert above guarantees the row
            raise ConflictError(f"Wallet {wallet_id} could not be created")

        if created:
            opening = self._opening_balance(wallet_id)
            if opening > ZERO:
                self.repo.append(
                    wallet,
                    amount=opening,
                    type=TransactionType.DEPOSIT.value,
                    description="Opening balance",
                    idempotency_key=f"wallet:{wallet_id}:opening",
                )
            logger.info(f"Created wallet {wallet_id} with opening balance {opening}")
        return wallet

    def ensure_wallet(self, wallet_id: str, commit: bool = True) -> WalletResponse:
        wallet = self._lock_wallet(wallet_id)
        if commit:
            self.db.commit()
        return WalletResponse.model_validate(wallet)

    def get_balance(self, wallet_id: str) -> Decimal:
        wallet = self.repo.get_wallet(wallet_id)
        if wallet is None:
            return self.ensure_wallet(wallet_id).balance
        return wallet.balance

    # ------------------------------------------------------------------
    # movements
    # ------------------------------------------------------------------

    def credit(
        self,
        wallet_id: str,
        amount: Decimal,
        type: TransactionType,
        reference: Optional[str] = None,
        description: str = "",
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        external_id: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        if to_money(amount) <= ZERO:
            raise ValidationError("Credit amount must be positive")
        return self._apply(
            wallet_id,
            to_money(amount),
            type,
            reference=reference,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
            status=status,
            external_id=external_id,
            commit=commit,
        )

    def debit(
        self,
        wallet_id: str,
        amount: Decimal,
        type: TransactionType,
        reference: Optional[str] = None,
        description: str = "",
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        allow_negative: bool = False,
        commit: bool = True,
    ) -> LedgerResult:
        """Debit a wallet.

        Raises:
            InsufficientFunds: balance below ``amount``. Only
                ``admin_adjustment`` debits may pass ``allow_negative``.
        """
        if allow_negative and type != TransactionType.ADMIN_ADJUSTMENT:
            raise ValidationError("Only admin adjustments may overdraw a wallet")
        if to_money(amount) <= ZERO:
            raise ValidationError("Debit amount must be positive")
        return self._apply(
            wallet_id,
            -to_money(amount),
            type,
            reference=reference,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
            status=status,
            allow_negative=allow_negative,
            commit=commit,
        )

    def _replay(self, existing: LedgerTransaction, wallet_id: str, type: TransactionType) -> LedgerResult:
        if existing.wallet_id != wallet_id or existing.type != type.value:
            raise ConflictError(
                "Idempotency key already used for a different operation",
                details={"transaction_id": existing.id},
            )
        wallet = self.repo.get_wallet(wallet_id)
        logger.info(
            f"Ledger replay: key={existing.idempotency_key} wallet={wallet_id} tx={existing.id}"
        )
        return LedgerResult(
            transaction=LedgerTransactionEntry.model_validate(existing),
            balance=wallet.balance if wallet else existing.balance_after,
            replayed=True,
        )

    def _apply(
        self,
        wallet_id: str,
        signed_amount: Decimal,
        type: TransactionType,
        reference: Optional[str],
        description: str,
        metadata: Optional[dict],
        idempotency_key: Optional[str],
        status: TransactionStatus,
        external_id: Optional[str] = None,
        allow_negative: bool = False,
        commit: bool = True,
    ) -> LedgerResult:
        if signed_amount == ZERO:
            raise ValidationError("Amount must be greater than zero")

        if idempotency_key:
            existing = self.repo.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, wallet_id, type)

        wallet = self._lock_wallet(wallet_id)

        if signed_amount < ZERO and not allow_negative:
            required = -signed_amount
            if wallet.balance < required:
                logger.warning(
                    f"Insufficient funds: wallet={wallet_id} balance={wallet.balance} required={required}"
                )
                available = wallet.balance
                if commit:
                    self.db.rollback()
                raise InsufficientFunds(
                    f"Insufficient balance. Required: {required}, Available: {available}",
                    details={"required": str(required), "available": str(available)},
                )

        try:
            entry = self.repo.append(
                wallet,
                amount=signed_amount,
                type=type.value,
                description=description,
                reference=reference,
                idempotency_key=idempotency_key,
                status=status.value,
                metadata=metadata,
                external_id=external_id,
            )
            if commit:
                self.db.commit()
        except IntegrityError:
            if not commit or not idempotency_key:
                raise
            # lost the race on the idempotency key: hand back the winner's row
            self.db.rollback()
            existing = self.repo.find_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            return self._replay(existing, wallet_id, type)

        logger.info(
            f"Ledger {type.value}: wallet={wallet_id} amount={signed_amount} "
            f"balance={wallet.balance} reference={reference} tx={entry.id}"
        )
        return LedgerResult(
            transaction=LedgerTransactionEntry.model_validate(entry),
            balance=wallet.balance,
            replayed=False,
        )

    def mark_disbursed(
        self, transaction_id: int, external_id: Optional[str], commit: bool = True
    ) -> LedgerTransactionEntry:
        """Flag a pending payout as sent. The amount is never touched."""
        entry = self.repo.get_transaction_for_update(transaction_id)
        if entry is None:
            raise ValidationError(f"Transaction {transaction_id} not found")
        if entry.status != TransactionStatus.COMPLETED.value:
            self.repo.mark_disbursed(entry, external_id, utcnow())
            if commit:
                self.db.commit()
            logger.info(f"Transaction {transaction_id} disbursed (external_id={external_id})")
        return LedgerTransactionEntry.model_validate(entry)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def find_transaction(
        self, reference: str, type: TransactionType, wallet_id: Optional[str] = None
    ) -> Optional[LedgerTransactionEntry]:
        entry = self.repo.find_transaction(reference, type.value, wallet_id)
        return LedgerTransactionEntry.model_validate(entry) if entry else None

    def transactions_for_reference(self, reference: str) -> List[LedgerTransactionEntry]:
        return [
            LedgerTransactionEntry.model_validate(row)
            for row in self.repo.transactions_for_reference(reference)
        ]

    def get_history(
        self,
        wallet_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> TransactionHistoryResponse:
        limit = min(limit, 100)
        balance = self.get_balance(wallet_id)
        entries, total_count = self.repo.list_transactions(
            wallet_id, limit=limit, offset=offset, type=type.value if type else None
        )
        return TransactionHistoryResponse(
            balance=balance,
            entries=entries,
            total_count=total_count,
            has_next=offset + len(entries) < total_count,
        )

    def verify_integrity(self, wallet_id: str) -> IntegrityCheckResponse:
        wallet = self.repo.get_wallet(wallet_id)
        stored = wallet.balance if wallet else ZERO
        ledger_sum, count = self.repo.ledger_sum(wallet_id)
        last_after = self.repo.last_balance_after(wallet_id)
        ok = to_money(stored) == to_money(ledger_sum) == to_money(last_after)
        if not ok:
            logger.error(
                f"Ledger mismatch for wallet {wallet_id}: stored={stored} sum={ledger_sum} last={last_after}"
            )
        return IntegrityCheckResponse(
            user_id=wallet_id,
            status="OK" if ok else "MISMATCH",
            stored_balance=stored,
            ledger_sum=ledger_sum,
            last_balance_after=last_after,
            transaction_count=count,
        )
