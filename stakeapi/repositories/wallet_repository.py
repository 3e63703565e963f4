"""
Wallet / ledger repository.

Storage rules for the ledger:
- ``append`` is the only code path that changes ``wallets.balance`` and it
  always writes the matching ledger row in the same flush.
- Callers lock the wallet row with ``get_wallet_for_update`` first, so the
  balance read and the write happen inside one transaction.
- Nothing here commits; the ledger service owns transaction boundaries.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from stakeapi.models.wallet import (
    LedgerTransaction as LedgerTransactionModel,
    TransactionStatus,
    Wallet as WalletModel,
)
from stakeapi.repositories.base import BaseRepository
from stakeapi.schemas.wallet import LedgerTransactionEntry, WalletResponse
from stakeapi.utils.money import ZERO


class WalletRepository(BaseRepository[LedgerTransactionModel, LedgerTransactionEntry]):
    def __init__(self, db: Session):
        super().__init__(LedgerTransactionModel, LedgerTransactionEntry, db)

    # ------------------------------------------------------------------
    # wallets
    # ------------------------------------------------------------------

    def get_wallet(self, user_id: str) -> Optional[WalletResponse]:
        wallet = self.db.get(WalletModel, user_id)
        return WalletResponse.model_validate(wallet) if wallet else None

    def get_wallet_for_update(self, user_id: str) -> Optional[WalletModel]:
        return (
            self.db.query(WalletModel)
            .filter(WalletModel.user_id == user_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def insert_wallet_if_missing(self, user_id: str) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING. Returns True if this call created it."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(WalletModel).on_conflict_do_nothing(
                index_elements=["user_id"]
            )
        elif dialect == "sqlite":
            stmt = sqlite.insert(WalletModel).on_conflict_do_nothing(
                index_elements=["user_id"]
            )
        else:
            if self.db.get(WalletModel, user_id) is not None:
                return False
            self.db.add(WalletModel(user_id=user_id, balance=ZERO))
            self.db.flush()
            return True

        result = self.db.execute(
            stmt.values(user_id=user_id, balance=ZERO)
        )
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # ledger rows
    # ------------------------------------------------------------------

    def append(
        self,
        wallet: WalletModel,
        amount: Decimal,
        type: str,
        description: str,
        reference: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        status: str = TransactionStatus.COMPLETED.value,
        metadata: Optional[dict] = None,
        external_id: Optional[str] = None,
    ) -> LedgerTransactionModel:
        """Write one ledger row and move the locked wallet's balance with it."""
        new_balance = wallet.balance + amount
        wallet.balance = new_balance
        entry = LedgerTransactionModel(
            wallet_id=wallet.user_id,
            type=type,
            amount=amount,
            balance_after=new_balance,
            description=description,
            status=status,
            reference=reference,
            idempotency_key=idempotency_key,
            external_id=external_id,
            extra=metadata or {},
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def find_by_idempotency_key(self, key: str) -> Optional[LedgerTransactionModel]:
        return (
            self.db.query(LedgerTransactionModel)
            .filter(LedgerTransactionModel.idempotency_key == key)
            .first()
        )

    def find_transaction(
        self, reference: str, type: str, wallet_id: Optional[str] = None
    ) -> Optional[LedgerTransactionModel]:
        query = self.db.query(LedgerTransactionModel).filter(
            LedgerTransactionModel.reference == reference,
            LedgerTransactionModel.type == type,
        )
        if wallet_id is not None:
            query = query.filter(LedgerTransactionModel.wallet_id == wallet_id)
        return query.order_by(LedgerTransactionModel.id.asc()).first()

    def transactions_for_reference(self, reference: str) -> List[LedgerTransactionModel]:
        return (
            self.db.query(LedgerTransactionModel)
            .filter(LedgerTransactionModel.reference == reference)
            .order_by(LedgerTransactionModel.id.asc())
            .all()
        )

    def list_transactions(
        self,
        wallet_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[str] = None,
    ) -> Tuple[List[LedgerTransactionEntry], int]:
        query = self.db.query(LedgerTransactionModel).filter(
            LedgerTransactionModel.wallet_id == wallet_id
        )
        if type:
            query = query.filter(LedgerTransactionModel.type == type)

        total_count = query.count()
        rows = (
            query.order_by(LedgerTransactionModel.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._to_schema(row) for row in rows], total_count

    def sum_by_type(self, wallet_id: str) -> Dict[str, Decimal]:
        rows = (
            self.db.query(
                LedgerTransactionModel.type, func.sum(LedgerTransactionModel.amount)
            )
            .filter(LedgerTransactionModel.wallet_id == wallet_id)
            .group_by(LedgerTransactionModel.type)
            .all()
        )
        return {row[0]: Decimal(row[1] or 0) for row in rows}

    def ledger_sum(self, wallet_id: str) -> Tuple[Decimal, int]:
        total, count = (
            self.db.query(
                func.coalesce(func.sum(LedgerTransactionModel.amount), 0),
                func.count(LedgerTransactionModel.id),
            )
            .filter(LedgerTransactionModel.wallet_id == wallet_id)
            .one()
        )
        return Decimal(total or 0), int(count or 0)

    def last_balance_after(self, wallet_id: str) -> Decimal:
        latest = (
            self.db.query(LedgerTransactionModel)
            .filter(LedgerTransactionModel.wallet_id == wallet_id)
            .order_by(LedgerTransactionModel.id.desc())
            .first()
        )
        return latest.balance_after if latest else ZERO

    def get_transaction_for_update(self, transaction_id: int) -> Optional[LedgerTransactionModel]:
        return self._get_model_for_update(transaction_id)

    def mark_disbursed(
        self,
        entry: LedgerTransactionModel,
        external_id: Optional[str],
        disbursed_at: datetime,
    ) -> LedgerTransactionModel:
        entry.status = TransactionStatus.COMPLETED.value
        entry.external_id = external_id
        entry.disbursed_at = disbursed_at
        self.db.flush()
        return entry
