"""
Wallet and ledger tables.

Every movement of funds is an append-only row in ``ledger_transactions``;
``wallets.balance`` is a cached running total that is only written together
with a new ledger row, under a row lock on the wallet.

Rules:
1. Immutable: a ledger row is never edited, except that a pending
   withdrawal may be marked ``completed`` once the payout is disbursed.
2. Complete: sum(amount) over a wallet's rows == wallet.balance.
3. Idempotent: ``idempotency_key`` is unique, so a replayed operation
   returns the row that was already written.
4. Traceable: ``balance_after`` records the running balance per row.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from stakeapi.models.base import BaseModel, BigIntPK

Money = Numeric(18, 2)


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    CHALLENGE_DEDUCTION = "challenge_deduction"
    CHALLENGE_REWARD = "challenge_reward"
    ADMIN_FEE = "admin_fee"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    TOURNAMENT_ENTRY = "tournament_entry"
    TOURNAMENT_REWARD = "tournament_reward"
    TOURNAMENT_REFUND = "tournament_refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class Wallet(BaseModel):
    __tablename__ = "wallets"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    def __repr__(self):
        return f"<Wallet(user_id={self.user_id}, balance={self.balance})>"


class LedgerTransaction(BaseModel):
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_ledger_idempotency_key"),
        Index("idx_ledger_wallet_id", "wallet_id", "id"),
        Index("idx_ledger_reference", "reference", "type"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("wallets.user_id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # signed: credits positive, debits negative
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TransactionStatus.COMPLETED.value
    )
    # challenge / tournament id
    reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    disbursed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    extra: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
