from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from stakeapi.models.wallet import TransactionType


class WalletResponse(BaseModel):
    """Wallet balance"""

    user_id: str = Field(..., description="Wallet owner")
    balance: Decimal = Field(..., description="Current balance")

    class Config:
        from_attributes = True


class LedgerTransactionEntry(BaseModel):
    """Single ledger row"""

    id: int = Field(..., description="Transaction ID")
    wallet_id: str = Field(..., description="Wallet owner")
    type: TransactionType = Field(..., description="Transaction type")
    amount: Decimal = Field(..., description="Signed amount (credit > 0, debit < 0)")
    balance_after: Decimal = Field(..., description="Balance after this row")
    description: str = Field("", description="Human readable description")
    status: str = Field(..., description="pending | completed")
    reference: Optional[str] = Field(None, description="Challenge or tournament ID")
    idempotency_key: Optional[str] = Field(None, description="Replay guard")
    external_id: Optional[str] = Field(None, description="Payment gateway ID")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias="extra", description="Free-form metadata"
    )
    created_at: Optional[datetime] = Field(None, description="Created at")

    class Config:
        from_attributes = True
        populate_by_name = True


class LedgerResult(BaseModel):
    """Outcome of a credit/debit"""

    transaction: LedgerTransactionEntry
    balance: Decimal = Field(..., description="Wallet balance after the operation")
    replayed: bool = Field(False, description="True when the idempotency key already existed")


class TransactionHistoryResponse(BaseModel):
    balance: Decimal = Field(..., description="Current balance")
    entries: List[LedgerTransactionEntry] = Field(..., description="Newest first")
    total_count: int = Field(..., description="Total rows")
    has_next: bool = Field(..., description="More pages available")


class TransactionStatsResponse(BaseModel):
    total_deposits: Decimal = Decimal("0")
    total_withdrawals: Decimal = Decimal("0")
    total_rewards: Decimal = Decimal("0")
    total_deductions: Decimal = Decimal("0")
    total_refunds: Decimal = Decimal("0")
    total_adjustments: Decimal = Decimal("0")
    transaction_count: int = 0


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=16, decimal_places=2)
    payment_method: str = Field("manual", max_length=50)


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=16, decimal_places=2)
    destination: str = Field(..., min_length=3, max_length=255, description="Payout account / email")


class WithdrawalResponse(BaseModel):
    transaction: LedgerTransactionEntry
    balance: Decimal
    disbursed: bool = Field(..., description="False while the payout is still pending")
    message: str


class AdminAdjustmentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., description="Positive credits, negative debits")
    reason: str = Field(..., min_length=1, max_length=255)


class IntegrityCheckResponse(BaseModel):
    user_id: str
    status: str = Field(..., description="OK | MISMATCH")
    stored_balance: Decimal
    ledger_sum: Decimal
    last_balance_after: Decimal
    transaction_count: int


class PlatformWalletResponse(BaseModel):
    wallet_id: str
    balance: Decimal
    total_fees: Decimal


class ChallengeLedgerResponse(BaseModel):
    """Every transaction referencing one challenge"""

    challenge_id: str
    entries: List[LedgerTransactionEntry]
    total_escrowed: Decimal = Field(..., description="Sum of stake deductions")
    total_released: Decimal = Field(..., description="Rewards + fees + refunds, net of reversals")
    surplus: Decimal = Field(..., description="escrowed - released")
    balanced: bool


class DisburseRequest(BaseModel):
    external_id: Optional[str] = Field(None, max_length=255, description="Payout reference from the gateway")
