from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from stakeapi.core.exceptions import InsufficientFunds, PaymentGatewayError, ValidationError
from stakeapi.models.wallet import LedgerTransaction, TransactionStatus
from stakeapi.schemas.challenge import ScorecardSubmit
from stakeapi.services.payment_gateway import (
    HttpPaymentGateway,
    ManualPaymentGateway,
    PayoutResult,
    PayoutStatus,
)
from stakeapi.services.wallet_service import WalletService


@pytest.fixture
def gateway():
    gateway = Mock()
    gateway.name = "mock"
    gateway.deposit = AsyncMock(return_value="dep-123")
    gateway.payout = AsyncMock(return_value=PayoutResult(status=PayoutStatus.SUCCEEDED, external_id="out-9"))
    return gateway


@pytest.fixture
def wallet_service(db, settings, gateway):
    return WalletService(db, settings, payment_gateway=gateway)


@pytest.mark.asyncio
class TestDeposit:
    async def test_confirmed_charge_is_credited(self, wallet_service, users, gateway):
        result = await wallet_service.deposit(users["alice"], Decimal("50"), payment_method="card")

        assert result.balance == Decimal("150")
        assert result.transaction.external_id == "dep-123"
        assert result.transaction.idempotency_key == "deposit:dep-123"
        gateway.deposit.assert_awaited_once_with("u-alice", Decimal("50.00"), {"payment_method": "card"})

    async def test_gateway_callback_replay_credits_once(self, wallet_service, users):
        await wallet_service.deposit(users["alice"], Decimal("50"))
        replay = await wallet_service.deposit(users["alice"], Decimal("50"))

        assert replay.replayed is True
        assert wallet_service.get_wallet(users["alice"]).balance == Decimal("150")

    async def test_gateway_failure_writes_nothing(self, wallet_service, users, gateway, db):
        wallet_service.get_wallet(users["alice"])
        rows_before = db.query(LedgerTransaction).count()
        gateway.deposit.side_effect = PaymentGatewayError("card declined")

        with pytest.raises(PaymentGatewayError):
            await wallet_service.deposit(users["alice"], Decimal("50"))

        assert db.query(LedgerTransaction).count() == rows_before
        assert wallet_service.get_wallet(users["alice"]).balance == Decimal("100")

    async def test_non_positive_deposit_is_rejected(self, wallet_service, users, gateway):
        with pytest.raises(ValidationError):
            await wallet_service.deposit(users["alice"], Decimal("0"))
        gateway.deposit.assert_not_awaited()


@pytest.mark.asyncio
class TestWithdraw:
    async def test_successful_payout_completes_the_debit(self, wallet_service, users):
        result = await wallet_service.withdraw(users["bob"], Decimal("30"), "bob@example.com")

        assert result.disbursed is True
        assert result.balance == Decimal("70")
        assert result.transaction.status == TransactionStatus.COMPLETED.value
        assert result.transaction.external_id == "out-9"

    async def test_manual_payout_stays_pending_until_disbursed(self, db, settings, users):
        service = WalletService(db, settings, payment_gateway=ManualPaymentGateway())

        result = await service.withdraw(users["bob"], Decimal("30"), "bob@example.com")

        assert result.disbursed is False
        assert result.transaction.status == TransactionStatus.PENDING.value
        assert service.get_wallet(users["bob"]).balance == Decimal("70")

        entry = service.disburse(result.transaction.id, "bank-ref-1")
        assert entry.status == TransactionStatus.COMPLETED.value
        assert service.get_wallet(users["bob"]).balance == Decimal("70")

    async def test_failed_payout_keeps_pending_debit(self, wallet_service, users, gateway):
        gateway.payout.return_value = PayoutResult(status=PayoutStatus.FAILED, message="bank offline")

        result = await wallet_service.withdraw(users["bob"], Decimal("30"), "bob@example.com")

        assert result.disbursed is False
        assert result.transaction.status == TransactionStatus.PENDING.value
        assert "support" in result.message

    async def test_overdraft_never_reaches_the_gateway(self, wallet_service, users, gateway):
        with pytest.raises(InsufficientFunds):
            await wallet_service.withdraw(users["bob"], Decimal("100.01"), "bob@example.com")
        gateway.payout.assert_not_awaited()


class TestAdminAndReporting:
    def test_admin_adjustment_credit_and_debit(self, wallet_service, users):
        credited = wallet_service.admin_adjust(users["admin"], "u-carol", Decimal("25"), "goodwill")
        debited = wallet_service.admin_adjust(users["admin"], "u-carol", Decimal("-5"), "correction")

        assert credited.balance == Decimal("125")
        assert debited.balance == Decimal("120")
        assert debited.transaction.metadata["reason"] == "correction"

    def test_admin_adjustment_cannot_overdraw(self, wallet_service, users):
        with pytest.raises(InsufficientFunds):
            wallet_service.admin_adjust(users["admin"], "u-carol", Decimal("-500"), "too much")

    def test_stats_and_platform_wallet_after_a_settlement(
        self, wallet_service, challenge_service, active_challenge, users
    ):
        challenge = active_challenge()
        for who in ("alice", "bob"):
            challenge_service.submit_scorecard(
                challenge.id,
                users[who],
                ScorecardSubmit(score_a=2, score_b=0, player_a_username="AliceGT", player_b_username="BobTheBuilder"),
            )

        stats = wallet_service.get_transaction_stats(users["alice"])
        assert stats.total_deposits == Decimal("100.00")
        assert stats.total_deductions == Decimal("10.00")
        assert stats.total_rewards == Decimal("19.00")
        assert stats.transaction_count == 3

        platform = wallet_service.get_platform_wallet()
        assert platform.balance == Decimal("1.00")
        assert platform.total_fees == Decimal("1.00")

        ledger = wallet_service.get_challenge_ledger(challenge.id)
        assert ledger.balanced is True
        assert ledger.total_escrowed == Decimal("20.00")
        assert wallet_service.verify_integrity("u-alice").status == "OK"


@pytest.mark.asyncio
class TestHttpPaymentGateway:
    async def test_deposit_error_raises(self, settings):
        gateway = HttpPaymentGateway(
            settings, transport=httpx.MockTransport(lambda request: httpx.Response(402, text="declined"))
        )
        with pytest.raises(PaymentGatewayError) as exc_info:
            await gateway.deposit("u-alice", Decimal("10"), {})
        assert exc_info.value.details["upstream_status"] == 402

    async def test_deposit_returns_external_id(self, settings):
        gateway = HttpPaymentGateway(
            settings, transport=httpx.MockTransport(lambda request: httpx.Response(201, json={"id": "ch_1"}))
        )
        assert await gateway.deposit("u-alice", Decimal("10"), {}) == "ch_1"

    async def test_payout_error_is_reported_not_raised(self, settings):
        gateway = HttpPaymentGateway(
            settings, transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        result = await gateway.payout("u-bob", Decimal("10"), "bob@example.com")
        assert result.status == PayoutStatus.FAILED

    async def test_payout_status_from_body(self, settings):
        gateway = HttpPaymentGateway(
            settings,
            transport=httpx.MockTransport(
                lambda request: httpx.Response(202, json={"id": "po_1", "status": "succeeded"})
            ),
        )
        result = await gateway.payout("u-bob", Decimal("10"), "bob@example.com")
        assert result.status == PayoutStatus.SUCCEEDED
        assert result.external_id == "po_1"
