"""
Tests for the Cashu wallet ledger: send / receive / mint / melt, the
operation journal and its recovery sweep.
"""
import asyncio
from unittest.mock import patch

import pytest
from coincurve import PublicKey
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.exceptions import (
    CashuPaymentError,
    CashuPluginError,
    ErrorCode,
    InsufficientBalanceError,
    MintUnavailableError,
    NotFoundException,
)
from app.db.database import Base
from app.db.models.failed_transaction import FailedTransaction, MintOperationType, Resolution
from app.db.models.mint import Mint, MintKeys
from app.db.models.stored_proof import ProofState, StoredProof
from app.domain.services.cashu import CashuToken, CashuWalletLedger, PollResult, Proof
from app.domain.services.cashu.crypto import verify_proof
from app.domain.services.cashu.utils import sum_amounts
from tests.conftest import TEST_MINT_URL, FakeMint

STORE = "store-1"


async def _journal_rows(db: AsyncSession) -> list[FailedTransaction]:
    result = await db.execute(select(FailedTransaction).order_by(FailedTransaction.created_at))
    return list(result.scalars().all())


def _valid_at_mint(mint: FakeMint, proofs) -> bool:
    return all(
        verify_proof(mint.private_keys[proof.amount], PublicKey(bytes.fromhex(proof.C)), proof.secret)
        for proof in proofs
    )


class TestBalanceAndKeysets:

    @pytest.mark.unit
    async def test_empty_wallet_balance_is_zero(self, wallet_ledger: CashuWalletLedger):
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 0

    @pytest.mark.unit
    async def test_balance_counts_only_unspent(self, wallet_ledger, fund_wallet, db_session):
        rows = await fund_wallet(STORE, [8, 4, 1])
        rows[0].state = ProofState.SPENT
        await db_session.commit()

        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 5
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL + "/") == 5
        assert await wallet_ledger.get_balance("other-store", TEST_MINT_URL) == 0

    @pytest.mark.unit
    async def test_first_operation_registers_mint_and_caches_keyset(
        self, wallet_ledger, fund_wallet, fake_mint, db_session
    ):
        await fund_wallet(STORE, [16])
        await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)

        mint = (await db_session.execute(select(Mint))).scalar_one()
        assert mint.url == TEST_MINT_URL and mint.is_active
        keys_row = (await db_session.execute(select(MintKeys))).scalar_one()
        assert keys_row.keyset_id == fake_mint.keyset_id
        assert keys_row.keys["1"] == fake_mint.keys[1]

    @pytest.mark.unit
    async def test_inactive_mint_is_refused(self, wallet_ledger, fund_wallet, db_session):
        db_session.add(Mint(url=TEST_MINT_URL, unit="sat", is_active=False))
        await db_session.commit()
        await fund_wallet(STORE, [16])

        with pytest.raises(CashuPaymentError) as exc_info:
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        assert exc_info.value.error_code == ErrorCode.MINT_INACTIVE

    @pytest.mark.unit
    async def test_invalid_mint_url_is_refused(self, wallet_ledger):
        with pytest.raises(CashuPaymentError):
            await wallet_ledger.send(STORE, "mint.test", "sat", 4)

    @pytest.mark.unit
    async def test_keyset_with_mismatched_id_is_skipped(self, wallet_ledger, fund_wallet, fake_mint):
        """keyset שה-id שלו לא נגזר מהמפתחות לא נכנס ל-cache"""
        fake_mint.keyset_id = "00" + "ab" * 7
        await fund_wallet(STORE, [16])

        with pytest.raises(CashuPaymentError) as exc_info:
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        assert exc_info.value.error_code == ErrorCode.MINT_INACTIVE

    @pytest.mark.unit
    async def test_unit_without_keyset_is_refused(self, wallet_ledger, fund_wallet):
        await fund_wallet(STORE, [16])
        with pytest.raises(CashuPaymentError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "usd", 4)

    @pytest.mark.unit
    async def test_keyset_cache_is_reused_within_ttl(self, wallet_ledger, fund_wallet, fake_mint):
        await fund_wallet(STORE, [16, 16])
        calls = []
        original = fake_mint.get_keysets

        async def counting_get_keysets():
            calls.append(1)
            return await original()

        fake_mint.get_keysets = counting_get_keysets
        await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        assert len(calls) == 1


class TestSend:

    @pytest.mark.unit
    async def test_send_splits_and_keeps_change(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [16, 8])

        proofs = await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 10)

        assert sorted(p.amount for p in proofs) == [2, 8]
        assert _valid_at_mint(fake_mint, proofs)
        # 16 נשלח ל-swap, 8 נשאר, 6 עודף חזר לארנק
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 14

        [row] = await _journal_rows(db_session)
        assert row.operation_type == MintOperationType.SWAP
        assert row.resolution == Resolution.SUCCESS
        assert [p["amount"] for p in row.used_proofs] == [16]

    @pytest.mark.unit
    async def test_sent_proofs_are_not_kept_in_wallet(self, wallet_ledger, fund_wallet, db_session):
        await fund_wallet(STORE, [16])
        proofs = await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 16)

        secrets = [p.secret for p in proofs]
        count = await db_session.execute(
            select(func.count()).select_from(StoredProof).where(StoredProof.secret.in_(secrets))
        )
        assert count.scalar_one() == 0
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 0

    @pytest.mark.unit
    async def test_insufficient_balance(self, wallet_ledger, fund_wallet, db_session):
        await fund_wallet(STORE, [8])

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 10)

        assert exc_info.value.details["available_amount"] == 8
        assert await _journal_rows(db_session) == []

    @pytest.mark.unit
    async def test_non_positive_amount(self, wallet_ledger):
        with pytest.raises(CashuPaymentError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 0)

    @pytest.mark.unit
    async def test_input_fee_is_covered(self, db_session):
        mint = FakeMint(input_fee_ppk=1000)
        ledger = CashuWalletLedger(db_session, mint_client_factory=mint.client)
        rows = [
            StoredProof(keyset_id=p.id, amount=p.amount, secret=p.secret, C=p.C,
                        store_id=STORE, mint_url=TEST_MINT_URL, unit="sat")
            for p in mint.issue_proofs([8, 4])
        ]
        db_session.add_all(rows)
        await db_session.commit()

        proofs = await ledger.send(STORE, TEST_MINT_URL, "sat", 8)

        assert sum_amounts(proofs) == 8
        # שני inputs, fee של 1 sat לכל אחד
        assert await ledger.get_balance(STORE, TEST_MINT_URL) == 2

    @pytest.mark.unit
    async def test_definite_rejection_restores_inputs(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [16, 8])
        fake_mint.fail_next = CashuPaymentError("outputs already signed")

        with pytest.raises(CashuPaymentError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 10)

        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 24
        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.FAILED
        assert "outputs already signed" in row.details

    @pytest.mark.unit
    async def test_rejection_keeps_proofs_spent_elsewhere_debited(
        self, wallet_ledger, fund_wallet, fake_mint, db_session
    ):
        """proof שנוצל מחוץ ל-ledger לא חוזר ליתרה אחרי דחייה של ה-mint"""
        spent_elsewhere, still_ours = await fund_wallet(STORE, [16, 8])
        fake_mint.spend([spent_elsewhere])

        with pytest.raises(CashuPaymentError, match="already spent"):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 20)

        assert "check_state" in fake_mint.calls
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 8
        await db_session.refresh(spent_elsewhere)
        await db_session.refresh(still_ours)
        assert spent_elsewhere.state == ProofState.SPENT
        assert still_ours.state == ProofState.UNSPENT
        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.FAILED

        # הבחירה הבאה לא נופלת שוב על אותו proof
        proofs = await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 8)
        assert sum_amounts(proofs) == 8

    @pytest.mark.unit
    async def test_rejection_with_unreachable_checkstate_stays_pending(
        self, wallet_ledger, fund_wallet, fake_mint, db_session
    ):
        await fund_wallet(STORE, [16, 8])
        fake_mint.fail_next = CashuPaymentError("outputs already signed")

        with patch.object(fake_mint, "check_state", side_effect=MintUnavailableError(TEST_MINT_URL, "timeout")):
            with pytest.raises(CashuPaymentError):
                await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 10)

        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.PENDING
        assert "MintUnavailableError" in row.details

    @pytest.mark.unit
    async def test_lost_response_leaves_row_pending(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [16, 8])
        fake_mint.drop_response = True

        with pytest.raises(CashuPluginError) as exc_info:
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 10)

        [row] = await _journal_rows(db_session)
        assert exc_info.value.details["operation_id"] == row.id
        assert row.resolution == Resolution.PENDING
        # ה-input נשאר מחויב עד שה-sweep יכריע
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 8

    @pytest.mark.unit
    async def test_lost_response_is_recovered_by_restore(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [16, 8])
        fake_mint.drop_response = True
        with pytest.raises(CashuPluginError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 10)
        [row] = await _journal_rows(db_session)

        result = await wallet_ledger.retry_failed_transaction(row.id)

        assert result == PollResult.SUCCESS
        assert "restore" in fake_mint.calls
        # the send never reached a customer: every output goes back to the wallet
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 24
        await db_session.refresh(row)
        assert row.resolution == Resolution.SUCCESS


class TestConcurrentSpend:

    @pytest.mark.unit
    async def test_stale_selection_cannot_reserve_spent_proofs(self, wallet_ledger, fund_wallet, db_session):
        """ה-UPDATE המוגן לא מחייב proofs שכבר נלקחו"""
        await fund_wallet(STORE, [64])
        stale = await wallet_ledger._unspent_proofs(STORE, TEST_MINT_URL, "sat")

        await db_session.execute(
            update(StoredProof)
            .values(state=ProofState.SPENT)
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        row = wallet_ledger._journal(
            STORE, TEST_MINT_URL, "sat", MintOperationType.SWAP,
            used_proofs=[proof.to_wire() for proof in stale],
            output_data={},
        )
        with pytest.raises(InsufficientBalanceError):
            await wallet_ledger._reserve(stale, row.id, 64, "sat")

        assert await _journal_rows(db_session) == []

    @pytest.mark.unit
    async def test_two_sessions_cannot_spend_same_proof(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        mint = FakeMint()

        try:
            async with sessions() as setup:
                [proof] = mint.issue_proofs([64])
                setup.add(StoredProof(keyset_id=proof.id, amount=64, secret=proof.secret, C=proof.C,
                                      store_id=STORE, mint_url=TEST_MINT_URL, unit="sat"))
                await setup.commit()

            mint.swap_gate = asyncio.Event()
            async with sessions() as session_a, sessions() as session_b:
                ledger_a = CashuWalletLedger(session_a, mint_client_factory=mint.client)
                ledger_b = CashuWalletLedger(session_b, mint_client_factory=mint.client)

                task_a = asyncio.create_task(ledger_a.send(STORE, TEST_MINT_URL, "sat", 64))
                await asyncio.wait_for(mint.swap_entered.wait(), timeout=5)

                with pytest.raises(InsufficientBalanceError):
                    await ledger_b.send(STORE, TEST_MINT_URL, "sat", 64)
                await session_b.rollback()

                mint.swap_gate.set()
                proofs = await asyncio.wait_for(task_a, timeout=5)

                assert sum_amounts(proofs) == 64
                assert mint.calls.count("swap") == 1
        finally:
            await engine.dispose()


class TestReceive:

    @pytest.mark.unit
    async def test_receive_credits_token_amount(self, wallet_ledger, fake_mint, db_session):
        token = fake_mint.token([8, 2])

        received = await wallet_ledger.receive_token(STORE, token)

        assert received == 10
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 10
        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.SUCCESS
        assert row.output_data["inputs_owned"] is False

    @pytest.mark.unit
    async def test_receive_deducts_input_fee(self, db_session):
        mint = FakeMint(input_fee_ppk=500)
        ledger = CashuWalletLedger(db_session, mint_client_factory=mint.client)

        received = await ledger.receive_token(STORE, "cashu:" + mint.token([8, 2]))

        assert received == 9
        assert await ledger.get_balance(STORE, TEST_MINT_URL) == 9

    @pytest.mark.unit
    async def test_token_with_wallet_proofs_is_already_received(self, wallet_ledger, fund_wallet):
        rows = await fund_wallet(STORE, [4])
        token = CashuToken(
            mint=TEST_MINT_URL,
            proofs=[Proof(id=rows[0].keyset_id, amount=4, secret=rows[0].secret, C=rows[0].C)],
        ).encode()

        with pytest.raises(CashuPaymentError, match="already received"):
            await wallet_ledger.receive_token(STORE, token)

    @pytest.mark.unit
    async def test_spent_token_fails_and_credits_nothing(self, wallet_ledger, fake_mint, db_session):
        token = fake_mint.token([8])
        await wallet_ledger.receive_token("other-store", token)

        with pytest.raises(CashuPaymentError):
            await wallet_ledger.receive_token(STORE, token)

        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 0
        rows = await _journal_rows(db_session)
        assert rows[-1].resolution == Resolution.FAILED

    @pytest.mark.unit
    async def test_malformed_token(self, wallet_ledger):
        with pytest.raises(CashuPaymentError) as exc_info:
            await wallet_ledger.receive_token(STORE, "cashuBnotsupported")
        assert exc_info.value.error_code == ErrorCode.INVALID_TOKEN

    @pytest.mark.unit
    async def test_token_from_unknown_keyset(self, wallet_ledger, fake_mint):
        other = FakeMint()
        with pytest.raises(CashuPaymentError) as exc_info:
            await wallet_ledger.receive_token(STORE, other.token([4]))
        assert exc_info.value.details["keysets"] == [other.keyset_id]


class TestMint:

    @pytest.mark.unit
    async def test_mint_paid_quote(self, wallet_ledger, fake_mint, db_session):
        quote_id = fake_mint.create_mint_quote(21)

        assert await wallet_ledger.mint(STORE, TEST_MINT_URL, "sat", quote_id, 21) == 21
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 21
        [row] = await _journal_rows(db_session)
        assert row.operation_type == MintOperationType.MINT
        assert row.mint_quote_id == quote_id

    @pytest.mark.unit
    async def test_unpaid_quote_is_rejected(self, wallet_ledger, fake_mint, db_session):
        quote_id = fake_mint.create_mint_quote(21, state="UNPAID")

        with pytest.raises(CashuPaymentError):
            await wallet_ledger.mint(STORE, TEST_MINT_URL, "sat", quote_id, 21)

        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.FAILED
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 0

    @pytest.mark.unit
    async def test_lost_mint_response_recovered(self, wallet_ledger, fake_mint, db_session):
        quote_id = fake_mint.create_mint_quote(21)
        fake_mint.drop_response = True

        with pytest.raises(CashuPluginError):
            await wallet_ledger.mint(STORE, TEST_MINT_URL, "sat", quote_id, 21)
        [row] = await _journal_rows(db_session)

        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.SUCCESS
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 21

    @pytest.mark.unit
    async def test_mint_never_issued_resolves_failed(self, wallet_ledger, fake_mint, db_session):
        quote_id = fake_mint.create_mint_quote(21, state="UNPAID")
        fake_mint.fail_next = MintUnavailableError(TEST_MINT_URL, "timeout")

        with pytest.raises(CashuPluginError):
            await wallet_ledger.mint(STORE, TEST_MINT_URL, "sat", quote_id, 21)
        [row] = await _journal_rows(db_session)

        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.FAILED
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 0


class TestMelt:

    @pytest.mark.unit
    async def test_melt_pays_invoice_and_returns_change(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [64, 32, 4])
        fake_mint.invoice_amounts["lnbc500n1test"] = 50

        result = await wallet_ledger.melt(STORE, TEST_MINT_URL, "sat", "lnbc500n1test")

        assert result.paid
        assert result.amount == 50
        # 64 input - 50 invoice = 14 change via blank outputs
        assert result.change_amount == 14
        assert result.payment_preimage == "00" * 32
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 50

        [row] = await _journal_rows(db_session)
        assert row.operation_type == MintOperationType.MELT
        assert row.melt_quote_id == result.quote_id
        assert row.lightning_invoice == "lnbc500n1test"
        assert row.resolution == Resolution.SUCCESS

    @pytest.mark.unit
    async def test_melt_needs_fee_reserve(self, wallet_ledger, fund_wallet, fake_mint):
        await fund_wallet(STORE, [32, 16, 2])
        fake_mint.invoice_amounts["lnbc"] = 50

        with pytest.raises(InsufficientBalanceError):
            await wallet_ledger.melt(STORE, TEST_MINT_URL, "sat", "lnbc")

    @pytest.mark.unit
    async def test_unpaid_melt_restores_inputs(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [64])
        fake_mint.invoice_amounts["lnbc"] = 50
        fake_mint.melt_state = "UNPAID"

        with pytest.raises(CashuPaymentError, match="Lightning payment failed"):
            await wallet_ledger.melt(STORE, TEST_MINT_URL, "sat", "lnbc")

        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 64
        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.FAILED

    @pytest.mark.unit
    async def test_pending_melt_is_returned_and_settled_by_retry(
        self, wallet_ledger, fund_wallet, fake_mint, db_session
    ):
        await fund_wallet(STORE, [64, 32, 4])
        fake_mint.invoice_amounts["lnbc"] = 50
        fake_mint.melt_state = "PENDING"

        result = await wallet_ledger.melt(STORE, TEST_MINT_URL, "sat", "lnbc")

        assert result.state == "PENDING"
        assert not result.paid
        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.PENDING
        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.PENDING

        fake_mint.settle_pending_melt(result.quote_id)
        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.SUCCESS
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 36

    @pytest.mark.unit
    async def test_pending_melt_that_fails_restores_inputs(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [64, 32, 4])
        fake_mint.invoice_amounts["lnbc"] = 50
        fake_mint.melt_state = "PENDING"
        result = await wallet_ledger.melt(STORE, TEST_MINT_URL, "sat", "lnbc")
        [row] = await _journal_rows(db_session)

        fake_mint.settle_pending_melt(result.quote_id, paid=False)

        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.FAILED
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 100


class TestRecoverySweep:

    @pytest.mark.unit
    async def test_retry_unknown_operation(self, wallet_ledger):
        with pytest.raises(NotFoundException):
            await wallet_ledger.retry_failed_transaction("missing")

    @pytest.mark.unit
    async def test_retry_resolved_row_returns_its_resolution(self, wallet_ledger, fund_wallet, db_session):
        await fund_wallet(STORE, [16])
        await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        [row] = await _journal_rows(db_session)

        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.SUCCESS

    @pytest.mark.unit
    async def test_sweep_skips_rows_inside_grace_period(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [16])
        fake_mint.drop_response = True
        with pytest.raises(CashuPluginError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)

        stats = await wallet_ledger.retry_failed_transactions()

        assert stats["checked"] == 0
        [row] = await _journal_rows(db_session)
        assert row.resolution == Resolution.PENDING

    @pytest.mark.unit
    async def test_sweep_resolves_due_rows(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        with patch.object(settings, "CASHU_RETRY_GRACE_SECONDS", 0):
            await fund_wallet(STORE, [16, 64])
            fake_mint.drop_response = True
            with pytest.raises(CashuPluginError):
                await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)

            fake_mint.fail_next = MintUnavailableError(TEST_MINT_URL, "timeout")
            with pytest.raises(CashuPluginError):
                await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 40)

            stats = await wallet_ledger.retry_failed_transactions()

        assert stats["checked"] == 2
        assert stats["success"] == 1
        # the second swap never reached the mint: inputs unspent there
        assert stats["failed"] == 1
        assert await wallet_ledger.get_balance(STORE, TEST_MINT_URL) == 80
        assert await wallet_ledger.list_failed_transactions() == []

    @pytest.mark.unit
    async def test_unreachable_mint_schedules_next_retry(self, wallet_ledger, fund_wallet, fake_mint, db_session):
        await fund_wallet(STORE, [16])
        fake_mint.drop_response = True
        with pytest.raises(CashuPluginError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        [row] = await _journal_rows(db_session)

        async def offline(ys):
            raise MintUnavailableError(TEST_MINT_URL, "connection refused")

        fake_mint.check_state = offline
        assert await wallet_ledger.retry_failed_transaction(row.id) == PollResult.PENDING

        await db_session.refresh(row)
        assert row.retry_count == 1
        assert row.last_retried is not None
        assert row.next_retry_at > row.last_retried
        assert "connection refused" in row.details

    @pytest.mark.unit
    async def test_list_failed_transactions_filters(self, wallet_ledger, fund_wallet, fake_mint):
        await fund_wallet(STORE, [16])
        await fund_wallet("store-2", [16])
        fake_mint.drop_response = True
        with pytest.raises(CashuPluginError):
            await wallet_ledger.send(STORE, TEST_MINT_URL, "sat", 4)
        await wallet_ledger.send("store-2", TEST_MINT_URL, "sat", 4)

        pending = await wallet_ledger.list_failed_transactions()
        assert [row.store_id for row in pending] == [STORE]
        assert await wallet_ledger.list_failed_transactions(store_id="store-2") == []
        resolved = await wallet_ledger.list_failed_transactions(resolution=Resolution.SUCCESS)
        assert [row.store_id for row in resolved] == ["store-2"]
        assert len(await wallet_ledger.list_failed_transactions(resolution=None)) == 2
