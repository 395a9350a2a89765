"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fakes for the collaborators: Redis, Cashu mint, BTCPay, email/SMS gateways
- Store settings and wallet funding factories
"""
import asyncio
import uuid
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from coincurve import PrivateKey, PublicKey
from fastapi import Depends
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import get_btcpay_client, get_rate_service, get_wallet_ledger
from app.core.config import settings
from app.core.exceptions import CashuPaymentError, MintUnavailableError
from app.db.database import Base, get_db, utcnow
from app.db.models.stored_proof import ProofState, StoredProof
from app.domain.models.reward_settings import StoreRewardSettings
from app.domain.services.cashu import CashuWalletLedger, Proof
from app.domain.services.cashu.crypto import (
    derive_keyset_id,
    hash_to_curve,
    new_secret,
    secret_to_y_hex,
    sign_blinded,
    verify_proof,
)
from app.domain.services.cashu.mint_client import KeysetInfo, MeltQuote
from app.domain.services.cashu.token import CashuToken
from app.domain.services.cashu.utils import input_fee, split_amount
from app.domain.services.clients.btcpay import PullPayment
from app.domain.services.payout_dispatcher import PayoutDispatcher
from app.domain.services.payout_providers import build_payout_providers
from app.domain.services.rate_service import RateService, StaticRateProvider
from app.domain.services.reward_service import RewardService
from app.domain.services.store_settings_service import StoreSettingsService
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-key"
TEST_MINT_URL = "https://mint.test"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


@pytest.fixture(autouse=True)
def set_admin_api_key():
    """מפתח admin קבוע לבדיקות ה-API"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield


# ============================================================================
# Circuit Breaker / sender caches
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_notification_senders():
    from app.domain.services.notifications import reset_senders
    reset_senders()
    yield
    reset_senders()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """תחליף ל-Redis לבדיקות - שומר כל הודעת pub/sub שפורסמה."""

    def __init__(self, subscribers: int = 1) -> None:
        self.published: list[tuple[str, str]] = []
        self.subscribers = subscribers
        self.fail_publish: Exception | None = None

    async def ping(self) -> bool:
        return True

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish is not None:
            raise self.fail_publish
        self.published.append((channel, message))
        return self.subscribers

    async def aclose(self) -> None:
        self.published.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Cashu mint
# ============================================================================

class FakeMint:
    """
    Cashu mint in memory with real secp256k1 keys.

    Signs blinded outputs, verifies inputs, keeps the spent set and every
    signature it issued (for /v1/restore). Failure injection:
    - ``fail_next``: raised by the next swap/melt/mint before anything happens
    - ``drop_response``: the next swap/melt/mint is executed, then the
      response is lost (MintUnavailableError)
    - ``swap_gate``: swap waits on this event after signalling ``swap_entered``
    """

    def __init__(self, mint_url: str = TEST_MINT_URL, unit: str = "sat", input_fee_ppk: int = 0, max_order: int = 20):
        self.mint_url = mint_url
        self.unit = unit
        self.input_fee_ppk = input_fee_ppk
        self.private_keys = {2 ** i: PrivateKey() for i in range(max_order + 1)}
        self.keys = {amount: key.public_key.format().hex() for amount, key in self.private_keys.items()}
        self.keyset_id = derive_keyset_id(self.keys)

        self.spent: set[str] = set()
        self.pending: set[str] = set()
        self.signed: dict[str, dict] = {}
        self.melt_quotes: dict[str, MeltQuote] = {}
        self.mint_quotes: dict[str, dict] = {}
        self.invoice_amounts: dict[str, int] = {}
        self.fee_reserve = 2
        self.lightning_fee = 0
        self.melt_state = "PAID"

        self.fail_next: Exception | None = None
        self.drop_response = False
        self.swap_gate: asyncio.Event | None = None
        self.swap_entered = asyncio.Event()
        self.calls: list[str] = []

    def client(self, mint_url: str) -> "FakeMint":
        return self

    # ---- helpers for tests ----

    def issue_proofs(self, amounts: list[int]) -> list[Proof]:
        """Proofs signed directly, as if minted earlier"""
        proofs = []
        for amount in amounts:
            secret = new_secret()
            c = hash_to_curve(secret.encode("utf-8")).multiply(self.private_keys[amount].secret)
            proofs.append(Proof(id=self.keyset_id, amount=amount, secret=secret, C=c.format().hex()))
        return proofs

    def token(self, amounts: list[int], unit: str | None = None) -> str:
        return CashuToken(mint=self.mint_url, proofs=self.issue_proofs(amounts), unit=unit or self.unit).encode()

    def create_mint_quote(self, amount: int, state: str = "PAID") -> str:
        quote_id = f"mint-quote-{len(self.mint_quotes) + 1}"
        self.mint_quotes[quote_id] = {"amount": amount, "state": state}
        return quote_id

    def spend(self, proofs: list[Proof]) -> None:
        """Customer redeemed these proofs"""
        self.spent.update(secret_to_y_hex(proof.secret) for proof in proofs)

    # ---- internals ----

    def _raise_injected(self) -> None:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def _lose_response(self) -> None:
        if self.drop_response:
            self.drop_response = False
            raise MintUnavailableError(self.mint_url, "connection reset")

    def _verify_inputs(self, inputs: list[dict]) -> None:
        for proof in inputs:
            if proof["id"] != self.keyset_id or proof["amount"] not in self.private_keys:
                raise CashuPaymentError("unknown keyset or amount")
            y = secret_to_y_hex(proof["secret"])
            if y in self.spent or y in self.pending:
                raise CashuPaymentError("Token already spent")
            unblinded = PublicKey(bytes.fromhex(proof["C"]))
            if not verify_proof(self.private_keys[proof["amount"]], unblinded, proof["secret"]):
                raise CashuPaymentError("invalid proof")

    def _fee(self, inputs: list[dict]) -> int:
        return input_fee([proof["id"] for proof in inputs], {self.keyset_id: self.input_fee_ppk})

    def _sign(self, outputs: list[dict], amounts: list[int] | None = None) -> list[dict]:
        signatures = []
        for index, output in enumerate(outputs):
            amount = amounts[index] if amounts is not None else output["amount"]
            blinded = PublicKey(bytes.fromhex(output["B_"]))
            c_ = sign_blinded(self.private_keys[amount], blinded)
            signature = {"amount": amount, "id": self.keyset_id, "C_": c_.format().hex()}
            self.signed[output["B_"]] = signature
            signatures.append(signature)
        return signatures

    def _spend_inputs(self, inputs: list[dict]) -> None:
        self.spent.update(secret_to_y_hex(proof["secret"]) for proof in inputs)

    # ---- MintClient interface ----

    async def get_keysets(self) -> list[KeysetInfo]:
        return [KeysetInfo(id=self.keyset_id, unit=self.unit, active=True, input_fee_ppk=self.input_fee_ppk)]

    async def get_keys(self, keyset_id: str) -> dict[int, str]:
        if keyset_id != self.keyset_id:
            raise CashuPaymentError(f"unknown keyset {keyset_id}")
        return dict(self.keys)

    async def swap(self, inputs: list[dict], outputs: list[dict]) -> list[dict]:
        self.calls.append("swap")
        if self.swap_gate is not None:
            self.swap_entered.set()
            await self.swap_gate.wait()
        self._raise_injected()
        self._verify_inputs(inputs)
        if sum(p["amount"] for p in inputs) - self._fee(inputs) != sum(o["amount"] for o in outputs):
            raise CashuPaymentError("inputs and outputs are not balanced")
        self._spend_inputs(inputs)
        signatures = self._sign(outputs)
        self._lose_response()
        return signatures

    async def check_state(self, ys: list[str]) -> list[dict]:
        self.calls.append("check_state")
        states = []
        for y in ys:
            if y in self.spent:
                state = "SPENT"
            elif y in self.pending:
                state = "PENDING"
            else:
                state = "UNSPENT"
            states.append({"Y": y, "state": state})
        return states

    async def restore(self, outputs: list[dict]) -> tuple[list[dict], list[dict]]:
        self.calls.append("restore")
        returned = [output for output in outputs if output["B_"] in self.signed]
        return returned, [self.signed[output["B_"]] for output in returned]

    async def melt_quote(self, bolt11: str, unit: str) -> MeltQuote:
        quote = MeltQuote(
            quote=f"melt-quote-{len(self.melt_quotes) + 1}",
            amount=self.invoice_amounts.get(bolt11, 100),
            fee_reserve=self.fee_reserve,
            state="UNPAID",
        )
        self.melt_quotes[quote.quote] = quote
        return quote

    async def get_melt_quote(self, quote_id: str) -> MeltQuote:
        return self.melt_quotes[quote_id]

    async def melt(self, quote_id: str, inputs: list[dict], outputs: list[dict]) -> MeltQuote:
        self.calls.append("melt")
        quote = self.melt_quotes[quote_id]
        self._raise_injected()
        self._verify_inputs(inputs)
        fee = self._fee(inputs)
        total = sum(p["amount"] for p in inputs)
        if total - fee < quote.amount + quote.fee_reserve:
            raise CashuPaymentError("inputs do not cover amount and fee reserve")

        if self.melt_state == "UNPAID":
            return quote
        if self.melt_state == "PENDING":
            self.pending.update(secret_to_y_hex(proof["secret"]) for proof in inputs)
            self.melt_quotes[quote_id] = replace(quote, state="PENDING")
            return self.melt_quotes[quote_id]

        self._spend_inputs(inputs)
        change_amounts = split_amount(total - fee - quote.amount - self.lightning_fee, self.keys)
        change = self._sign(outputs[:len(change_amounts)], change_amounts)
        self.melt_quotes[quote_id] = replace(quote, state="PAID", payment_preimage="00" * 32, change=change)
        self._lose_response()
        return self.melt_quotes[quote_id]

    def settle_pending_melt(self, quote_id: str, paid: bool = True) -> None:
        """The Lightning payment of a PENDING melt finished"""
        quote = self.melt_quotes[quote_id]
        if not paid:
            self.pending.clear()
            self.melt_quotes[quote_id] = replace(quote, state="UNPAID")
            return
        self.spent.update(self.pending)
        self.pending.clear()
        self.melt_quotes[quote_id] = replace(quote, state="PAID", change=None)

    async def mint(self, quote_id: str, outputs: list[dict]) -> list[dict]:
        self.calls.append("mint")
        self._raise_injected()
        quote = self.mint_quotes.get(quote_id)
        if quote is None or quote["state"] != "PAID":
            raise CashuPaymentError("quote not paid")
        if sum(o["amount"] for o in outputs) != quote["amount"]:
            raise CashuPaymentError("outputs do not match quote amount")
        signatures = self._sign(outputs)
        quote["state"] = "ISSUED"
        self._lose_response()
        return signatures

    async def get_mint_quote(self, quote_id: str) -> str:
        return self.mint_quotes[quote_id]["state"]


@pytest.fixture
def fake_mint() -> FakeMint:
    return FakeMint()


@pytest.fixture
def wallet_ledger(db_session: AsyncSession, fake_mint: FakeMint) -> CashuWalletLedger:
    return CashuWalletLedger(db_session, mint_client_factory=fake_mint.client)


@pytest.fixture
def fund_wallet(db_session: AsyncSession, fake_mint: FakeMint):
    """Factory: unspent proofs of the given amounts in a store wallet"""

    async def _fund(store_id: str, amounts: list[int], mint_url: str = TEST_MINT_URL) -> list[StoredProof]:
        rows = [
            StoredProof(
                keyset_id=proof.id,
                amount=proof.amount,
                secret=proof.secret,
                C=proof.C,
                store_id=store_id,
                mint_url=mint_url,
                unit="sat",
                state=ProofState.UNSPENT,
            )
            for proof in fake_mint.issue_proofs(amounts)
        ]
        db_session.add_all(rows)
        await db_session.commit()
        return rows

    return _fund


# ============================================================================
# BTCPay
# ============================================================================

class FakeBTCPayClient:
    """BTCPayClient in memory: pull payments, invoices and payouts"""

    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.pull_payments: list[dict[str, Any]] = []
        self.invoices: dict[str, dict] = {}
        self.payouts: dict[str, list[dict]] = {}
        self.fail_with: Exception | None = None

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def create_pull_payment(
        self,
        store_id: str,
        amount_sats: int,
        payout_method: str,
        name: str,
        description: str = "",
        expiry_days: int | None = None,
    ) -> PullPayment:
        if self.fail_with is not None:
            raise self.fail_with
        pull_payment_id = f"pp_{uuid.uuid4().hex[:12]}"
        self.pull_payments.append({
            "id": pull_payment_id,
            "store_id": store_id,
            "amount_sats": amount_sats,
            "payout_method": payout_method,
            "name": name,
            "description": description,
        })
        return PullPayment(
            id=pull_payment_id,
            view_link=f"https://btcpay.test/pull-payments/{pull_payment_id}",
            expires_at=utcnow() + timedelta(days=expiry_days or 30),
        )

    async def get_pull_payment_payouts(self, pull_payment_id: str) -> list[dict]:
        return self.payouts.get(pull_payment_id, [])

    async def get_invoice(self, store_id: str, invoice_id: str) -> dict | None:
        return self.invoices.get(invoice_id)


@pytest.fixture
def fake_btcpay() -> FakeBTCPayClient:
    return FakeBTCPayClient()


# ============================================================================
# Notification senders
# ============================================================================

class FakeSender:
    """שולח email/SMS שרק רושם את ההודעות"""

    def __init__(self, channel: str = "email", configured: bool = True) -> None:
        self.channel = channel
        self.configured = configured
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def send(self, recipient: str, body: str, subject: str | None = None) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"recipient": recipient, "body": body, "subject": subject})


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


# ============================================================================
# Rates / store settings / services
# ============================================================================

@pytest.fixture
def rate_service() -> RateService:
    """USD/BTC 50000, EUR/BTC 45000"""
    provider = StaticRateProvider({"USD": Decimal("50000"), "EUR": Decimal("45000")}, name="coingecko")
    return RateService({"coingecko": provider}, default_provider="coingecko", fallback_rate=Decimal("40000"))


def _merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


DEFAULT_STORE_SETTINGS = {
    "enabled": True,
    "external_reward_percentage": "2",
    "btcpay_reward_percentage": "1",
    "delivery_method": "email",
    "rewards": {"funding_source": "lightning"},
}


@pytest.fixture
def store_settings_factory(db_session: AsyncSession):
    """Factory: save settings for a store (defaults: enabled, 2% external, lightning)"""

    async def _create(store_id: str = "store-1", **overrides) -> StoreRewardSettings:
        document = _merge(DEFAULT_STORE_SETTINGS, overrides)
        store_settings = StoreRewardSettings.model_validate(document)
        return await StoreSettingsService(db_session).save(store_id, store_settings)

    return _create


@pytest.fixture
def payout_dispatcher(db_session: AsyncSession, fake_btcpay: FakeBTCPayClient, wallet_ledger: CashuWalletLedger):
    return PayoutDispatcher(db_session, build_payout_providers(fake_btcpay, wallet_ledger))


@pytest.fixture
def reward_service(
    db_session: AsyncSession,
    rate_service: RateService,
    payout_dispatcher: PayoutDispatcher,
    fake_btcpay: FakeBTCPayClient,
) -> RewardService:
    return RewardService(db_session, rate_service, payout_dispatcher, btcpay_client=fake_btcpay)


@pytest.fixture
async def api_client(test_client, rate_service: RateService, fake_btcpay: FakeBTCPayClient, fake_mint: FakeMint):
    """test_client עם שער קבוע, BTCPay מדומה ו-mint מדומה"""

    def override_wallet_ledger(db: AsyncSession = Depends(get_db)) -> CashuWalletLedger:
        return CashuWalletLedger(db, mint_client_factory=fake_mint.client)

    app.dependency_overrides[get_rate_service] = lambda: rate_service
    app.dependency_overrides[get_btcpay_client] = lambda: fake_btcpay
    app.dependency_overrides[get_wallet_ledger] = override_wallet_ledger
    yield test_client
