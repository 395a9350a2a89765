"""
Cashu Wallet Ledger - proof storage and the journal of mint operations

Every swap/melt/mint follows the same shape:

1. keysets are loaded (from cache or the mint) and inputs selected
2. a FailedTransaction row (resolution=pending) is written and the inputs
   are debited with a guarded ``state='unspent'`` update, in one commit
3. the mint is called
4. definite success credits the outputs and resolves ``success``;
   a definite rejection restores the inputs the mint still reports
   unspent and resolves ``failed``;
   anything else leaves the row pending for ``retry_failed_transactions``
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from coincurve import PrivateKey, PublicKey
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    CashuPaymentError,
    CashuPluginError,
    CircuitBreakerOpenError,
    ErrorCode,
    InsufficientBalanceError,
    NotFoundException,
)
from app.core.logging import get_logger
from app.core.retry import calculate_backoff_seconds
from app.core.validation import UrlValidator
from app.db.database import utcnow
from app.db.models.failed_transaction import FailedTransaction, MintOperationType, Resolution
from app.db.models.mint import Mint, MintKeys
from app.db.models.stored_proof import ProofState, StoredProof
from app.domain.services.cashu.crypto import (
    blind_message,
    derive_keyset_id,
    new_secret,
    secret_to_y_hex,
    unblind_signature,
)
from app.domain.services.cashu.mint_client import MintClient
from app.domain.services.cashu.token import Proof, decode_token
from app.domain.services.cashu.utils import (
    blank_output_count,
    input_fee,
    select_proofs_to_send,
    split_amount,
    sum_amounts,
)

logger = get_logger(__name__)

MintClientFactory = Callable[[str], MintClient]


class PollResult(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass
class OutputSet:
    """Blinded outputs plus the secrets needed to unblind their signatures"""

    keyset_id: str
    amounts: list[int]
    secrets: list[str]
    blinding_factors: list[str]
    blinded_messages: list[dict]

    @classmethod
    def create(cls, keyset_id: str, amounts: list[int]) -> "OutputSet":
        secrets: list[str] = []
        factors: list[str] = []
        messages: list[dict] = []
        for amount in amounts:
            secret = new_secret()
            blinded, r = blind_message(secret)
            secrets.append(secret)
            factors.append(r.to_hex())
            messages.append({"amount": amount, "id": keyset_id, "B_": blinded.format().hex()})
        return cls(keyset_id, list(amounts), secrets, factors, messages)

    def to_json(self, **extra) -> dict:
        return {
            "keyset_id": self.keyset_id,
            "amounts": self.amounts,
            "secrets": self.secrets,
            "blinding_factors": self.blinding_factors,
            "blinded_messages": self.blinded_messages,
            **extra,
        }

    @classmethod
    def from_json(cls, data: dict) -> "OutputSet":
        return cls(
            keyset_id=data.get("keyset_id", ""),
            amounts=list(data.get("amounts") or []),
            secrets=list(data.get("secrets") or []),
            blinding_factors=list(data.get("blinding_factors") or []),
            blinded_messages=list(data.get("blinded_messages") or []),
        )


@dataclass(frozen=True)
class ActiveKeyset:
    id: str
    unit: str
    input_fee_ppk: int
    keys: dict[int, str]
    # input_fee_ppk of every keyset the mint lists
    fees: dict[str, int]


@dataclass(frozen=True)
class MeltResult:
    operation_id: str
    quote_id: str
    state: str
    amount: int
    change_amount: int = 0
    payment_preimage: str | None = None

    @property
    def paid(self) -> bool:
        return self.state == "PAID"


def _from_unix(value) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class CashuWalletLedger:
    def __init__(self, db: AsyncSession, mint_client_factory: MintClientFactory = MintClient):
        self.db = db
        self._mint_client_factory = mint_client_factory

    def _client(self, mint_url: str) -> MintClient:
        return self._mint_client_factory(mint_url)

    # ------------------------------------------------------------------
    # mints and keysets
    # ------------------------------------------------------------------

    async def _ensure_mint(self, mint_url: str, unit: str) -> str:
        url = UrlValidator.normalize(mint_url or "")
        if not UrlValidator.validate(url):
            raise CashuPaymentError(f"Invalid mint URL: {mint_url}", error_code=ErrorCode.MINT_INACTIVE)

        result = await self.db.execute(select(Mint).where(Mint.url == url, Mint.unit == unit))
        mint = result.scalar_one_or_none()
        if mint is None:
            self.db.add(Mint(url=url, unit=unit, is_active=True))
            await self.db.flush()
        elif not mint.is_active:
            raise CashuPaymentError(
                f"Mint {url} is not active for unit {unit}",
                error_code=ErrorCode.MINT_INACTIVE,
                details={"mint_url": url, "unit": unit},
            )
        return url

    async def _cached_keysets(self, mint_url: str) -> list[MintKeys]:
        result = await self.db.execute(select(MintKeys).where(MintKeys.mint_url == mint_url))
        return list(result.scalars().all())

    async def _refresh_keysets(self, client: MintClient, mint_url: str, cached: list[MintKeys]) -> list[MintKeys]:
        by_id = {row.keyset_id: row for row in cached}
        infos = [info for info in await client.get_keysets() if len(info.id) == 16]
        now = utcnow()

        for info in infos:
            row = by_id.get(info.id)
            if row is None:
                keys = await client.get_keys(info.id)
                if derive_keyset_id(keys) != info.id:
                    logger.error(
                        "Keyset id does not match its keys, skipping keyset",
                        extra_data={"mint_url": mint_url, "keyset_id": info.id},
                    )
                    continue
                row = MintKeys(
                    mint_url=mint_url,
                    keyset_id=info.id,
                    unit=info.unit,
                    keys={str(amount): pubkey for amount, pubkey in keys.items()},
                )
                self.db.add(row)
                by_id[info.id] = row
            row.active = info.active
            row.input_fee_ppk = info.input_fee_ppk
            row.fetched_at = now

        listed = {info.id for info in infos}
        for keyset_id, row in by_id.items():
            if keyset_id not in listed:
                row.active = False
                row.fetched_at = now

        try:
            await self.db.commit()
        except IntegrityError:
            # a concurrent refresh stored the same keyset first
            await self.db.rollback()
            return await self._cached_keysets(mint_url)
        return list(by_id.values())

    async def _load_keyset(self, client: MintClient, mint_url: str, unit: str) -> ActiveKeyset:
        rows = await self._cached_keysets(mint_url)
        ttl = timedelta(seconds=settings.CASHU_KEYSET_CACHE_TTL_SECONDS)
        now = utcnow()
        if not rows or any(now - row.fetched_at >= ttl for row in rows):
            rows = await self._refresh_keysets(client, mint_url, rows)

        candidates = [
            row for row in rows
            if row.active and row.keyset_id.startswith("00") and row.unit == unit
        ]
        if not candidates:
            raise CashuPaymentError(
                f"Mint {mint_url} has no active keyset for unit {unit}",
                error_code=ErrorCode.MINT_INACTIVE,
                details={"mint_url": mint_url, "unit": unit},
            )
        best = min(candidates, key=lambda row: row.input_fee_ppk)
        return ActiveKeyset(
            id=best.keyset_id,
            unit=best.unit,
            input_fee_ppk=best.input_fee_ppk,
            keys={int(amount): pubkey for amount, pubkey in best.keys.items()},
            fees={row.keyset_id: row.input_fee_ppk for row in rows},
        )

    async def _keys_for(self, client: MintClient, mint_url: str, keyset_id: str) -> dict[int, str]:
        result = await self.db.execute(
            select(MintKeys).where(MintKeys.mint_url == mint_url, MintKeys.keyset_id == keyset_id)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            return {int(amount): pubkey for amount, pubkey in row.keys.items()}
        keys = await client.get_keys(keyset_id)
        if derive_keyset_id(keys) != keyset_id:
            raise CashuPluginError(f"Keyset {keyset_id} does not match its keys", mint_url=mint_url)
        return keys

    # ------------------------------------------------------------------
    # proofs
    # ------------------------------------------------------------------

    async def get_balance(self, store_id: str, mint_url: str, unit: str = "sat") -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(StoredProof.amount), 0)).where(
                StoredProof.store_id == store_id,
                StoredProof.mint_url == UrlValidator.normalize(mint_url or ""),
                StoredProof.unit == unit,
                StoredProof.state == ProofState.UNSPENT,
            )
        )
        return int(result.scalar_one())

    async def _unspent_proofs(self, store_id: str, mint_url: str, unit: str) -> list[StoredProof]:
        result = await self.db.execute(
            select(StoredProof)
            .where(
                StoredProof.store_id == store_id,
                StoredProof.mint_url == mint_url,
                StoredProof.unit == unit,
                StoredProof.state == ProofState.UNSPENT,
            )
            .order_by(StoredProof.amount, StoredProof.id)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    @staticmethod
    def _select_inputs(
        proofs: list[StoredProof],
        amount: int,
        fees: dict[str, int],
        unit: str,
    ) -> tuple[list[StoredProof], int]:
        """Inputs covering ``amount`` plus their own input fee"""
        target = amount
        for _ in range(len(proofs) + 1):
            _, selected = select_proofs_to_send(proofs, target)
            if not selected:
                break
            fee = input_fee([proof.keyset_id for proof in selected], fees)
            if sum_amounts(selected) >= amount + fee:
                return selected, fee
            target = amount + fee
        raise InsufficientBalanceError(amount, sum_amounts(proofs), unit)

    async def _reserve(self, inputs: list[StoredProof], operation_id: str, required: int, unit: str) -> None:
        """
        Debit ``inputs`` and commit together with the pending journal row.

        The update only touches rows still unspent; a short count means a
        concurrent operation took some of them, and nothing is written.
        """
        ids = [proof.id for proof in inputs]
        store_id, mint_url = inputs[0].store_id, inputs[0].mint_url
        result = await self.db.execute(
            update(StoredProof)
            .where(StoredProof.id.in_(ids), StoredProof.state == ProofState.UNSPENT)
            .values(state=ProofState.SPENT, operation_id=operation_id, spent_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            await self.db.rollback()
            logger.warning(
                "Proofs taken by a concurrent operation",
                extra_data={"operation_id": operation_id, "expected": len(ids), "updated": result.rowcount},
            )
            raise InsufficientBalanceError(required, await self.get_balance(store_id, mint_url, unit), unit)
        await self.db.commit()

    def _store_proofs(self, row: FailedTransaction, proofs: list[Proof]) -> None:
        for proof in proofs:
            self.db.add(StoredProof(
                keyset_id=proof.id,
                amount=proof.amount,
                secret=proof.secret,
                C=proof.C,
                store_id=row.store_id,
                mint_url=row.mint_url,
                unit=row.unit,
                state=ProofState.UNSPENT,
                operation_id=row.id,
            ))

    async def _restore_inputs(self, row: FailedTransaction, keep_spent: frozenset[str] = frozenset()) -> None:
        """``keep_spent``: secrets the mint reports SPENT; they stay debited"""
        stmt = update(StoredProof).where(StoredProof.operation_id == row.id, StoredProof.state == ProofState.SPENT)
        if keep_spent:
            stmt = stmt.where(StoredProof.secret.not_in(keep_spent))
        await self.db.execute(
            stmt.values(state=ProofState.UNSPENT, operation_id=None, spent_at=None)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _unblind(
        signatures: list[dict],
        outputs: OutputSet,
        keys: dict[int, str],
        indexes: list[int] | None = None,
        check_amounts: bool = True,
    ) -> list[Proof]:
        """Signatures[i] belongs to outputs[indexes[i]] (default: same position)"""
        indexes = indexes if indexes is not None else list(range(len(signatures)))
        if len(signatures) > len(outputs.secrets):
            raise CashuPluginError("Mint returned more signatures than outputs")

        proofs: list[Proof] = []
        for signature, index in zip(signatures, indexes):
            try:
                amount = int(signature["amount"])
                keyset_id = str(signature["id"])
                blinded_signature = PublicKey(bytes.fromhex(signature["C_"]))
            except (KeyError, TypeError, ValueError) as e:
                raise CashuPluginError(f"Malformed blind signature: {e}")
            if keyset_id != outputs.keyset_id:
                raise CashuPluginError(f"Signature from unexpected keyset {keyset_id}")
            if check_amounts and amount != outputs.amounts[index]:
                raise CashuPluginError("Signature amount does not match its output")
            if amount not in keys:
                raise CashuPluginError(f"No mint key for amount {amount}")

            unblinded = unblind_signature(
                blinded_signature,
                PrivateKey.from_hex(outputs.blinding_factors[index]),
                PublicKey(bytes.fromhex(keys[amount])),
            )
            proofs.append(Proof(
                id=keyset_id,
                amount=amount,
                secret=outputs.secrets[index],
                C=unblinded.format().hex(),
            ))
        return proofs

    # ------------------------------------------------------------------
    # journal
    # ------------------------------------------------------------------

    def _journal(
        self,
        store_id: str,
        mint_url: str,
        unit: str,
        operation_type: MintOperationType,
        used_proofs: list[dict],
        output_data: dict,
        **extra,
    ) -> FailedTransaction:
        now = utcnow()
        row = FailedTransaction(
            id=uuid.uuid4().hex,
            store_id=store_id,
            mint_url=mint_url,
            unit=unit,
            operation_type=operation_type,
            used_proofs=used_proofs,
            output_data=output_data,
            resolution=Resolution.PENDING,
            retry_count=0,
            next_retry_at=now + timedelta(seconds=settings.CASHU_RETRY_GRACE_SECONDS),
            created_at=now,
            **extra,
        )
        self.db.add(row)
        return row

    async def _resolve_success(self, row: FailedTransaction, new_proofs: list[Proof], details: str | None = None) -> None:
        self._store_proofs(row, new_proofs)
        row.resolution = Resolution.SUCCESS
        row.resolved_at = utcnow()
        row.next_retry_at = None
        if details:
            row.details = details
        await self.db.commit()

    async def _resolve_failed(
        self, row: FailedTransaction, reason: str, keep_spent: frozenset[str] = frozenset()
    ) -> None:
        if row.output_data.get("inputs_owned", True):
            await self._restore_inputs(row, keep_spent)
        row.resolution = Resolution.FAILED
        row.resolved_at = utcnow()
        row.next_retry_at = None
        row.details = reason[:1000]
        await self.db.commit()
        logger.info(
            "Mint operation failed, inputs restored",
            extra_data={
                "operation_id": row.id,
                "operation": row.operation_type.value,
                "reason": reason,
                "kept_spent": len(keep_spent),
            },
        )

    async def _resolve_rejected(self, client: MintClient, row: FailedTransaction, error: CashuPaymentError) -> None:
        """
        The mint refused the swap. A swap spends all of its inputs or none,
        so inputs the mint already reports SPENT were spent elsewhere; they
        stay debited and only the UNSPENT ones are restored.
        """
        if not row.output_data.get("inputs_owned", True):
            await self._resolve_failed(row, str(error))
            return
        try:
            states = await self._input_state_map(client, row)
        except Exception as exc:
            # המצב לא ידוע; ה-poll של ה-journal יכריע
            await self._leave_pending(row, exc)
            return
        if not states or not set(states.values()) <= {"SPENT", "UNSPENT"}:
            await self._leave_pending(row, error)
            return
        spent = frozenset(secret for secret, state in states.items() if state == "SPENT")
        await self._resolve_failed(row, str(error), keep_spent=spent)

    async def _leave_pending(self, row: FailedTransaction, error: Exception) -> None:
        row.details = f"{type(error).__name__}: {error}"[:1000]
        await self.db.commit()
        logger.warning(
            "Mint operation outcome unknown, left for recovery",
            extra_data={
                "operation_id": row.id,
                "operation": row.operation_type.value,
                "mint_url": row.mint_url,
                "error": str(error),
            },
        )

    @staticmethod
    def _as_plugin_error(error: Exception, row: FailedTransaction) -> CashuPluginError:
        if isinstance(error, CashuPluginError):
            error.details.setdefault("operation_id", row.id)
            return error
        return CashuPluginError(
            f"Mint operation outcome unknown: {error}",
            mint_url=row.mint_url,
            details={"operation_id": row.id},
        )

    async def _swap(
        self,
        client: MintClient,
        row: FailedTransaction,
        inputs: list[dict],
        outputs: OutputSet,
        keys: dict[int, str],
    ) -> list[Proof]:
        """Swap with outcome classification; returns every new proof in output order"""
        try:
            signatures = await client.swap(inputs, outputs.blinded_messages)
            proofs = self._unblind(signatures, outputs, keys)
            if len(proofs) != len(outputs.amounts):
                raise CashuPluginError(
                    f"Mint returned {len(proofs)} signatures for {len(outputs.amounts)} outputs",
                    mint_url=row.mint_url,
                )
        except CircuitBreakerOpenError as e:
            await self._resolve_failed(row, str(e))
            raise
        except CashuPaymentError as e:
            await self._resolve_rejected(client, row, e)
            raise
        except Exception as e:
            await self._leave_pending(row, e)
            raise self._as_plugin_error(e, row) from e
        return proofs

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    async def send(self, store_id: str, mint_url: str, unit: str, amount: int) -> list[Proof]:
        """
        Take ``amount`` out of the wallet as fresh proofs.

        Raises:
            InsufficientBalanceError: unspent proofs cannot cover amount + fees
            CashuPaymentError: inactive mint or definite mint rejection
            CashuPluginError: outcome unknown; journal row left pending
        """
        if amount <= 0:
            raise CashuPaymentError("Amount must be positive")

        mint_url = await self._ensure_mint(mint_url, unit)
        client = self._client(mint_url)
        keyset = await self._load_keyset(client, mint_url, unit)

        proofs = await self._unspent_proofs(store_id, mint_url, unit)
        inputs, fee = self._select_inputs(proofs, amount, keyset.fees, unit)

        send_amounts = split_amount(amount, keyset.keys)
        keep_amounts = split_amount(sum_amounts(inputs) - amount - fee, keyset.keys)
        outputs = OutputSet.create(keyset.id, send_amounts + keep_amounts)
        wire_inputs = [proof.to_wire() for proof in inputs]

        row = self._journal(
            store_id, mint_url, unit, MintOperationType.SWAP,
            used_proofs=wire_inputs,
            output_data=outputs.to_json(send_count=len(send_amounts), inputs_owned=True),
        )
        await self._reserve(inputs, row.id, amount, unit)

        new_proofs = await self._swap(client, row, wire_inputs, outputs, keyset.keys)
        send_proofs = new_proofs[:len(send_amounts)]
        await self._resolve_success(row, new_proofs[len(send_amounts):])

        logger.info(
            "Ecash sent",
            extra_data={
                "store_id": store_id,
                "mint_url": mint_url,
                "amount": amount,
                "fee": fee,
                "operation_id": row.id,
            },
        )
        return send_proofs

    async def receive_token(self, store_id: str, token: str) -> int:
        """
        Swap a cashuA token's proofs for fresh ones owned by the store.

        Returns the amount credited (token amount minus input fees).
        """
        parsed = decode_token(token)
        unit = parsed.unit
        mint_url = await self._ensure_mint(parsed.mint, unit)

        secrets = [proof.secret for proof in parsed.proofs]
        if len(set(secrets)) != len(secrets):
            raise CashuPaymentError("Token contains duplicate proofs", error_code=ErrorCode.INVALID_TOKEN)
        known = await self.db.execute(
            select(func.count()).select_from(StoredProof).where(StoredProof.secret.in_(secrets))
        )
        if known.scalar_one():
            raise CashuPaymentError("Token was already received", error_code=ErrorCode.INVALID_TOKEN)

        client = self._client(mint_url)
        keyset = await self._load_keyset(client, mint_url, unit)
        unknown_keysets = {proof.id for proof in parsed.proofs} - set(keyset.fees)
        if unknown_keysets:
            raise CashuPaymentError(
                "Token uses keysets unknown to the mint",
                error_code=ErrorCode.INVALID_TOKEN,
                details={"keysets": sorted(unknown_keysets)},
            )

        fee = input_fee([proof.id for proof in parsed.proofs], keyset.fees)
        received = parsed.amount - fee
        if received <= 0:
            raise CashuPaymentError("Token amount does not cover the input fee", error_code=ErrorCode.INVALID_TOKEN)

        outputs = OutputSet.create(keyset.id, split_amount(received, keyset.keys))
        wire_inputs = [proof.to_wire() for proof in parsed.proofs]
        row = self._journal(
            store_id, mint_url, unit, MintOperationType.SWAP,
            used_proofs=wire_inputs,
            output_data=outputs.to_json(send_count=0, inputs_owned=False),
        )
        await self.db.commit()

        new_proofs = await self._swap(client, row, wire_inputs, outputs, keyset.keys)
        await self._resolve_success(row, new_proofs)

        logger.info(
            "Ecash token received",
            extra_data={"store_id": store_id, "mint_url": mint_url, "amount": received, "fee": fee},
        )
        return received

    async def mint(self, store_id: str, mint_url: str, unit: str, quote_id: str, amount: int) -> int:
        """Claim proofs for a paid ``/v1/mint/quote/bolt11`` quote"""
        if amount <= 0:
            raise CashuPaymentError("Amount must be positive")

        mint_url = await self._ensure_mint(mint_url, unit)
        client = self._client(mint_url)
        keyset = await self._load_keyset(client, mint_url, unit)

        outputs = OutputSet.create(keyset.id, split_amount(amount, keyset.keys))
        row = self._journal(
            store_id, mint_url, unit, MintOperationType.MINT,
            used_proofs=[],
            output_data=outputs.to_json(send_count=0, inputs_owned=False),
            mint_quote_id=quote_id,
        )
        await self.db.commit()

        try:
            signatures = await client.mint(quote_id, outputs.blinded_messages)
            new_proofs = self._unblind(signatures, outputs, keyset.keys)
            if len(new_proofs) != len(outputs.amounts):
                raise CashuPluginError("Mint did not sign every output", mint_url=mint_url)
        except (CashuPaymentError, CircuitBreakerOpenError) as e:
            await self._resolve_failed(row, str(e))
            raise
        except Exception as e:
            await self._leave_pending(row, e)
            raise self._as_plugin_error(e, row) from e

        await self._resolve_success(row, new_proofs)
        logger.info(
            "Ecash minted",
            extra_data={"store_id": store_id, "mint_url": mint_url, "amount": amount, "quote_id": quote_id},
        )
        return amount

    async def melt(self, store_id: str, mint_url: str, unit: str, bolt11: str) -> MeltResult:
        """
        Pay a Lightning invoice with ecash.

        Blank outputs let the mint return unused fee reserve as change. A
        melt the mint reports as PENDING is returned as such and finished
        by the recovery sweep.
        """
        mint_url = await self._ensure_mint(mint_url, unit)
        client = self._client(mint_url)
        keyset = await self._load_keyset(client, mint_url, unit)
        quote = await client.melt_quote(bolt11, unit)

        proofs = await self._unspent_proofs(store_id, mint_url, unit)
        inputs, fee = self._select_inputs(proofs, quote.amount + quote.fee_reserve, keyset.fees, unit)
        overpaid = sum_amounts(inputs) - quote.amount - fee
        blank_outputs = OutputSet.create(keyset.id, [1] * blank_output_count(overpaid))
        wire_inputs = [proof.to_wire() for proof in inputs]

        row = self._journal(
            store_id, mint_url, unit, MintOperationType.MELT,
            used_proofs=wire_inputs,
            output_data=blank_outputs.to_json(send_count=0, inputs_owned=True),
            melt_quote_id=quote.quote,
            melt_quote_expiry=_from_unix(quote.expiry),
            lightning_invoice=bolt11,
        )
        await self._reserve(inputs, row.id, quote.amount + quote.fee_reserve, unit)

        try:
            result = await client.melt(quote.quote, wire_inputs, blank_outputs.blinded_messages)
        except (CashuPaymentError, CircuitBreakerOpenError) as e:
            await self._resolve_failed(row, str(e))
            raise
        except Exception as e:
            await self._leave_pending(row, e)
            raise self._as_plugin_error(e, row) from e

        if result.state == "UNPAID":
            await self._resolve_failed(row, "Lightning payment failed")
            raise CashuPaymentError("Lightning payment failed", details={"quote_id": quote.quote})

        if result.state != "PAID":
            await self._leave_pending(row, CashuPluginError(f"melt state {result.state}", mint_url=mint_url))
            return MeltResult(operation_id=row.id, quote_id=quote.quote, state=result.state, amount=quote.amount)

        try:
            change = self._unblind(result.change or [], blank_outputs, keyset.keys, check_amounts=False)
        except CashuPluginError as e:
            # paid; the change is recovered through /v1/restore by the sweep
            await self._leave_pending(row, e)
            return MeltResult(
                operation_id=row.id,
                quote_id=quote.quote,
                state=result.state,
                amount=quote.amount,
                payment_preimage=result.payment_preimage,
            )

        await self._resolve_success(row, change)
        logger.info(
            "Lightning invoice paid with ecash",
            extra_data={
                "store_id": store_id,
                "mint_url": mint_url,
                "amount": quote.amount,
                "change": sum_amounts(change),
                "operation_id": row.id,
            },
        )
        return MeltResult(
            operation_id=row.id,
            quote_id=quote.quote,
            state=result.state,
            amount=quote.amount,
            change_amount=sum_amounts(change),
            payment_preimage=result.payment_preimage,
        )

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------

    async def _input_state_map(self, client: MintClient, row: FailedTransaction) -> dict[str, str]:
        """secret → state reported by the mint; empty when the reply does not line up with the inputs"""
        inputs = [Proof.from_wire(proof) for proof in row.used_proofs]
        states = await client.check_state([secret_to_y_hex(proof.secret) for proof in inputs])
        if len(states) != len(inputs):
            return {}
        return {proof.secret: str(state.get("state", "UNKNOWN")).upper() for proof, state in zip(inputs, states)}

    async def _input_states(self, client: MintClient, row: FailedTransaction) -> set[str]:
        return set((await self._input_state_map(client, row)).values()) or {"UNKNOWN"}

    async def _restore_outputs(self, client: MintClient, row: FailedTransaction, outputs: OutputSet) -> list[Proof]:
        if not outputs.blinded_messages:
            return []
        returned_outputs, signatures = await client.restore(outputs.blinded_messages)
        index_by_b = {message["B_"]: index for index, message in enumerate(outputs.blinded_messages)}
        pairs = [
            (signature, index_by_b[output.get("B_")])
            for output, signature in zip(returned_outputs, signatures)
            if output.get("B_") in index_by_b
        ]
        if not pairs:
            return []
        keys = await self._keys_for(client, row.mint_url, outputs.keyset_id)
        return self._unblind(
            [signature for signature, _ in pairs],
            outputs,
            keys,
            indexes=[index for _, index in pairs],
            check_amounts=row.operation_type != MintOperationType.MELT,
        )

    async def _poll_swap(self, client: MintClient, row: FailedTransaction, outputs: OutputSet) -> PollResult:
        by_secret = await self._input_state_map(client, row)
        states = set(by_secret.values()) or {"UNKNOWN"}
        if states == {"UNSPENT"}:
            await self._resolve_failed(row, "inputs unspent at mint")
            return PollResult.FAILED
        if "PENDING" in states:
            return PollResult.PENDING
        if states == {"SPENT", "UNSPENT"}:
            # swap לא מוציא חלק מהקלטים; החלק שנוצל נוצל מחוץ ל-ledger
            spent = frozenset(secret for secret, state in by_secret.items() if state == "SPENT")
            await self._resolve_failed(row, "inputs partly spent outside this wallet", keep_spent=spent)
            return PollResult.FAILED
        if states != {"SPENT"}:
            return PollResult.UNKNOWN

        proofs = await self._restore_outputs(client, row, outputs)
        if len(proofs) == len(outputs.secrets):
            await self._resolve_success(row, proofs, details="outputs restored from mint")
            return PollResult.SUCCESS
        return PollResult.UNKNOWN

    async def _poll_mint(self, client: MintClient, row: FailedTransaction, outputs: OutputSet) -> PollResult:
        proofs = await self._restore_outputs(client, row, outputs)
        if proofs and len(proofs) == len(outputs.secrets):
            await self._resolve_success(row, proofs, details="outputs restored from mint")
            return PollResult.SUCCESS
        if proofs:
            return PollResult.UNKNOWN

        quote_state = await client.get_mint_quote(row.mint_quote_id)
        if quote_state in ("UNPAID", "PAID"):
            await self._resolve_failed(row, f"mint quote {quote_state.lower()}, nothing issued")
            return PollResult.FAILED
        return PollResult.UNKNOWN

    async def _poll_melt(self, client: MintClient, row: FailedTransaction, outputs: OutputSet) -> PollResult:
        quote = await client.get_melt_quote(row.melt_quote_id)
        if quote.state == "PAID":
            if quote.change:
                keys = await self._keys_for(client, row.mint_url, outputs.keyset_id)
                change = self._unblind(quote.change, outputs, keys, check_amounts=False)
            else:
                change = await self._restore_outputs(client, row, outputs)
            await self._resolve_success(row, change, details="melt paid")
            return PollResult.SUCCESS
        if quote.state == "PENDING":
            return PollResult.PENDING

        states = await self._input_states(client, row)
        if states == {"UNSPENT"}:
            await self._resolve_failed(row, "melt unpaid, inputs unspent at mint")
            return PollResult.FAILED
        if "PENDING" in states:
            return PollResult.PENDING
        return PollResult.UNKNOWN

    async def poll_failed_transaction(self, row: FailedTransaction) -> PollResult:
        """
        Ask the mint what happened to a journaled operation and apply it.

        swap/mint: ``checkstate`` on the inputs (UNSPENT → restore inputs,
        failed), else ``restore`` on the outputs (all signed → credit,
        success). melt: quote PAID → credit change, success; UNPAID with
        unspent inputs → restore inputs, failed; PENDING → pending.
        """
        if row.resolution != Resolution.PENDING:
            return PollResult(row.resolution.value)

        client = self._client(row.mint_url)
        outputs = OutputSet.from_json(row.output_data)

        if row.operation_type == MintOperationType.MELT:
            return await self._poll_melt(client, row, outputs)
        if row.operation_type == MintOperationType.MINT:
            return await self._poll_mint(client, row, outputs)
        return await self._poll_swap(client, row, outputs)

    async def _schedule_retry(self, row: FailedTransaction, reason: str | None = None) -> None:
        now = utcnow()
        row.retry_count = (row.retry_count or 0) + 1
        row.last_retried = now
        row.next_retry_at = now + timedelta(seconds=calculate_backoff_seconds(
            row.retry_count,
            base_seconds=settings.CASHU_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.CASHU_RETRY_MAX_BACKOFF_SECONDS,
        ))
        if reason:
            row.details = reason[:1000]
        await self.db.commit()

        if row.retry_count >= settings.CASHU_MAX_RETRIES:
            logger.error(
                "Mint operation still unresolved after max retries",
                extra_data={"operation_id": row.id, "retry_count": row.retry_count, "mint_url": row.mint_url},
            )

    async def _lock_pending(self, operation_id: str) -> FailedTransaction | None:
        result = await self.db.execute(
            select(FailedTransaction)
            .where(FailedTransaction.id == operation_id, FailedTransaction.resolution == Resolution.PENDING)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def retry_failed_transaction(self, operation_id: str) -> PollResult:
        """Poll one journal row now, ignoring its schedule (admin retry)"""
        row = await self.db.get(FailedTransaction, operation_id)
        if row is None:
            raise NotFoundException("FailedTransaction", operation_id)
        if row.resolution != Resolution.PENDING:
            return PollResult(row.resolution.value)

        row = await self._lock_pending(operation_id)
        if row is None:
            return PollResult.PENDING
        return await self._poll_and_schedule(row)

    async def _poll_and_schedule(self, row: FailedTransaction) -> PollResult:
        try:
            result = await self.poll_failed_transaction(row)
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        except Exception as e:
            await self._schedule_retry(row, f"{type(e).__name__}: {e}")
            logger.warning(
                "Mint status query failed",
                extra_data={"operation_id": row.id, "error": str(e)},
            )
            return PollResult.PENDING

        if result in (PollResult.PENDING, PollResult.UNKNOWN):
            await self._schedule_retry(row)
        return result

    async def retry_failed_transactions(self, limit: int = 50) -> dict[str, int]:
        """
        Sweep unresolved journal rows that are due.

        Rows younger than the grace period may belong to an operation still
        in flight and are skipped. Works from persisted state only.
        """
        now = utcnow()
        grace_cutoff = now - timedelta(seconds=settings.CASHU_RETRY_GRACE_SECONDS)
        result = await self.db.execute(
            select(FailedTransaction.id)
            .where(
                FailedTransaction.resolution == Resolution.PENDING,
                FailedTransaction.created_at <= grace_cutoff,
                (FailedTransaction.next_retry_at.is_(None)) | (FailedTransaction.next_retry_at <= now),
            )
            .order_by(FailedTransaction.next_retry_at, FailedTransaction.created_at)
            .limit(limit)
        )
        operation_ids = list(result.scalars().all())

        stats = {"checked": 0, **{outcome.value: 0 for outcome in PollResult}}
        for operation_id in operation_ids:
            row = await self._lock_pending(operation_id)
            if row is None:
                continue
            stats["checked"] += 1
            outcome = await self._poll_and_schedule(row)
            stats[outcome.value] += 1

        if stats["checked"]:
            logger.info("Cashu journal sweep finished", extra_data=stats)
        return stats

    async def list_failed_transactions(
        self,
        store_id: str | None = None,
        resolution: Resolution | None = Resolution.PENDING,
        limit: int = 100,
    ) -> list[FailedTransaction]:
        query = select(FailedTransaction)
        if store_id:
            query = query.where(FailedTransaction.store_id == store_id)
        if resolution is not None:
            query = query.where(FailedTransaction.resolution == resolution)
        result = await self.db.execute(query.order_by(FailedTransaction.created_at.desc()).limit(limit))
        return list(result.scalars().all())
