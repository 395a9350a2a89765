"""
Proofs and cashuA (V3) tokens
"""
import base64
import json
from dataclasses import dataclass

from app.core.exceptions import CashuPaymentError, ErrorCode
from app.core.validation import UrlValidator

TOKEN_PREFIX = "cashuA"
URI_SCHEME = "cashu:"


@dataclass(frozen=True)
class Proof:
    id: str
    amount: int
    secret: str
    C: str

    def to_wire(self) -> dict:
        return {"id": self.id, "amount": self.amount, "secret": self.secret, "C": self.C}

    @classmethod
    def from_wire(cls, data: dict) -> "Proof":
        return cls(
            id=str(data["id"]),
            amount=int(data["amount"]),
            secret=str(data["secret"]),
            C=str(data["C"]),
        )


@dataclass
class CashuToken:
    mint: str
    proofs: list[Proof]
    unit: str = "sat"
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum(proof.amount for proof in self.proofs)

    def encode(self) -> str:
        document: dict = {
            "token": [{"mint": self.mint, "proofs": [proof.to_wire() for proof in self.proofs]}],
            "unit": self.unit,
        }
        if self.memo:
            document["memo"] = self.memo
        raw = json.dumps(document, separators=(",", ":")).encode("utf-8")
        return TOKEN_PREFIX + base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    def to_claim_link(self) -> str:
        return URI_SCHEME + self.encode()


def decode_token(token: str) -> CashuToken:
    """
    Parse a ``cashuA`` token (optionally ``cashu:``-prefixed).

    Raises:
        CashuPaymentError: malformed token, no proofs, or more than one mint
    """
    text = (token or "").strip()
    if text.startswith(URI_SCHEME):
        text = text[len(URI_SCHEME):]
    if not text.startswith(TOKEN_PREFIX):
        raise CashuPaymentError("Unsupported token format", error_code=ErrorCode.INVALID_TOKEN)

    payload = text[len(TOKEN_PREFIX):]
    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        document = json.loads(raw)
        entries = document["token"]
        mints = {UrlValidator.normalize(entry["mint"]) for entry in entries}
        proofs = [Proof.from_wire(p) for entry in entries for p in entry["proofs"]]
    except (ValueError, KeyError, TypeError) as e:
        raise CashuPaymentError(
            "Invalid token",
            error_code=ErrorCode.INVALID_TOKEN,
            details={"reason": str(e)},
        )

    if len(mints) != 1:
        raise CashuPaymentError("Only single-mint tokens are supported", error_code=ErrorCode.INVALID_TOKEN)
    if not proofs or any(proof.amount <= 0 for proof in proofs):
        raise CashuPaymentError("Token has no spendable proofs", error_code=ErrorCode.INVALID_TOKEN)

    return CashuToken(
        mint=mints.pop(),
        proofs=proofs,
        unit=document.get("unit") or "sat",
        memo=document.get("memo"),
    )
