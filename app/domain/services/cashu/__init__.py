"""
Cashu ecash wallet: crypto, token codec, mint client and the proof ledger
"""
from app.domain.services.cashu.ledger import CashuWalletLedger, MeltResult, PollResult
from app.domain.services.cashu.mint_client import MintClient
from app.domain.services.cashu.token import CashuToken, Proof, decode_token

__all__ = [
    "CashuToken",
    "CashuWalletLedger",
    "MeltResult",
    "MintClient",
    "PollResult",
    "Proof",
    "decode_token",
]
