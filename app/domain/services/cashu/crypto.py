"""
Cashu blind signatures (NUT-00) over secp256k1

    Y  = hash_to_curve(secret)
    B_ = Y + r*G          (wallet blinds)
    C_ = k*B_             (mint signs)
    C  = C_ - r*K         (wallet unblinds, K = k*G)
"""
import hashlib
import secrets as _secrets

from coincurve import PrivateKey, PublicKey

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"
KEYSET_ID_VERSION = "00"


def hash_to_curve(message: bytes) -> PublicKey:
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2 ** 16):
        candidate = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def secret_to_y_hex(secret: str) -> str:
    """Y as sent to ``/v1/checkstate``"""
    return hash_to_curve(secret.encode("utf-8")).format().hex()


def negate(point: PublicKey) -> PublicKey:
    # compressed encoding: flipping 02/03 flips the y parity
    encoded = point.format()
    return PublicKey(bytes([encoded[0] ^ 1]) + encoded[1:])


def new_secret() -> str:
    return _secrets.token_hex(32)


def blind_message(secret: str, blinding_factor: PrivateKey | None = None) -> tuple[PublicKey, PrivateKey]:
    y = hash_to_curve(secret.encode("utf-8"))
    r = blinding_factor or PrivateKey()
    return PublicKey.combine_keys([y, r.public_key]), r


def sign_blinded(private_key: PrivateKey, blinded: PublicKey) -> PublicKey:
    return blinded.multiply(private_key.secret)


def unblind_signature(blinded_signature: PublicKey, blinding_factor: PrivateKey, mint_pubkey: PublicKey) -> PublicKey:
    r_k = mint_pubkey.multiply(blinding_factor.secret)
    return PublicKey.combine_keys([blinded_signature, negate(r_k)])


def verify_proof(private_key: PrivateKey, unblinded: PublicKey, secret: str) -> bool:
    expected = hash_to_curve(secret.encode("utf-8")).multiply(private_key.secret)
    return expected.format() == unblinded.format()


def derive_keyset_id(keys: dict[int, str]) -> str:
    """'00' + first 14 hex chars of sha256 over the pubkeys sorted by amount"""
    concatenated = b"".join(bytes.fromhex(keys[amount]) for amount in sorted(keys))
    return KEYSET_ID_VERSION + hashlib.sha256(concatenated).hexdigest()[:14]
