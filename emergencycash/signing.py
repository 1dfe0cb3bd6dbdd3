"""
EmergencyCash Intent Signing

Signs intent digests with a derived card key (secp256k1, raw digest, no
message prefix) and recovers signer addresses from signatures.

Signatures are 65 bytes r || s || v with v serialized as 27/28; recovery
also accepts v as 0/1. Signing is purely local and works offline.
"""

from typing import Optional

from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError

from .errors import SignatureError
from .hashing import intent_hash
from .identity import CardIdentity
from .intent import PaymentIntent, SignedIntent
from .util import now_epoch


def sign_digest(private_key: bytes, digest: bytes) -> bytes:
    """Recoverable signature over a 32-byte digest, v in {27, 28}."""
    if len(digest) != 32:
        raise SignatureError("digest must be 32 bytes")
    signature = keys.PrivateKey(private_key).sign_msg_hash(digest)
    raw = signature.to_bytes()
    return raw[:64] + bytes([raw[64] + 27])


def recover_signer(digest: bytes, signature: bytes) -> str:
    """
    Recover the checksummed signer address.

    Raises:
        SignatureError: if the signature is malformed or does not recover
    """
    if len(digest) != 32:
        raise SignatureError("digest must be 32 bytes")
    if len(signature) != 65:
        raise SignatureError("signature must be 65 bytes")
    v = signature[64]
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise SignatureError(f"invalid recovery id: {signature[64]}")
    try:
        sig = keys.Signature(signature_bytes=signature[:64] + bytes([v]))
        public_key = sig.recover_public_key_from_msg_hash(digest)
    except (BadSignature, KeyValidationError, ValueError) as e:
        raise SignatureError(f"signature does not recover: {e}")
    return public_key.to_checksum_address()


def sign_intent(identity: CardIdentity, intent: PaymentIntent) -> bytes:
    """Sign hash(intent) with the card key. The caller supplies a matching card field."""
    return sign_digest(identity.private_key, intent_hash(intent))


def build_signed_intent(
    identity: CardIdentity,
    merchant: str,
    token: str,
    amount: int,
    nonce: int,
    expiry: Optional[int] = None,
    ttl_seconds: int = 3600,
    now: Optional[int] = None,
) -> SignedIntent:
    """
    Build and sign an intent whose card is the identity's own address.

    Args:
        identity: Derived card identity
        merchant: Merchant address
        token: Token contract address
        amount: Amount in token units (> 0)
        nonce: Card-chosen nonce
        expiry: Absolute unix expiry; defaults to now + ttl_seconds
    """
    if expiry is None:
        expiry = (now if now is not None else now_epoch()) + ttl_seconds
    intent = PaymentIntent(
        card=identity.address,
        merchant=merchant,
        token=token,
        amount=amount,
        nonce=nonce,
        expiry=expiry,
    )
    return SignedIntent(
        uid=identity.uid,
        intent=intent,
        signature=sign_intent(identity, intent),
        declared_hash=intent_hash(intent),
    )
