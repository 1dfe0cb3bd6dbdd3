"""
EmergencyCash Card Identity Derivation

A card carries no secret. Its signing key is recomputed on demand from the
card UID and the deployment master secret:

    private_key = keccak256(secret_bytes || utf8(lower(uid)))
    address     = last20(keccak256(public_key(private_key)))

The function is pure: the same UID always yields the same identity under a
fixed master secret, and nothing is persisted.
"""

import re
from dataclasses import dataclass, field
from typing import Union

from eth_keys import keys
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import keccak

from .errors import IdentityError

DERIVATION_VERSION = "v1"

SECRET_ENCODINGS = ("auto", "hex", "utf8")

_HEX32_PATTERN = re.compile(r'^0x[0-9a-fA-F]{64}$')

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass(frozen=True)
class CardIdentity:
    """Derived card keypair. Held in memory for one operation only."""
    uid: str
    private_key: bytes = field(repr=False)
    address: str


def normalize_uid(uid: str) -> str:
    """
    Canonical display/storage form of a UID: stripped, upper-case.

    Raises:
        IdentityError: if the UID is empty
    """
    if not isinstance(uid, str):
        raise IdentityError("uid must be a string")
    uid = uid.strip()
    if not uid:
        raise IdentityError("uid cannot be empty")
    return uid.upper()


def master_secret_bytes(secret: Union[str, bytes], encoding: str = "auto") -> bytes:
    """
    Interpret the master secret.

    auto: "0x" + 64 hex digits is taken as 32 raw bytes, anything else as
          UTF-8 text.
    hex:  must be "0x" + 64 hex digits.
    utf8: always the UTF-8 encoding of the text.

    The choice must stay fixed for a deployment; changing it re-derives a
    different identity for every card.
    """
    if encoding not in SECRET_ENCODINGS:
        raise IdentityError(f"Unknown master secret encoding: {encoding}")
    if isinstance(secret, (bytes, bytearray)):
        if not secret:
            raise IdentityError("master secret cannot be empty")
        return bytes(secret)
    if not isinstance(secret, str) or not secret:
        raise IdentityError("master secret cannot be empty")

    is_hex32 = bool(_HEX32_PATTERN.match(secret))
    if encoding == "hex":
        if not is_hex32:
            raise IdentityError("master secret must be 0x followed by 64 hex digits")
        return bytes.fromhex(secret[2:])
    if encoding == "auto" and is_hex32:
        return bytes.fromhex(secret[2:])
    return secret.encode("utf-8")


def derive_private_key(secret: bytes, uid: str) -> bytes:
    """keccak256(secret || utf8(lower(uid))). Range checking is left to the caller."""
    normalize_uid(uid)
    material = secret + uid.strip().lower().encode("utf-8")
    return keccak(primitive=material)


def derive_identity(
    master_secret: Union[str, bytes],
    uid: str,
    encoding: str = "auto"
) -> CardIdentity:
    """
    Derive the card identity for a UID.

    Args:
        master_secret: Deployment master secret (text or raw bytes)
        uid: Card UID as read from the tag, any case
        encoding: How a text master secret is interpreted

    Returns:
        CardIdentity with the derived private key and checksummed address

    Raises:
        IdentityError: empty UID or secret, or a digest outside the curve order
    """
    secret = master_secret_bytes(master_secret, encoding)
    private_key = derive_private_key(secret, uid)
    if not 0 < int.from_bytes(private_key, "big") < SECP256K1_N:
        raise IdentityError("Derived key is not a valid secp256k1 scalar")
    try:
        key = keys.PrivateKey(private_key)
    except KeyValidationError as e:
        raise IdentityError(f"Derived key is not a valid secp256k1 scalar: {e}")
    return CardIdentity(
        uid=normalize_uid(uid),
        private_key=private_key,
        address=key.public_key.to_checksum_address(),
    )


def card_label(uid: str) -> str:
    """Discovery label for naming services. Never used for authorization."""
    return normalize_uid(uid).lower()


def discovery_name(uid: str, parent_name: str) -> str:
    if not parent_name:
        return card_label(uid)
    return f"{card_label(uid)}.{parent_name.strip('.')}"
