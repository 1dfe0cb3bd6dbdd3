"""
EmergencyCash Payment Intents

A PaymentIntent is an unsigned, single-use authorization to move `amount`
units of `token` from a card address to a merchant, valid until `expiry`
(absolute unix seconds). A SignedIntent adds the card UID and a 65-byte
recoverable signature; it is the portable artifact carried from the offline
signing side to the settlement side as JSON:

    {uid, card, merchant, token, amount, nonce, expiry, hash, signature}

amount, nonce and expiry travel as base-10 strings, addresses checksummed,
hash and signature as 0x-hex.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_utils import is_address, to_checksum_address

from .errors import IdentityError, IntentError
from .identity import normalize_uid
from .util import check_uint256, from_0x_hex, to_0x_hex

SIGNATURE_LENGTH = 65

_DECIMAL_PATTERN = re.compile(r"^[0-9]+$")


def checksum(value: Any, field_name: str) -> str:
    """Validate an address and return its checksummed form."""
    if not isinstance(value, str) or not is_address(value):
        raise IntentError(field_name, f"not a valid address: {value!r}")
    return to_checksum_address(value)


def _uint(value: Any, field_name: str) -> int:
    try:
        return check_uint256(value, field_name)
    except (TypeError, ValueError) as e:
        raise IntentError(field_name, str(e))


def _parse_decimal(value: Any, field_name: str) -> int:
    """Transport integers are base-10 strings; plain ints are tolerated."""
    if isinstance(value, bool):
        raise IntentError(field_name, "must be a base-10 integer string")
    if isinstance(value, int):
        return _uint(value, field_name)
    if not isinstance(value, str) or not _DECIMAL_PATTERN.match(value.strip()):
        raise IntentError(field_name, f"must be a base-10 integer string, got {value!r}")
    return _uint(int(value.strip()), field_name)


@dataclass(frozen=True)
class PaymentIntent:
    """Unsigned payment authorization. Immutable."""
    card: str
    merchant: str
    token: str
    amount: int
    nonce: int
    expiry: int

    def __post_init__(self):
        # Normalize addresses so two spellings of one intent compare equal
        object.__setattr__(self, "card", checksum(self.card, "card"))
        object.__setattr__(self, "merchant", checksum(self.merchant, "merchant"))
        object.__setattr__(self, "token", checksum(self.token, "token"))
        _uint(self.amount, "amount")
        _uint(self.nonce, "nonce")
        _uint(self.expiry, "expiry")
        if self.amount == 0:
            raise IntentError("amount", "must be greater than zero")

    @property
    def replay_key(self) -> str:
        return replay_key(self.card, self.nonce)

    def to_dict(self) -> Dict[str, str]:
        return {
            "card": self.card,
            "merchant": self.merchant,
            "token": self.token,
            "amount": str(self.amount),
            "nonce": str(self.nonce),
            "expiry": str(self.expiry),
        }


@dataclass(frozen=True)
class SignedIntent:
    """
    An intent bound to a card UID and its signature.

    `declared_hash` is the digest the signer reported; verification
    recomputes the digest and never trusts this value.
    """
    uid: str
    intent: PaymentIntent
    signature: bytes
    declared_hash: Optional[bytes] = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "uid", normalize_uid(self.uid))
        except IdentityError as e:
            raise IntentError("uid", str(e))
        if not isinstance(self.signature, (bytes, bytearray)) or len(self.signature) != SIGNATURE_LENGTH:
            raise IntentError("signature", f"must be {SIGNATURE_LENGTH} bytes")
        object.__setattr__(self, "signature", bytes(self.signature))
        if self.declared_hash is not None and len(self.declared_hash) != 32:
            raise IntentError("hash", "must be 32 bytes")

    @property
    def card(self) -> str:
        return self.intent.card

    @property
    def nonce(self) -> int:
        return self.intent.nonce

    def to_dict(self) -> Dict[str, str]:
        """Transport JSON object."""
        from .hashing import intent_hash

        data = {"uid": self.uid}
        data.update(self.intent.to_dict())
        data["hash"] = to_0x_hex(intent_hash(self.intent))
        data["signature"] = to_0x_hex(self.signature)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignedIntent':
        """
        Parse the transport JSON object.

        Raises:
            IntentError: naming the first malformed field
        """
        if not isinstance(data, dict):
            raise IntentError("intent", "must be a JSON object")
        for name in ("uid", "card", "merchant", "token", "amount", "nonce", "expiry", "signature"):
            if data.get(name) in (None, ""):
                raise IntentError(name, "missing")

        intent = PaymentIntent(
            card=checksum(data["card"], "card"),
            merchant=checksum(data["merchant"], "merchant"),
            token=checksum(data["token"], "token"),
            amount=_parse_decimal(data["amount"], "amount"),
            nonce=_parse_decimal(data["nonce"], "nonce"),
            expiry=_parse_decimal(data["expiry"], "expiry"),
        )
        try:
            signature = from_0x_hex(data["signature"])
        except ValueError:
            raise IntentError("signature", "not valid hex")

        declared_hash = None
        if data.get("hash"):
            try:
                declared_hash = from_0x_hex(data["hash"])
            except ValueError:
                raise IntentError("hash", "not valid hex")

        return cls(
            uid=str(data["uid"]),
            intent=intent,
            signature=signature,
            declared_hash=declared_hash,
        )


def replay_key(card: str, nonce: int) -> str:
    """Replay ledger key: lower-case card address and decimal nonce."""
    return f"{card.lower()}:{int(nonce)}"
