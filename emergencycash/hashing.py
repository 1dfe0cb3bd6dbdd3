"""
EmergencyCash Intent Codec

The intent digest is keccak256 over the Ethereum ABI encoding of

    (address card, address merchant, address token,
     uint256 amount, uint256 nonce, uint256 expiry)

i.e. six fixed 32-byte words: addresses left-padded with zeros, integers
big-endian. Signer and verifier must agree on this layout bit for bit, or
every signature recovers to the wrong address.
"""

from eth_abi import encode
from eth_utils import keccak

from .intent import PaymentIntent

INTENT_ABI_TYPES = ["address", "address", "address", "uint256", "uint256", "uint256"]

ENCODED_LENGTH = 32 * len(INTENT_ABI_TYPES)


def encode_intent(intent: PaymentIntent) -> bytes:
    """Canonical 192-byte encoding of an intent."""
    return encode(
        INTENT_ABI_TYPES,
        [intent.card, intent.merchant, intent.token, intent.amount, intent.nonce, intent.expiry],
    )


def intent_hash(intent: PaymentIntent) -> bytes:
    """32-byte keccak256 digest of the canonical encoding."""
    return keccak(primitive=encode_intent(intent))
