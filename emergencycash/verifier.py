"""
EmergencyCash Intent Verification

Checks, in order, short-circuiting on the first failure:

1. Recompute the digest (and compare it to a declared hash, if any)
2. Recover the signer; it must equal intent.card        -> INVALID_SIGNATURE
3. Re-derive the identity for the claimed UID; its address
   must equal intent.card                                 -> IDENTITY_MISMATCH
4. intent.expiry must not be before now                   -> EXPIRED

Step 3 binds the signature to the key this deployment would derive for the
UID, so an intent signed by any other key is rejected even though its
signature is internally consistent.

Verification is a pure predicate over the intent, the master secret and
wall-clock time. It never mutates the SignedIntent.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .errors import IdentityError, SignatureError
from .hashing import intent_hash
from .identity import derive_identity
from .intent import SignedIntent
from .signing import recover_signer
from .util import now_epoch, to_0x_hex


class VerificationOutcome(str, Enum):
    """Verification outcomes."""
    VALID = "VALID"
    HASH_MISMATCH = "HASH_MISMATCH"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    EXPIRED = "EXPIRED"


@dataclass
class VerificationResult:
    """Result of verifying a SignedIntent."""
    outcome: VerificationOutcome
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def is_valid(self) -> bool:
        return self.outcome == VerificationOutcome.VALID

    @classmethod
    def valid(cls, details: Dict[str, Any] = None) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.VALID, details=details)

    @classmethod
    def rejected(
        cls,
        outcome: VerificationOutcome,
        reason: str,
        details: Dict[str, Any] = None
    ) -> 'VerificationResult':
        return cls(outcome=outcome, reason=reason, details=details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "valid": self.is_valid(),
            "reason": self.reason,
            "details": self.details,
        }


class IntentVerifier:
    """
    Verifies SignedIntents against one deployment master secret.

    Usage:
        verifier = IntentVerifier(master_secret)
        result = verifier.verify(signed_intent)
        if not result.is_valid():
            print(result.outcome, result.reason)
    """

    def __init__(
        self,
        master_secret: Union[str, bytes],
        secret_encoding: str = "auto",
        clock: Callable[[], int] = now_epoch
    ):
        self._master_secret = master_secret
        self._secret_encoding = secret_encoding
        self._clock = clock

    def verify(self, signed: SignedIntent, now: Optional[int] = None) -> VerificationResult:
        intent = signed.intent

        # Step 1: digest
        digest = intent_hash(intent)
        if signed.declared_hash is not None and signed.declared_hash != digest:
            return VerificationResult.rejected(
                VerificationOutcome.HASH_MISMATCH,
                "Declared hash does not match intent fields",
                {"computed": to_0x_hex(digest), "declared": to_0x_hex(signed.declared_hash)}
            )

        # Step 2: signature recovers to the claimed card
        try:
            signer = recover_signer(digest, signed.signature)
        except SignatureError as e:
            return VerificationResult.rejected(VerificationOutcome.INVALID_SIGNATURE, str(e))

        if signer.lower() != intent.card.lower():
            return VerificationResult.rejected(
                VerificationOutcome.INVALID_SIGNATURE,
                "Signature does not recover to card",
                {"recovered": signer, "card": intent.card}
            )

        # Step 3: card is the identity this deployment derives for the UID
        try:
            identity = derive_identity(self._master_secret, signed.uid, self._secret_encoding)
        except IdentityError as e:
            return VerificationResult.rejected(VerificationOutcome.IDENTITY_MISMATCH, str(e))

        if identity.address.lower() != intent.card.lower():
            return VerificationResult.rejected(
                VerificationOutcome.IDENTITY_MISMATCH,
                "UID-derived address does not match card",
                {"derived": identity.address, "card": intent.card, "uid": signed.uid}
            )

        # Step 4: expiry against wall-clock at verification time
        current = now if now is not None else self._clock()
        if intent.expiry < current:
            return VerificationResult.rejected(
                VerificationOutcome.EXPIRED,
                f"Intent expired at {intent.expiry}",
                {"expiry": intent.expiry, "now": current}
            )

        return VerificationResult.valid({"card": intent.card, "hash": to_0x_hex(digest)})


def verify_intent(
    signed: SignedIntent,
    master_secret: Union[str, bytes],
    secret_encoding: str = "auto",
    now: Optional[int] = None
) -> VerificationResult:
    """
    Convenience function to verify a SignedIntent.

    Args:
        signed: The SignedIntent to verify
        master_secret: Deployment master secret
        secret_encoding: How a text master secret is interpreted
        now: Override wall-clock (unix seconds)

    Returns:
        VerificationResult
    """
    return IntentVerifier(master_secret, secret_encoding).verify(signed, now=now)
