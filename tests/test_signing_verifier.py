"""
Signing and verification tests.

Verification order: digest, signature, identity binding, expiry. The first
failing step names the outcome.
"""

import dataclasses
import unittest

from eth_account import Account

from emergencycash.errors import IntentError, SignatureError
from emergencycash.hashing import intent_hash
from emergencycash.identity import derive_identity
from emergencycash.intent import PaymentIntent, SignedIntent
from emergencycash.signing import build_signed_intent, recover_signer, sign_digest, sign_intent
from emergencycash.verifier import IntentVerifier, VerificationOutcome, verify_intent

from conftest import MASTER_SECRET, MERCHANT, OTHER_SECRET, TOKEN, UID

NOW = 1_700_000_000


def signed_for(uid=UID, secret=MASTER_SECRET, **overrides):
    identity = derive_identity(secret, uid)
    fields = dict(merchant=MERCHANT, token=TOKEN, amount=1_000_000, nonce=7, expiry=NOW + 300)
    fields.update(overrides)
    return build_signed_intent(identity, **fields)


class TestSigning(unittest.TestCase):

    def setUp(self):
        self.identity = derive_identity(MASTER_SECRET, UID)
        self.digest = bytes(range(32))

    def test_signature_shape(self):
        signature = sign_digest(self.identity.private_key, self.digest)
        self.assertEqual(len(signature), 65)
        self.assertIn(signature[64], (27, 28))

    def test_matches_eth_account(self):
        signature = sign_digest(self.identity.private_key, self.digest)
        expected = Account.unsafe_sign_hash(self.digest, self.identity.private_key)
        self.assertEqual(signature, bytes(expected.signature))

    def test_recover(self):
        signature = sign_digest(self.identity.private_key, self.digest)
        self.assertEqual(recover_signer(self.digest, signature), self.identity.address)

    def test_recover_accepts_zero_one_v(self):
        signature = sign_digest(self.identity.private_key, self.digest)
        raw_v = signature[:64] + bytes([signature[64] - 27])
        self.assertEqual(recover_signer(self.digest, raw_v), self.identity.address)

    def test_recover_rejects_bad_v(self):
        signature = sign_digest(self.identity.private_key, self.digest)
        with self.assertRaises(SignatureError):
            recover_signer(self.digest, signature[:64] + bytes([5]))

    def test_recover_rejects_short_signature(self):
        with self.assertRaises(SignatureError):
            recover_signer(self.digest, bytes(64))

    def test_build_signed_intent(self):
        signed = signed_for()
        self.assertEqual(signed.card, self.identity.address)
        self.assertEqual(signed.uid, UID)
        self.assertEqual(signed.declared_hash, intent_hash(signed.intent))
        self.assertEqual(recover_signer(intent_hash(signed.intent), signed.signature), signed.card)

    def test_default_expiry_from_ttl(self):
        signed = build_signed_intent(self.identity, MERCHANT, TOKEN, 5, 1, ttl_seconds=300, now=NOW)
        self.assertEqual(signed.intent.expiry, NOW + 300)


class TestVerifier(unittest.TestCase):

    def setUp(self):
        self.verifier = IntentVerifier(MASTER_SECRET, clock=lambda: NOW)

    def test_valid(self):
        result = self.verifier.verify(signed_for())
        self.assertTrue(result.is_valid())
        self.assertEqual(result.outcome, VerificationOutcome.VALID)

    def test_tampered_amount_fails_signature(self):
        signed = signed_for()
        tampered = SignedIntent(
            uid=signed.uid,
            intent=dataclasses.replace(signed.intent, amount=999_000_000),
            signature=signed.signature,
        )
        result = self.verifier.verify(tampered)
        self.assertEqual(result.outcome, VerificationOutcome.INVALID_SIGNATURE)

    def test_tampered_merchant_fails_signature(self):
        signed = signed_for()
        tampered = SignedIntent(
            uid=signed.uid,
            intent=dataclasses.replace(signed.intent, merchant="0x9999999999999999999999999999999999999999"),
            signature=signed.signature,
        )
        self.assertEqual(self.verifier.verify(tampered).outcome, VerificationOutcome.INVALID_SIGNATURE)

    def test_declared_hash_mismatch(self):
        signed = signed_for()
        bad = dataclasses.replace(signed, declared_hash=bytes(32))
        result = self.verifier.verify(bad)
        self.assertEqual(result.outcome, VerificationOutcome.HASH_MISMATCH)

    def test_foreign_deployment_key_is_identity_mismatch(self):
        # Internally consistent signature from a key this deployment would not derive
        signed = signed_for(secret=OTHER_SECRET)
        result = self.verifier.verify(signed)
        self.assertEqual(result.outcome, VerificationOutcome.IDENTITY_MISMATCH)

    def test_uid_swap_is_identity_mismatch(self):
        signed = signed_for()
        swapped = dataclasses.replace(signed, uid="DEADBEEF")
        self.assertEqual(self.verifier.verify(swapped).outcome, VerificationOutcome.IDENTITY_MISMATCH)

    def test_signature_for_other_card_is_invalid(self):
        identity = derive_identity(MASTER_SECRET, UID)
        other = derive_identity(MASTER_SECRET, "DEADBEEF")
        intent = PaymentIntent(identity.address, MERCHANT, TOKEN, 10, 1, NOW + 60)
        signed = SignedIntent(uid=UID, intent=intent, signature=sign_intent(other, intent))
        self.assertEqual(self.verifier.verify(signed).outcome, VerificationOutcome.INVALID_SIGNATURE)

    def test_expiry_boundary(self):
        signed = signed_for(expiry=NOW)
        self.assertTrue(self.verifier.verify(signed, now=NOW).is_valid())
        self.assertEqual(self.verifier.verify(signed, now=NOW + 1).outcome, VerificationOutcome.EXPIRED)

        self.assertTrue(self.verifier.verify(signed_for(expiry=NOW + 1)).is_valid())
        self.assertEqual(self.verifier.verify(signed_for(expiry=NOW - 1)).outcome, VerificationOutcome.EXPIRED)

    def test_expiry_checked_last(self):
        signed = signed_for(secret=OTHER_SECRET, expiry=NOW - 100)
        self.assertEqual(self.verifier.verify(signed).outcome, VerificationOutcome.IDENTITY_MISMATCH)

    def test_verify_intent_helper(self):
        result = verify_intent(signed_for(), MASTER_SECRET, now=NOW)
        self.assertTrue(result.is_valid())
        self.assertEqual(result.to_dict()["outcome"], "VALID")


class TestTransport(unittest.TestCase):

    def test_round_trip(self):
        signed = signed_for()
        data = signed.to_dict()
        self.assertEqual(data["amount"], "1000000")
        self.assertTrue(data["signature"].startswith("0x"))
        self.assertEqual(SignedIntent.from_dict(data), signed)

    def test_missing_field_named(self):
        data = signed_for().to_dict()
        del data["nonce"]
        with self.assertRaises(IntentError) as ctx:
            SignedIntent.from_dict(data)
        self.assertEqual(ctx.exception.field, "nonce")

    def test_fractional_amount_rejected(self):
        data = signed_for().to_dict()
        data["amount"] = "1.5"
        with self.assertRaises(IntentError) as ctx:
            SignedIntent.from_dict(data)
        self.assertEqual(ctx.exception.field, "amount")

    def test_zero_amount_rejected(self):
        data = signed_for().to_dict()
        data["amount"] = "0"
        with self.assertRaises(IntentError):
            SignedIntent.from_dict(data)

    def test_amount_above_uint256_rejected(self):
        data = signed_for().to_dict()
        data["amount"] = str(2 ** 256)
        with self.assertRaises(IntentError):
            SignedIntent.from_dict(data)

    def test_bad_address_rejected(self):
        data = signed_for().to_dict()
        data["merchant"] = "0x1234"
        with self.assertRaises(IntentError) as ctx:
            SignedIntent.from_dict(data)
        self.assertEqual(ctx.exception.field, "merchant")

    def test_short_signature_rejected(self):
        data = signed_for().to_dict()
        data["signature"] = data["signature"][:-2]
        with self.assertRaises(IntentError) as ctx:
            SignedIntent.from_dict(data)
        self.assertEqual(ctx.exception.field, "signature")

    def test_replay_key(self):
        signed = signed_for()
        self.assertEqual(signed.intent.replay_key, f"{signed.card.lower()}:7")


if __name__ == "__main__":
    unittest.main()
