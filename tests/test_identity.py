"""
Card identity derivation tests.

The derivation is pure: one (master secret, UID) pair always names one
address, and nothing else does.
"""

import unittest

from eth_account import Account
from eth_utils import keccak

from emergencycash.errors import IdentityError
from emergencycash.identity import (
    SECP256K1_N,
    card_label,
    derive_identity,
    derive_private_key,
    discovery_name,
    master_secret_bytes,
    normalize_uid,
)

from conftest import MASTER_SECRET, OTHER_SECRET, UID


class TestDerivation(unittest.TestCase):

    def test_deterministic(self):
        a = derive_identity(MASTER_SECRET, UID)
        b = derive_identity(MASTER_SECRET, UID)
        self.assertEqual(a, b)
        self.assertEqual(a.address, b.address)

    def test_private_key_formula(self):
        identity = derive_identity(MASTER_SECRET, UID)
        expected = keccak(primitive=MASTER_SECRET.encode("utf-8") + b"ca0f79b4")
        self.assertEqual(identity.private_key, expected)

    def test_address_matches_eth_account(self):
        identity = derive_identity(MASTER_SECRET, UID)
        self.assertEqual(identity.address, Account.from_key(identity.private_key).address)

    def test_uid_case_and_whitespace_do_not_matter(self):
        upper = derive_identity(MASTER_SECRET, "CA0F79B4")
        lower = derive_identity(MASTER_SECRET, "  ca0f79b4\n")
        self.assertEqual(upper.address, lower.address)
        self.assertEqual(lower.uid, "CA0F79B4")

    def test_distinct_uids_distinct_addresses(self):
        a = derive_identity(MASTER_SECRET, "CA0F79B4")
        b = derive_identity(MASTER_SECRET, "CA0F79B5")
        self.assertNotEqual(a.address, b.address)

    def test_distinct_secrets_distinct_addresses(self):
        a = derive_identity(MASTER_SECRET, UID)
        b = derive_identity(OTHER_SECRET, UID)
        self.assertNotEqual(a.address, b.address)

    def test_bytes_secret(self):
        from_text = derive_identity(MASTER_SECRET, UID)
        from_bytes = derive_identity(MASTER_SECRET.encode("utf-8"), UID)
        self.assertEqual(from_text.address, from_bytes.address)

    def test_private_key_not_in_repr(self):
        identity = derive_identity(MASTER_SECRET, UID)
        self.assertNotIn(identity.private_key.hex(), repr(identity))

    def test_empty_uid_rejected(self):
        with self.assertRaises(IdentityError):
            derive_identity(MASTER_SECRET, "   ")

    def test_empty_secret_rejected(self):
        with self.assertRaises(IdentityError):
            derive_identity("", UID)

    def test_derived_scalar_in_range(self):
        key = derive_private_key(MASTER_SECRET.encode("utf-8"), UID)
        self.assertTrue(0 < int.from_bytes(key, "big") < SECP256K1_N)


class TestMasterSecretEncoding(unittest.TestCase):

    HEX_SECRET = "0x" + "ab" * 32

    def test_auto_decodes_hex32(self):
        self.assertEqual(master_secret_bytes(self.HEX_SECRET), bytes.fromhex("ab" * 32))

    def test_auto_treats_other_text_as_utf8(self):
        self.assertEqual(master_secret_bytes("0xabc"), b"0xabc")

    def test_utf8_never_decodes(self):
        self.assertEqual(master_secret_bytes(self.HEX_SECRET, "utf8"), self.HEX_SECRET.encode())

    def test_hex_requires_hex32(self):
        with self.assertRaises(IdentityError):
            master_secret_bytes("not-hex", "hex")

    def test_encoding_changes_identity(self):
        a = derive_identity(self.HEX_SECRET, UID, "hex")
        b = derive_identity(self.HEX_SECRET, UID, "utf8")
        self.assertNotEqual(a.address, b.address)

    def test_unknown_encoding(self):
        with self.assertRaises(IdentityError):
            master_secret_bytes(MASTER_SECRET, "base64")


class TestLabels(unittest.TestCase):

    def test_normalize_uid(self):
        self.assertEqual(normalize_uid(" ca0f79b4 "), "CA0F79B4")

    def test_card_label(self):
        self.assertEqual(card_label("CA0F79B4"), "ca0f79b4")

    def test_discovery_name(self):
        self.assertEqual(discovery_name("CA0F79B4", "emergencycash.eth"), "ca0f79b4.emergencycash.eth")
        self.assertEqual(discovery_name("CA0F79B4", ""), "ca0f79b4")


if __name__ == "__main__":
    unittest.main()
