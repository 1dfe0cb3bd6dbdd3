"""Revocation registry tests."""

import shutil
import tempfile
import unittest
from pathlib import Path

from emergencycash.db import SqliteStore
from emergencycash.errors import IdentityError
from emergencycash.revocation import InMemoryRevocationRegistry, SqliteRevocationRegistry


class RevocationContract:

    def make_registry(self):
        raise NotImplementedError

    def setUp(self):
        self.registry = self.make_registry()

    def test_revoke_and_check(self):
        self.assertFalse(self.registry.is_revoked("CA0F79B4"))
        self.assertTrue(self.registry.revoke("CA0F79B4"))
        self.assertTrue(self.registry.is_revoked("CA0F79B4"))

    def test_uid_normalized(self):
        self.registry.revoke(" ca0f79b4 ")
        self.assertTrue(self.registry.is_revoked("CA0F79B4"))
        self.assertEqual(self.registry.list_revoked(), ["CA0F79B4"])

    def test_revoke_twice(self):
        self.registry.revoke("CA0F79B4")
        self.assertFalse(self.registry.revoke("ca0f79b4"))

    def test_unrevoke(self):
        self.registry.revoke("CA0F79B4")
        self.assertTrue(self.registry.unrevoke("ca0f79b4"))
        self.assertFalse(self.registry.is_revoked("CA0F79B4"))
        self.assertFalse(self.registry.unrevoke("CA0F79B4"))

    def test_revoke_many(self):
        self.assertEqual(self.registry.revoke_many(["AA", "bb", "AA"]), 2)
        self.assertEqual(self.registry.list_revoked(), ["AA", "BB"])

    def test_empty_uid(self):
        with self.assertRaises(IdentityError):
            self.registry.revoke("")


class TestInMemoryRevocationRegistry(RevocationContract, unittest.TestCase):

    def make_registry(self):
        return InMemoryRevocationRegistry()

    def test_initial_set(self):
        registry = InMemoryRevocationRegistry(["ca0f79b4"])
        self.assertTrue(registry.is_revoked("CA0F79B4"))


class TestSqliteRevocationRegistry(RevocationContract, unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = Path(self.tmpdir) / "revocations.db"
        super().setUp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def make_registry(self):
        return SqliteRevocationRegistry(SqliteStore(self.path))

    def test_shared_between_stores(self):
        self.registry.revoke("CA0F79B4")
        other = SqliteRevocationRegistry(SqliteStore(self.path))
        self.assertTrue(other.is_revoked("ca0f79b4"))


if __name__ == "__main__":
    unittest.main()
