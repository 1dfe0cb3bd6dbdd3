"""
EmergencyCash Revocation Registry

Persisted set of revoked card UIDs (normalized upper-case). A revoked UID
is refused when signing new intents and always at settlement, even for an
intent whose signature is valid: revocation overrides the signature.
"""

import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Set

from .db import SqliteStore
from .identity import normalize_uid
from .logging_config import audit_log


class RevocationRegistry(ABC):
    """
    Abstract storage service for revoked UIDs.

    is_revoked raises StorageError when the store cannot answer; it never
    defaults to "not revoked".
    """

    @abstractmethod
    def is_revoked(self, uid: str) -> bool:
        pass

    @abstractmethod
    def _add(self, uid: str) -> bool:
        pass

    @abstractmethod
    def _remove(self, uid: str) -> bool:
        pass

    @abstractmethod
    def list_revoked(self) -> List[str]:
        pass

    def revoke(self, uid: str) -> bool:
        """Revoke a UID. Returns True if it was not already revoked."""
        uid = normalize_uid(uid)
        changed = self._add(uid)
        if changed:
            audit_log.revocation_change(uid, revoked=True)
        return changed

    def unrevoke(self, uid: str) -> bool:
        """Reinstate a UID. Returns True if it was revoked."""
        uid = normalize_uid(uid)
        changed = self._remove(uid)
        if changed:
            audit_log.revocation_change(uid, revoked=False)
        return changed

    def revoke_many(self, uids: Iterable[str]) -> int:
        return sum(1 for uid in uids if self.revoke(uid))


class InMemoryRevocationRegistry(RevocationRegistry):
    """In-memory registry for development/testing."""

    def __init__(self, revoked: Iterable[str] = ()):
        self._revoked: Set[str] = {normalize_uid(u) for u in revoked}
        self._lock = threading.Lock()

    def is_revoked(self, uid: str) -> bool:
        with self._lock:
            return normalize_uid(uid) in self._revoked

    def _add(self, uid: str) -> bool:
        with self._lock:
            if uid in self._revoked:
                return False
            self._revoked.add(uid)
            return True

    def _remove(self, uid: str) -> bool:
        with self._lock:
            if uid not in self._revoked:
                return False
            self._revoked.discard(uid)
            return True

    def list_revoked(self) -> List[str]:
        with self._lock:
            return sorted(self._revoked)


class SqliteRevocationRegistry(RevocationRegistry):
    """SQLite-backed registry sharing the database with the replay ledger."""

    def __init__(self, store: SqliteStore):
        self.store = store

    def is_revoked(self, uid: str) -> bool:
        with self.store.reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_uids WHERE uid=?",
                (normalize_uid(uid),)
            ).fetchone()
        return row is not None

    def _add(self, uid: str) -> bool:
        with self.store.transaction() as conn:
            cur = conn.execute("INSERT OR IGNORE INTO revoked_uids(uid) VALUES(?)", (uid,))
            return cur.rowcount == 1

    def _remove(self, uid: str) -> bool:
        with self.store.transaction() as conn:
            cur = conn.execute("DELETE FROM revoked_uids WHERE uid=?", (uid,))
            return cur.rowcount == 1

    def list_revoked(self) -> List[str]:
        with self.store.reading() as conn:
            rows = conn.execute("SELECT uid FROM revoked_uids ORDER BY uid").fetchall()
        return [row["uid"] for row in rows]
