"""
EmergencyCash Replay Ledger

The persisted set of consumed (card, nonce) pairs and the sole guard
against settling one intent twice.

Lifecycle of a key "<card-lowercase>:<nonce>":

    (absent) --claim--> claimed --mark_used--> used
                 ^          |
                 +-release--+   (or the claim lease expires)

A claim is taken atomically before the token transfer starts, so two
settlements of the same intent, in this process or another one sharing the
store, cannot both reach the ledger. The key becomes "used" only after the
transfer is confirmed; a failed transfer releases the claim and leaves the
nonce unconsumed. A transfer that was broadcast but not confirmed keeps its
claim, and its tx hash is noted on the claim so a later attempt can look the
transfer up before paying again.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .db import SqliteStore
from .intent import replay_key


class MarkResult(str, Enum):
    OK = "OK"
    ALREADY_USED = "ALREADY_USED"


class ClaimResult(str, Enum):
    CLAIMED = "CLAIMED"
    ALREADY_USED = "ALREADY_USED"
    IN_FLIGHT = "IN_FLIGHT"


@dataclass
class _Entry:
    state: str
    claim_expires_at: Optional[float] = None
    tx_hash: Optional[str] = None


class ReplayLedger(ABC):
    """
    Abstract storage service for consumed nonces.

    Implementations must be:
    - Persistent (survives restarts), except the in-memory test double
    - Atomic: claim and mark_used are check-and-set operations
    - Fail-closed: storage trouble raises StorageError, never "unused"
    """

    @abstractmethod
    def has_been_used(self, card: str, nonce: int) -> bool:
        """True if the key has been committed as used."""

    @abstractmethod
    def claim(self, card: str, nonce: int, lease_seconds: float) -> ClaimResult:
        """Reserve an unused key for one settlement attempt."""

    @abstractmethod
    def mark_used(self, card: str, nonce: int, tx_hash: Optional[str] = None) -> MarkResult:
        """
        Commit the key as used.

        Returns:
            OK on first commit, or on a repeat with the same tx_hash
            ALREADY_USED if it was committed for a different transfer
        """

    @abstractmethod
    def release(self, card: str, nonce: int) -> bool:
        """Drop an uncommitted claim. Returns True if one was dropped."""

    @abstractmethod
    def note_submitted(self, card: str, nonce: int, tx_hash: str) -> bool:
        """Record the broadcast transfer on a claim. Returns False if unclaimed."""

    @abstractmethod
    def submitted_tx(self, card: str, nonce: int) -> Optional[str]:
        """tx hash noted on an uncommitted claim, live or lapsed."""

    @abstractmethod
    def list_used(self) -> List[str]:
        """All committed keys."""


class InMemoryReplayLedger(ReplayLedger):
    """
    In-memory replay ledger for development/testing.

    WARNING: Not persistent and not shared between processes.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def has_been_used(self, card: str, nonce: int) -> bool:
        with self._lock:
            entry = self._entries.get(replay_key(card, nonce))
            return entry is not None and entry.state == "used"

    def claim(self, card: str, nonce: int, lease_seconds: float) -> ClaimResult:
        key = replay_key(card, nonce)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.state == "used":
                    return ClaimResult.ALREADY_USED
                if entry.claim_expires_at is not None and entry.claim_expires_at > now:
                    return ClaimResult.IN_FLIGHT
            self._entries[key] = _Entry(state="claimed", claim_expires_at=now + lease_seconds)
            return ClaimResult.CLAIMED

    def mark_used(self, card: str, nonce: int, tx_hash: Optional[str] = None) -> MarkResult:
        key = replay_key(card, nonce)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.state == "used":
                if tx_hash is not None and entry.tx_hash == tx_hash:
                    return MarkResult.OK
                return MarkResult.ALREADY_USED
            self._entries[key] = _Entry(state="used", tx_hash=tx_hash)
            return MarkResult.OK

    def release(self, card: str, nonce: int) -> bool:
        key = replay_key(card, nonce)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != "claimed":
                return False
            del self._entries[key]
            return True

    def note_submitted(self, card: str, nonce: int, tx_hash: str) -> bool:
        with self._lock:
            entry = self._entries.get(replay_key(card, nonce))
            if entry is None or entry.state != "claimed":
                return False
            entry.tx_hash = tx_hash
            return True

    def submitted_tx(self, card: str, nonce: int) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(replay_key(card, nonce))
            if entry is None or entry.state != "claimed":
                return None
            return entry.tx_hash

    def list_used(self) -> List[str]:
        with self._lock:
            return sorted(k for k, e in self._entries.items() if e.state == "used")


class SqliteReplayLedger(ReplayLedger):
    """
    SQLite-backed replay ledger.

    Schema (see db.SCHEMA):
        replay_ledger(replay_key PRIMARY KEY, state, claim_expires_at, tx_hash)

    Every check-and-set runs in one BEGIN IMMEDIATE transaction.
    """

    def __init__(self, store: SqliteStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def has_been_used(self, card: str, nonce: int) -> bool:
        with self.store.reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM replay_ledger WHERE replay_key=? AND state='used'",
                (replay_key(card, nonce),)
            ).fetchone()
        return row is not None

    def claim(self, card: str, nonce: int, lease_seconds: float) -> ClaimResult:
        key = replay_key(card, nonce)
        now = self._clock()
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT state, claim_expires_at FROM replay_ledger WHERE replay_key=?",
                (key,)
            ).fetchone()
            if row is not None:
                if row["state"] == "used":
                    return ClaimResult.ALREADY_USED
                if row["claim_expires_at"] is not None and row["claim_expires_at"] > now:
                    return ClaimResult.IN_FLIGHT
            conn.execute(
                "INSERT OR REPLACE INTO replay_ledger(replay_key, state, claim_expires_at, tx_hash) "
                "VALUES(?, 'claimed', ?, NULL)",
                (key, now + lease_seconds)
            )
            return ClaimResult.CLAIMED

    def mark_used(self, card: str, nonce: int, tx_hash: Optional[str] = None) -> MarkResult:
        key = replay_key(card, nonce)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT state, tx_hash FROM replay_ledger WHERE replay_key=?",
                (key,)
            ).fetchone()
            if row is not None and row["state"] == "used":
                if tx_hash is not None and row["tx_hash"] == tx_hash:
                    return MarkResult.OK
                return MarkResult.ALREADY_USED
            conn.execute(
                "INSERT OR REPLACE INTO replay_ledger(replay_key, state, claim_expires_at, tx_hash) "
                "VALUES(?, 'used', NULL, ?)",
                (key, tx_hash)
            )
            return MarkResult.OK

    def release(self, card: str, nonce: int) -> bool:
        with self.store.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM replay_ledger WHERE replay_key=? AND state='claimed'",
                (replay_key(card, nonce),)
            )
            return cur.rowcount == 1

    def note_submitted(self, card: str, nonce: int, tx_hash: str) -> bool:
        with self.store.transaction() as conn:
            cur = conn.execute(
                "UPDATE replay_ledger SET tx_hash=? "
                "WHERE replay_key=? AND state='claimed'",
                (tx_hash, replay_key(card, nonce))
            )
            return cur.rowcount == 1

    def submitted_tx(self, card: str, nonce: int) -> Optional[str]:
        with self.store.reading() as conn:
            row = conn.execute(
                "SELECT tx_hash FROM replay_ledger WHERE replay_key=? AND state='claimed'",
                (replay_key(card, nonce),)
            ).fetchone()
        return row["tx_hash"] if row is not None else None

    def list_used(self) -> List[str]:
        with self.store.reading() as conn:
            rows = conn.execute(
                "SELECT replay_key FROM replay_ledger WHERE state='used' ORDER BY replay_key"
            ).fetchall()
        return [row["replay_key"] for row in rows]

    def import_used(self, keys: List[str]) -> int:
        """
        Import legacy "card:nonce" keys as used. Returns count added.

        Keys are normalized to the lower-case card form; malformed keys
        raise ValueError before anything is written.
        """
        normalized = [_normalize_key(k) for k in keys]
        added = 0
        with self.store.transaction() as conn:
            for key in normalized:
                cur = conn.execute(
                    "INSERT INTO replay_ledger(replay_key, state) VALUES(?, 'used') "
                    "ON CONFLICT(replay_key) DO UPDATE SET state='used', claim_expires_at=NULL "
                    "WHERE replay_ledger.state='claimed'",
                    (key,)
                )
                added += cur.rowcount
        return added


def _normalize_key(key: str) -> str:
    card, sep, nonce = str(key).strip().rpartition(":")
    if not sep or not card or not nonce.isdigit():
        raise ValueError(f"Malformed replay key: {key!r}")
    return replay_key(card, int(nonce))
