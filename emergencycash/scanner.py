"""
EmergencyCash Point of Sale

Turns a card event stream (one UID per line, as emitted by the serial
reader) into settlements, one scan at a time.

Reader lines look like "UID_RAW:CA0F79B4"; bare hex tokens are accepted
too, anything else is reader chatter and ignored.
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional, Union

from .errors import IdentityError, StorageError
from .identity import derive_identity, normalize_uid
from .revocation import RevocationRegistry
from .settlement import RejectReason, SettlementOrchestrator, SettlementResult, SettlementState
from .signing import build_signed_intent

logger = logging.getLogger(__name__)

UID_PREFIX = "UID_RAW:"

_UID_PATTERN = re.compile(r'^[0-9A-Fa-f]+$')


def parse_scan_line(line: str) -> Optional[str]:
    """Return the normalized UID on a reader line, or None."""
    line = line.strip()
    if line.startswith(UID_PREFIX):
        line = line[len(UID_PREFIX):].strip()
    if not line or not _UID_PATTERN.match(line):
        if line:
            logger.debug("Ignoring reader line: %r", line)
        return None
    return normalize_uid(line)


def iter_scan_events(stream: Iterable[str]) -> Iterator[str]:
    """Yield one UID per scan line in arrival order."""
    for line in stream:
        uid = parse_scan_line(line)
        if uid is not None:
            yield uid


class ScanSerializer:
    """
    Admits one scan at a time.

    A scan is refused while another is in flight, and until `cooldown`
    seconds have passed since the previous one finished, so rapid re-scans
    of one card cannot race two settlements.
    """

    def __init__(self, cooldown: float = 1.2, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._busy = False
        self._ready_at = 0.0

    @property
    def busy(self) -> bool:
        return self._busy

    def try_begin(self) -> bool:
        with self._lock:
            if self._busy or self._clock() < self._ready_at:
                return False
            self._busy = True
            return True

    def end(self) -> None:
        with self._lock:
            self._busy = False
            self._ready_at = self._clock() + self.cooldown

    @contextmanager
    def slot(self) -> Iterator[bool]:
        """Yields True if admitted; always ends the slot it took."""
        admitted = self.try_begin()
        try:
            yield admitted
        finally:
            if admitted:
                self.end()


class PosTerminal:
    """
    Point-of-sale loop: scan -> derive -> sign intent -> settle.

    The terminal holds the master secret, so it signs on the card's behalf
    and then redeems the intent through the orchestrator like any other.
    """

    def __init__(
        self,
        master_secret: Union[str, bytes],
        merchant: str,
        token: str,
        price_units: int,
        orchestrator: SettlementOrchestrator,
        revocations: RevocationRegistry,
        serializer: Optional[ScanSerializer] = None,
        intent_ttl_seconds: int = 300,
        secret_encoding: str = "auto",
        nonce_source: Optional[Callable[[], int]] = None
    ):
        self._master_secret = master_secret
        self._secret_encoding = secret_encoding
        self.merchant = merchant
        self.token = token
        self.price_units = price_units
        self.orchestrator = orchestrator
        self.revocations = revocations
        self.serializer = serializer or ScanSerializer()
        self.intent_ttl_seconds = intent_ttl_seconds
        self._nonce_source = nonce_source or (lambda: time.time_ns() // 1_000_000)

    def handle_scan(self, uid: str) -> Optional[SettlementResult]:
        """
        Process one scan.

        Returns None when the scan was refused because another is in flight
        or the cooldown has not elapsed.
        """
        with self.serializer.slot() as admitted:
            if not admitted:
                logger.info("Scan of %s ignored: terminal busy", uid)
                return None
            return self._process(uid)

    def _process(self, uid: str) -> SettlementResult:
        try:
            identity = derive_identity(self._master_secret, uid, self._secret_encoding)
        except IdentityError as e:
            return _rejected(RejectReason.INVALID_INTENT, str(e))

        logger.info("Card %s scanned, address %s", identity.uid, identity.address)

        # Signing-time gate; settlement checks revocation again
        try:
            if self.revocations.is_revoked(identity.uid):
                logger.warning("Revoked card %s presented; payment blocked", identity.uid)
                return _rejected(RejectReason.REVOKED, f"UID {identity.uid} is revoked")
        except StorageError as e:
            return _rejected(RejectReason.STORAGE_ERROR, str(e))

        signed = build_signed_intent(
            identity,
            merchant=self.merchant,
            token=self.token,
            amount=self.price_units,
            nonce=self._nonce_source(),
            ttl_seconds=self.intent_ttl_seconds,
        )
        return self.orchestrator.settle(signed)

    def run(self, stream: Iterable[str], on_result: Optional[Callable[[str, SettlementResult], None]] = None) -> int:
        """
        Consume scan events until the stream ends. Returns settled count.
        """
        settled = 0
        for uid in iter_scan_events(stream):
            result = self.handle_scan(uid)
            if result is None:
                continue
            if result.settled():
                settled += 1
            if on_result is not None:
                on_result(uid, result)
        return settled


def _rejected(reason: RejectReason, details: str) -> SettlementResult:
    return SettlementResult(
        state=SettlementState.REJECTED,
        reason=reason,
        details=details,
        trace=[SettlementState.RECEIVED, SettlementState.REJECTED],
    )
