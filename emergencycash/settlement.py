"""
EmergencyCash Settlement Orchestrator

Redeems a SignedIntent exactly once:

    RECEIVED -> VERIFIED -> NOT_REVOKED -> NOT_REPLAYED -> FUNDED -> SETTLED
        \           \            \              \             \
         +-----------+------------+--------------+-------------+--> REJECTED(reason)

Cheap local checks (signature, revocation, replay) all run before any
network call, so an invalid or replayed intent never reaches the token
ledger. The replay key is claimed before the transfer and committed only
after the transfer is confirmed; a transfer that certainly did not happen
releases the claim so the same SignedIntent can be resubmitted. A transfer
whose outcome is unknown keeps the claim; later attempts look up its
receipt and never pay again while it may still be mined.

One settlement runs at a time per orchestrator; concurrent callers queue
on a lock.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import IntentError, LedgerError, SettlementRejectedError, StorageError, TransferError
from .identity import derive_identity
from .intent import SignedIntent
from .ledger import ChainClient
from .logging_config import audit_log, set_settlement_id
from .replay import ClaimResult, MarkResult, ReplayLedger
from .revocation import RevocationRegistry
from .verifier import IntentVerifier, VerificationOutcome

logger = logging.getLogger(__name__)


class SettlementState(str, Enum):
    RECEIVED = "RECEIVED"
    VERIFIED = "VERIFIED"
    NOT_REVOKED = "NOT_REVOKED"
    NOT_REPLAYED = "NOT_REPLAYED"
    FUNDED = "FUNDED"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"


class RejectReason(str, Enum):
    """Why a settlement was rejected. Every rejection names one."""
    INVALID_INTENT = "INVALID_INTENT"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    REPLAYED = "REPLAYED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NO_GAS = "NO_GAS"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"


# The same SignedIntent may be resubmitted after these
RETRYABLE_REASONS = frozenset({
    RejectReason.INSUFFICIENT_FUNDS,
    RejectReason.NO_GAS,
    RejectReason.TRANSFER_FAILED,
    RejectReason.STORAGE_ERROR,
})


@dataclass
class SettlementResult:
    """Outcome of one settlement attempt."""
    state: SettlementState
    reason: Optional[RejectReason] = None
    details: Optional[str] = None
    tx_hash: Optional[str] = None
    replay_key: Optional[str] = None
    trace: List[SettlementState] = field(default_factory=list)
    nonce_committed: bool = False

    def settled(self) -> bool:
        return self.state == SettlementState.SETTLED

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS

    def raise_for_rejection(self) -> None:
        if not self.settled():
            raise SettlementRejectedError(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "details": self.details,
            "tx_hash": self.tx_hash,
            "replay_key": self.replay_key,
            "retryable": self.retryable,
            "nonce_committed": self.nonce_committed,
            "trace": [s.value for s in self.trace],
        }


class _Rejection(Exception):
    def __init__(self, reason: RejectReason, details: str):
        self.reason = reason
        self.details = details
        super().__init__(details)


class SettlementOrchestrator:
    """
    Verifies, gates and settles SignedIntents against a token ledger.

    Usage:
        orchestrator = SettlementOrchestrator(master_secret, chain, replay, revocations)
        result = orchestrator.settle(signed_intent)
        if result.settled():
            print(result.tx_hash)
        else:
            print(result.reason, result.details)
    """

    def __init__(
        self,
        master_secret: Union[str, bytes],
        chain: ChainClient,
        replay_ledger: ReplayLedger,
        revocations: RevocationRegistry,
        secret_encoding: str = "auto",
        claim_lease_seconds: float = 600,
        mark_used_retries: int = 5,
        mark_used_retry_delay: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._master_secret = master_secret
        self._secret_encoding = secret_encoding
        self.chain = chain
        self.replay_ledger = replay_ledger
        self.revocations = revocations
        self.verifier = IntentVerifier(master_secret, secret_encoding, clock=lambda: int(clock()))
        self.claim_lease_seconds = claim_lease_seconds
        self.mark_used_retries = max(1, mark_used_retries)
        self.mark_used_retry_delay = mark_used_retry_delay
        self._sleep = sleep
        self._lock = threading.Lock()
        # (card, nonce, tx_hash) confirmed on-chain but not yet committed
        self._pending_commits: List[Tuple[str, int, str]] = []

    @property
    def pending_commits(self) -> List[Tuple[str, int, str]]:
        return list(self._pending_commits)

    def settle(self, signed: SignedIntent) -> SettlementResult:
        """
        Run the settlement state machine for one SignedIntent.

        Never raises for a rejection; the result names the reason.
        """
        with self._lock:
            set_settlement_id()
            self._flush_pending_commits()
            result = SettlementResult(
                state=SettlementState.RECEIVED,
                replay_key=signed.intent.replay_key,
                trace=[SettlementState.RECEIVED],
            )
            intent = signed.intent
            audit_log.settlement_request(intent.card, signed.uid, intent.nonce, intent.amount)
            try:
                self._run(signed, result)
            except _Rejection as r:
                result.state = SettlementState.REJECTED
                result.reason = r.reason
                result.details = r.details
                result.trace.append(SettlementState.REJECTED)
            audit_log.settlement_decision(
                intent.card,
                intent.nonce,
                result.state.value,
                reason=result.reason.value if result.reason else None,
                tx_hash=result.tx_hash,
            )
            return result

    def _advance(self, result: SettlementResult, state: SettlementState) -> None:
        result.state = state
        result.trace.append(state)

    def _run(self, signed: SignedIntent, result: SettlementResult) -> None:
        intent = signed.intent

        # RECEIVED -> VERIFIED
        verification = self.verifier.verify(signed)
        if not verification.is_valid():
            if verification.outcome == VerificationOutcome.EXPIRED:
                raise _Rejection(RejectReason.EXPIRED, verification.reason)
            audit_log.security_event(
                verification.outcome.value,
                card=intent.card,
                uid=signed.uid,
                reason=verification.reason,
            )
            raise _Rejection(
                RejectReason.INVALID_INTENT,
                f"{verification.outcome.value}: {verification.reason}"
            )
        self._advance(result, SettlementState.VERIFIED)

        # VERIFIED -> NOT_REVOKED
        try:
            revoked = self.revocations.is_revoked(signed.uid)
        except StorageError as e:
            logger.error("Revocation store unavailable: %s", e)
            raise _Rejection(RejectReason.STORAGE_ERROR, f"Revocation check failed: {e}")
        if revoked:
            audit_log.security_event("REVOKED_CARD_PRESENTED", card=intent.card, uid=signed.uid)
            raise _Rejection(RejectReason.REVOKED, f"UID {signed.uid} is revoked")
        self._advance(result, SettlementState.NOT_REVOKED)

        # NOT_REVOKED -> NOT_REPLAYED
        try:
            if self.replay_ledger.has_been_used(intent.card, intent.nonce):
                claim = ClaimResult.ALREADY_USED
            else:
                earlier_tx = self.replay_ledger.submitted_tx(intent.card, intent.nonce)
                if earlier_tx is not None:
                    self._resolve_earlier_transfer(intent, earlier_tx, result)
                claim = self.replay_ledger.claim(intent.card, intent.nonce, self.claim_lease_seconds)
        except StorageError as e:
            logger.error("Replay ledger unavailable: %s", e)
            raise _Rejection(RejectReason.STORAGE_ERROR, f"Replay check failed: {e}")
        if claim == ClaimResult.ALREADY_USED:
            audit_log.security_event("REPLAY_ATTEMPT", card=intent.card, replay_key=intent.replay_key)
            raise _Rejection(RejectReason.REPLAYED, f"Nonce already used: {intent.replay_key}")
        if claim == ClaimResult.IN_FLIGHT:
            raise _Rejection(RejectReason.REPLAYED, f"Settlement in progress: {intent.replay_key}")
        self._advance(result, SettlementState.NOT_REPLAYED)

        # NOT_REPLAYED -> FUNDED
        try:
            token = self.chain.token(intent.token)
            self._check_funds(token, intent)
        except _Rejection:
            self._release(intent)
            raise
        except LedgerError as e:
            self._release(intent)
            raise _Rejection(RejectReason.TRANSFER_FAILED, f"Ledger preflight failed: {e}")
        self._advance(result, SettlementState.FUNDED)

        # FUNDED -> SETTLED
        identity = derive_identity(self._master_secret, signed.uid, self._secret_encoding)
        try:
            receipt = token.transfer(identity, intent.merchant, intent.amount)
        except TransferError as e:
            if e.submitted and not e.reverted:
                # Outcome unknown: keep the claim and remember which transfer holds it
                logger.warning(
                    "Transfer %s unconfirmed; %s stays claimed",
                    e.tx_hash, intent.replay_key
                )
                self._note_submitted(intent, e.tx_hash)
            else:
                self._release(intent)
            result.tx_hash = e.tx_hash
            raise _Rejection(RejectReason.TRANSFER_FAILED, str(e))
        except LedgerError as e:
            self._release(intent)
            raise _Rejection(RejectReason.TRANSFER_FAILED, str(e))

        result.tx_hash = receipt.tx_hash
        audit_log.transfer_submitted(intent.card, intent.merchant, intent.amount, receipt.tx_hash)
        result.nonce_committed = self._commit(intent.card, intent.nonce, receipt.tx_hash)
        self._advance(result, SettlementState.SETTLED)

    def _check_funds(self, token, intent) -> None:
        balance = token.balance_of(intent.card)
        if balance < intent.amount:
            raise _Rejection(
                RejectReason.INSUFFICIENT_FUNDS,
                f"Balance {balance} below amount {intent.amount}"
            )
        native = self.chain.native_balance(intent.card)
        fee = self.chain.transfer_fee()
        if native == 0 or native < fee:
            raise _Rejection(
                RejectReason.NO_GAS,
                f"Card holds {native} native units, transfer needs {fee}"
            )

    def _resolve_earlier_transfer(self, intent, tx_hash: str, result: SettlementResult) -> None:
        """
        Settle the fate of a transfer broadcast by an earlier attempt.

        A confirmed transfer commits the nonce and rejects this attempt as a
        replay. A transfer with no receipt keeps the key in flight, even after
        the claim lease has lapsed. Only a reverted transfer lets a new claim
        through.
        """
        try:
            status = self.chain.transfer_status(tx_hash)
        except LedgerError as e:
            raise _Rejection(RejectReason.TRANSFER_FAILED, f"Cannot look up earlier transfer {tx_hash}: {e}")

        if status is None:
            result.tx_hash = tx_hash
            raise _Rejection(
                RejectReason.REPLAYED,
                f"Settlement in progress: {intent.replay_key} awaits transfer {tx_hash}"
            )
        if status:
            logger.warning("Earlier transfer %s for %s confirmed late", tx_hash, intent.replay_key)
            result.tx_hash = tx_hash
            result.nonce_committed = self._commit(intent.card, intent.nonce, tx_hash)
            audit_log.security_event("REPLAY_ATTEMPT", card=intent.card, replay_key=intent.replay_key)
            raise _Rejection(
                RejectReason.REPLAYED,
                f"Nonce already used: {intent.replay_key} (settled by {tx_hash})"
            )
        logger.info("Earlier transfer %s for %s reverted", tx_hash, intent.replay_key)

    def _note_submitted(self, intent, tx_hash: str) -> None:
        try:
            noted = self.replay_ledger.note_submitted(intent.card, intent.nonce, tx_hash)
        except StorageError as e:
            noted = False
            logger.error("Could not note transfer %s on %s: %s", tx_hash, intent.replay_key, e)
        if not noted:
            logger.critical(
                "Claim %s holds no record of transfer %s; a retry after the lease may pay twice",
                intent.replay_key, tx_hash
            )

    def _release(self, intent) -> None:
        try:
            self.replay_ledger.release(intent.card, intent.nonce)
        except StorageError as e:
            # The claim lapses when its lease expires
            logger.error("Could not release claim %s: %s", intent.replay_key, e)

    def _commit(self, card: str, nonce: int, tx_hash: str) -> bool:
        """Mark the nonce used after a confirmed transfer, retrying storage errors."""
        for attempt in range(1, self.mark_used_retries + 1):
            try:
                outcome = self.replay_ledger.mark_used(card, nonce, tx_hash)
            except StorageError as e:
                logger.warning("mark_used attempt %d/%d failed: %s", attempt, self.mark_used_retries, e)
                if attempt < self.mark_used_retries:
                    self._sleep(self.mark_used_retry_delay)
                continue
            if outcome == MarkResult.ALREADY_USED:
                audit_log.security_event(
                    "NONCE_COMMITTED_BY_OTHER_TRANSFER",
                    severity="high",
                    card=card,
                    nonce=str(nonce),
                    tx_hash=tx_hash,
                )
            else:
                audit_log.nonce_committed(f"{card.lower()}:{nonce}", tx_hash)
            return True

        logger.critical(
            "Transfer %s confirmed but nonce %s:%s not committed; queued for retry",
            tx_hash, card.lower(), nonce
        )
        self._pending_commits.append((card, nonce, tx_hash))
        return False

    def _flush_pending_commits(self) -> None:
        remaining = []
        for card, nonce, tx_hash in self._pending_commits:
            try:
                self.replay_ledger.mark_used(card, nonce, tx_hash)
                audit_log.nonce_committed(f"{card.lower()}:{nonce}", tx_hash)
            except StorageError as e:
                logger.error("Pending commit %s:%s still failing: %s", card.lower(), nonce, e)
                remaining.append((card, nonce, tx_hash))
        self._pending_commits = remaining

    def settle_payload(self, payload: Dict[str, Any]) -> SettlementResult:
        """Parse a transport JSON object and settle it; malformed input is INVALID_INTENT."""
        try:
            signed = SignedIntent.from_dict(payload)
        except IntentError as e:
            logger.warning("Malformed intent payload: %s", e)
            return SettlementResult(
                state=SettlementState.REJECTED,
                reason=RejectReason.INVALID_INTENT,
                details=str(e),
                trace=[SettlementState.RECEIVED, SettlementState.REJECTED],
            )
        return self.settle(signed)
