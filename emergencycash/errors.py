"""
EmergencyCash error hierarchy.

Every failure the engine raises derives from EmergencyCashError so callers
at the CLI and HTTP boundaries can catch one type and still report the
specific kind.
"""

from typing import Optional


class EmergencyCashError(Exception):
    """Base class for all EmergencyCash errors."""


class ConfigError(EmergencyCashError):
    """A required setting is missing or malformed."""


class IdentityError(EmergencyCashError):
    """Card identity could not be derived (empty UID, bad master secret)."""


class IntentError(EmergencyCashError):
    """A payment intent is malformed."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class SignatureError(EmergencyCashError):
    """A signature is malformed or cannot be recovered."""


class StorageError(EmergencyCashError):
    """Replay or revocation persistence is unavailable or corrupt."""


class LedgerError(EmergencyCashError):
    """The external token ledger could not answer a query."""


class TransferError(LedgerError):
    """
    A token transfer did not confirm.

    tx_hash is set when the transaction reached the network; in that case
    the outcome is unknown until the receipt is found, unless reverted is
    True.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None, reverted: bool = False):
        self.tx_hash = tx_hash
        self.reverted = reverted
        super().__init__(message)

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None


class SettlementRejectedError(EmergencyCashError):
    """Raised by callers that prefer exceptions over SettlementResult."""

    def __init__(self, result):
        self.result = result
        reason = result.reason.value if result.reason else "unknown"
        super().__init__(f"Settlement rejected: {reason}")
