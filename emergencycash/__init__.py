"""
EmergencyCash Payment Intent Engine

Version: 0.1.0
License: Apache 2.0

Card-initiated token payments that can be authorized while the card is
offline and are settled exactly once.

A card carries no secret. Its secp256k1 identity is re-derived from the
card UID and a deployment master secret; the card key signs a single-use,
time-bounded PaymentIntent, and the settlement side redeems it only if:

    signature valid AND identity bound to UID AND not expired
    AND UID not revoked AND (card, nonce) never redeemed

Usage:
    from emergencycash import (
        derive_identity,
        build_signed_intent,
        SettlementOrchestrator,
        SqliteStore,
        SqliteReplayLedger,
        SqliteRevocationRegistry,
    )

    identity = derive_identity(master_secret, "CA0F79B4")
    signed = build_signed_intent(identity, merchant, token, amount=1_000_000, nonce=1)

    store = SqliteStore("data/emergencycash.db")
    orchestrator = SettlementOrchestrator(
        master_secret,
        chain,
        SqliteReplayLedger(store),
        SqliteRevocationRegistry(store),
    )
    result = orchestrator.settle(signed)

    if result.settled():
        print(result.tx_hash)
    else:
        print(result.reason, result.details)
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    EmergencyCashError,
    ConfigError,
    IdentityError,
    IntentError,
    SignatureError,
    StorageError,
    LedgerError,
    TransferError,
    SettlementRejectedError,
)

# Identity
from .identity import (
    CardIdentity,
    derive_identity,
    normalize_uid,
    card_label,
    discovery_name,
    DERIVATION_VERSION,
)

# Intents, codec and signing
from .intent import PaymentIntent, SignedIntent, replay_key
from .hashing import encode_intent, intent_hash
from .signing import sign_intent, build_signed_intent, recover_signer

# Verifier
from .verifier import (
    IntentVerifier,
    VerificationResult,
    VerificationOutcome,
    verify_intent,
)

# Storage
from .db import SqliteStore
from .replay import (
    ReplayLedger,
    InMemoryReplayLedger,
    SqliteReplayLedger,
    ClaimResult,
    MarkResult,
)
from .revocation import (
    RevocationRegistry,
    InMemoryRevocationRegistry,
    SqliteRevocationRegistry,
)

# Token ledger
from .ledger import ChainClient, TokenLedger, TransferReceipt, Web3ChainClient

# Settlement
from .settlement import (
    SettlementOrchestrator,
    SettlementResult,
    SettlementState,
    RejectReason,
    RETRYABLE_REASONS,
)

# Point of sale
from .scanner import PosTerminal, ScanSerializer, parse_scan_line


__all__ = [
    "__version__",

    # Errors
    "EmergencyCashError",
    "ConfigError",
    "IdentityError",
    "IntentError",
    "SignatureError",
    "StorageError",
    "LedgerError",
    "TransferError",
    "SettlementRejectedError",

    # Identity
    "CardIdentity",
    "derive_identity",
    "normalize_uid",
    "card_label",
    "discovery_name",
    "DERIVATION_VERSION",

    # Intents
    "PaymentIntent",
    "SignedIntent",
    "replay_key",
    "encode_intent",
    "intent_hash",
    "sign_intent",
    "build_signed_intent",
    "recover_signer",

    # Verifier
    "IntentVerifier",
    "VerificationResult",
    "VerificationOutcome",
    "verify_intent",

    # Storage
    "SqliteStore",
    "ReplayLedger",
    "InMemoryReplayLedger",
    "SqliteReplayLedger",
    "ClaimResult",
    "MarkResult",
    "RevocationRegistry",
    "InMemoryRevocationRegistry",
    "SqliteRevocationRegistry",

    # Token ledger
    "ChainClient",
    "TokenLedger",
    "TransferReceipt",
    "Web3ChainClient",

    # Settlement
    "SettlementOrchestrator",
    "SettlementResult",
    "SettlementState",
    "RejectReason",
    "RETRYABLE_REASONS",

    # Point of sale
    "PosTerminal",
    "ScanSerializer",
    "parse_scan_line",
]
