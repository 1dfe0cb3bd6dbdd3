"""
EmergencyCash settlement service.

HTTP front-end for the settlement side: verify and settle SignedIntents
produced offline, and administer the revocation registry. It never signs.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import FastAPI, HTTPException

from . import config
from .db import SqliteStore
from .errors import IdentityError, IntentError, SettlementRejectedError, StorageError
from .identity import DERIVATION_VERSION, card_label, derive_identity
from .ledger import Web3ChainClient
from .models import CardInfo, RevocationList, SettlementResponse, SignedIntentPayload, VerificationResponse
from .replay import SqliteReplayLedger
from .revocation import RevocationRegistry, SqliteRevocationRegistry
from .settlement import RejectReason, SettlementOrchestrator
from .verifier import IntentVerifier

logger = logging.getLogger(__name__)

REJECT_STATUS = {
    RejectReason.INVALID_INTENT: 403,
    RejectReason.EXPIRED: 403,
    RejectReason.REVOKED: 403,
    RejectReason.REPLAYED: 409,
    RejectReason.INSUFFICIENT_FUNDS: 402,
    RejectReason.NO_GAS: 402,
    RejectReason.TRANSFER_FAILED: 502,
    RejectReason.STORAGE_ERROR: 503,
}


@dataclass
class Services:
    master_secret: Union[str, bytes]
    orchestrator: SettlementOrchestrator
    revocations: RevocationRegistry
    secret_encoding: str = "auto"


def services_from_config() -> Services:
    """Wire the production services from environment configuration."""
    master_secret = config.load_master_secret()
    store = SqliteStore(config.db_path())
    revocations = SqliteRevocationRegistry(store)
    chain = Web3ChainClient(
        config.load_rpc_url(),
        chain_id=config.load_chain_id(),
        gas_limit=config.GAS_LIMIT,
        receipt_timeout=config.RECEIPT_TIMEOUT_SECONDS,
        default_decimals=config.DECIMALS,
    )
    orchestrator = SettlementOrchestrator(
        master_secret,
        chain,
        SqliteReplayLedger(store),
        revocations,
        secret_encoding=config.MASTER_SECRET_ENCODING,
        claim_lease_seconds=config.CLAIM_LEASE_SECONDS,
        mark_used_retries=config.MARK_USED_RETRIES,
        mark_used_retry_delay=config.MARK_USED_RETRY_DELAY,
    )
    return Services(master_secret, orchestrator, revocations, config.MASTER_SECRET_ENCODING)


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="EmergencyCash Settlement",
        docs_url=None if config.is_production() else "/docs",
        redoc_url=None,
    )
    app.state.services = services

    @app.on_event("startup")
    def _startup():
        if app.state.services is None:
            app.state.services = services_from_config()
            logger.info("Settlement service configured (env=%s, db=%s)", config.ENV, config.db_path())

    def svc() -> Services:
        if app.state.services is None:
            raise HTTPException(503, "NOT_CONFIGURED")
        return app.state.services

    def parse(payload: SignedIntentPayload):
        try:
            return payload.to_signed_intent()
        except IntentError as e:
            raise HTTPException(403, {"reason": RejectReason.INVALID_INTENT.value, "details": str(e)})

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "env": config.ENV,
            "derivation": DERIVATION_VERSION,
            "configured": app.state.services is not None,
            "settings": config.validate_config(),
        }

    @app.get("/cards/{uid}", response_model=CardInfo)
    def card(uid: str):
        s = svc()
        try:
            identity = derive_identity(s.master_secret, uid, s.secret_encoding)
            revoked = s.revocations.is_revoked(identity.uid)
        except IdentityError as e:
            raise HTTPException(400, str(e))
        except StorageError as e:
            raise HTTPException(503, {"reason": RejectReason.STORAGE_ERROR.value, "details": str(e)})
        return CardInfo(uid=identity.uid, address=identity.address, label=card_label(uid), revoked=revoked)

    @app.post("/intents/verify", response_model=VerificationResponse)
    def verify(payload: SignedIntentPayload):
        s = svc()
        signed = parse(payload)
        result = IntentVerifier(s.master_secret, s.secret_encoding).verify(signed)
        return VerificationResponse(**result.to_dict())

    @app.post("/settle", response_model=SettlementResponse)
    def settle(payload: SignedIntentPayload):
        s = svc()
        signed = parse(payload)
        result = s.orchestrator.settle(signed)
        try:
            result.raise_for_rejection()
        except SettlementRejectedError as e:
            rejected = e.result
            raise HTTPException(
                REJECT_STATUS[rejected.reason],
                {"reason": rejected.reason.value, "details": rejected.details, "retryable": rejected.retryable}
            )
        return SettlementResponse(**result.to_dict())

    @app.get("/revocations", response_model=RevocationList)
    def list_revocations():
        try:
            return RevocationList(revoked=svc().revocations.list_revoked())
        except StorageError as e:
            raise HTTPException(503, {"reason": RejectReason.STORAGE_ERROR.value, "details": str(e)})

    @app.post("/revocations/{uid}")
    def revoke(uid: str):
        return _change_revocation(svc().revocations.revoke, uid)

    @app.delete("/revocations/{uid}")
    def unrevoke(uid: str):
        return _change_revocation(svc().revocations.unrevoke, uid)

    return app


def _change_revocation(action, uid: str):
    try:
        changed = action(uid)
    except IdentityError as e:
        raise HTTPException(400, str(e))
    except StorageError as e:
        raise HTTPException(503, {"reason": RejectReason.STORAGE_ERROR.value, "details": str(e)})
    return {"uid": uid.strip().upper(), "changed": changed}


app = create_app()
