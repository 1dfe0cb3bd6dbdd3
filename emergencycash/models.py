from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from .intent import SignedIntent


class SignedIntentPayload(BaseModel):
    uid: str
    card: str
    merchant: str
    token: str
    amount: str
    nonce: str
    expiry: str
    signature: str
    hash: Optional[str] = None

    def to_signed_intent(self) -> SignedIntent:
        return SignedIntent.from_dict(self.model_dump())


class CardInfo(BaseModel):
    uid: str
    address: str
    label: str
    revoked: bool


class RevocationList(BaseModel):
    revoked: List[str] = Field(default_factory=list)


class SettlementResponse(BaseModel):
    state: str
    reason: Optional[str] = None
    details: Optional[str] = None
    tx_hash: Optional[str] = None
    replay_key: Optional[str] = None
    retryable: bool = False
    nonce_committed: bool = False
    trace: List[str] = Field(default_factory=list)


class VerificationResponse(BaseModel):
    outcome: str
    valid: bool
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
