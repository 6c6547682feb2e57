"""
tutorgate/models/activation_code.py

Activation codes and the pairing tokens handed out when one is claimed.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from tutorgate.models.verdict import ErrorKind


class CodeState(str, Enum):
    """
    issued -> claimed -> linked
    any non-revoked state -> revoked (terminal)
    """
    ISSUED = "issued"
    CLAIMED = "claimed"
    LINKED = "linked"
    REVOKED = "revoked"


class ActivationCode(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    purchase_id: str
    owner_contact: Optional[str] = None
    state: CodeState = CodeState.ISSUED
    device_id: Optional[str] = None
    linked_identity: Optional[str] = None
    issued_at: datetime
    claimed_at: Optional[datetime] = None
    linked_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None


class PairingToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    code: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    consumed_by: Optional[str] = None


class ClaimResult(BaseModel):
    """Outcome of a claim attempt. Failures carry a kind and a hint, never raise."""
    model_config = ConfigDict(frozen=True)

    success: bool
    code: str
    state: Optional[CodeState] = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    pairing_token: Optional[str] = None
    pairing_expires_at: Optional[datetime] = None
