"""
tutorgate/models/verdict.py

Gate verdicts and the user-facing error taxonomy.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class ErrorKind(str, Enum):
    FORBIDDEN = "FORBIDDEN"            # tier lacks the action
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"  # quota exhausted, retry at cooldown_expiry
    INVALID_CODE = "INVALID_CODE"
    CODE_REVOKED = "CODE_REVOKED"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    INTERNAL = "INTERNAL"              # store failure


class GateStage(str, Enum):
    RESOLVE = "RESOLVE"
    LINK = "LINK"
    TIER_CHECK = "TIER_CHECK"
    QUOTA_CHECK = "QUOTA_CHECK"


class Verdict(BaseModel):
    """
    Result of resolve_and_authorize.

    remaining is None for premium callers (unbounded). stage is the stage
    that decided the verdict.
    """
    model_config = ConfigDict(frozen=True)

    allow: bool
    identity: str
    tier: str
    stage: GateStage
    kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    hint: Optional[str] = None
    remaining: Optional[int] = None
    cooldown_expiry: Optional[datetime] = None
    linked: bool = False

    def to_details(self) -> Dict[str, Any]:
        """Fields exposed to the caller alongside an error payload."""
        return {
            "kind": self.kind.value if self.kind else None,
            "identity": self.identity,
            "tier": self.tier,
            "reason": self.reason,
            "hint": self.hint,
            "remaining": self.remaining,
            "cooldown_expiry": self.cooldown_expiry.isoformat() if self.cooldown_expiry else None,
        }
