"""
tutorgate/models/identity.py

Identity record: the entitlement state attached to a resolved caller identity.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class TierStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"  # premium until downgrade_at, then free


class IdentityRecord(BaseModel):
    """
    Entitlement state for one caller identity.

    Identity keys come from the resolver and look like:
    - an explicit user id relayed by the assistant runtime
    - subnet-10.0.0 (IPv4 caller, grouped by /24)
    - ip-<raw> (any other address shape)
    - unknown

    usage_count is informational only; quota is always computed from
    usage events.
    """
    model_config = ConfigDict(frozen=True)

    identity_key: str
    tier: Tier = Tier.FREE
    tier_status: TierStatus = TierStatus.ACTIVE
    usage_count: int = 0
    linked_code: Optional[str] = None
    downgrade_at: Optional[datetime] = None
    next_billing_at: Optional[datetime] = None
    early_user: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_premium(self) -> bool:
        return self.tier == Tier.PREMIUM
