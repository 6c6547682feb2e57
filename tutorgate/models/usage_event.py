"""
tutorgate/models/usage_event.py

UsageEvent model: one successful gated action.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class FeedbackDecision(str, Enum):
    YES = "yes"
    NO = "no"


class FeedbackReason(str, Enum):
    CLEAR_EXPLANATION = "clear_explanation"
    GOOD_EXAMPLES = "good_examples"
    HELPED_UNDERSTAND = "helped_understand"
    EASY_CODE = "easy_code"
    UNCLEAR = "unclear"
    TOO_ADVANCED = "too_advanced"
    ALREADY_KNEW = "already_knew"
    CODE_BROKEN = "code_broken"


class UsageEvent(BaseModel):
    """
    UsageEvent records a completed action.

    Categories:
    - basic: learn / build / debug
    - advanced: follow-ups on a previous answer

    correlation_id points at the event a follow-up was generated from.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    identity_key: str
    category: str
    occurred_at: datetime
    action: Optional[str] = None
    correlation_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UsageFeedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    decision: FeedbackDecision
    reason: Optional[FeedbackReason] = None
