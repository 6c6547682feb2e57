"""Usage feedback API."""
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from tutorgate.features.usage.service import record_feedback
from tutorgate.models.usage_event import FeedbackDecision, FeedbackReason


router = APIRouter(prefix="/v1/usage", tags=["usage"])


class FeedbackRequest(BaseModel):
    decision: FeedbackDecision
    reason: Optional[FeedbackReason] = None


@router.post("/{event_id}/feedback")
def submit_feedback(event_id: str, payload: FeedbackRequest):
    """Was this answer helpful? One row per usage event; resubmitting overwrites."""
    feedback = record_feedback(event_id, payload.decision, payload.reason)
    return {"data": feedback.model_dump(mode="json")}
