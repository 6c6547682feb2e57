"""
Tool dispatch: gate -> generate -> record usage.

Usage is recorded only after the generator returned an answer, so a failed
generation never costs the caller quota.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from tutorgate.core.clock import normalize_now
from tutorgate.core.errors import (
    AppError,
    LimitExceededError,
    NotFoundError,
    PermissionError,
    ServiceUnavailableError,
)
from tutorgate.features.entitlements.service import resolve_and_authorize
from tutorgate.features.tools.generator import ContentGenerator, GenerationError
from tutorgate.features.usage.service import get_usage_event, record_usage
from tutorgate.models.tools import ToolRequest
from tutorgate.models.verdict import ErrorKind, Verdict

logger = logging.getLogger(__name__)


class ToolInvocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    tool: str
    identity: str
    tier: str
    remaining: Optional[int] = None
    linked: bool = False
    content: Dict[str, Any]


def _retry_after_seconds(verdict: Verdict, now: datetime) -> Optional[int]:
    if verdict.cooldown_expiry is None:
        return None
    return max(0, math.ceil((verdict.cooldown_expiry - now).total_seconds()))


def verdict_error(verdict: Verdict, now: Optional[Any] = None) -> AppError:
    """Translate a deny verdict into the AppError the HTTP layer renders."""
    details = verdict.to_details()
    if verdict.kind == ErrorKind.FORBIDDEN:
        return PermissionError(verdict.hint or "Action not available on your tier", details=details)
    if verdict.kind == ErrorKind.LIMIT_EXCEEDED:
        headers = {}
        retry_after = _retry_after_seconds(verdict, normalize_now(now))
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return LimitExceededError(verdict.hint or "Free limit reached", details=details, headers=headers)
    return ServiceUnavailableError(
        verdict.hint or "Service temporarily unavailable",
        code="store_unavailable",
        details=details,
    )


def _usage_metadata(request: ToolRequest) -> Dict[str, Any]:
    metadata = request.model_dump(exclude={"pairing_code", "tool", "previous_context"}, exclude_none=True)
    # Keep the ledger small: long inputs are truncated
    return {key: (value[:500] if isinstance(value, str) else value) for key, value in metadata.items()}


def invoke_tool(
    request: ToolRequest,
    headers: Optional[Mapping[str, str]],
    *,
    generator: Optional[ContentGenerator],
    peer_address: Optional[str] = None,
    now: Optional[Any] = None,
) -> ToolInvocation:
    """
    Run one tool call end to end.

    Raises:
        PermissionError / LimitExceededError / ServiceUnavailableError: gate denied
        NotFoundError: follow-up names an unknown parent event or one owned by another identity
        AppError(generation_failed): generator could not answer
    """
    if generator is None:
        raise ServiceUnavailableError("Content generation is not configured", code="generation_unavailable")

    normalized_now = normalize_now(now)
    verdict = resolve_and_authorize(
        headers,
        request.category,
        peer_address=peer_address,
        pairing_token=request.pairing_code,
        now=normalized_now,
    )
    if not verdict.allow:
        raise verdict_error(verdict, normalized_now)

    correlation_id = request.correlation_id
    if correlation_id is not None:
        parent = get_usage_event(correlation_id)
        # Another identity's event is reported as unknown
        if parent is None or parent.identity_key != verdict.identity:
            raise NotFoundError(f"Unknown parent_event_id: {correlation_id}", code="parent_not_found")

    try:
        content = generator.generate(request, identity=verdict.identity, tier=verdict.tier)
    except GenerationError as e:
        logger.error("[tools] generation failed", extra={"identity": verdict.identity, "tool": request.tool, "error": str(e)})
        raise AppError("Content generation failed", code="generation_failed", status_code=502)

    event_id = record_usage(
        verdict.identity,
        request.category,
        _usage_metadata(request),
        action=request.tool,
        correlation_id=correlation_id,
        occurred_at=normalized_now if now is not None else None,
    )

    return ToolInvocation(
        event_id=event_id,
        tool=request.tool,
        identity=verdict.identity,
        tier=verdict.tier,
        remaining=verdict.remaining,
        linked=verdict.linked,
        content=content,
    )
