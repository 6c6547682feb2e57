"""
tutorgate/features/usage/service.py

Usage ledger.

Handles:
- Usage event recording (append-only)
- Rolling window counts and cooldown expiry
- Deterministic usage queries
- Per-event feedback
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Any, List
from uuid import uuid4

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import DBAPIError, IntegrityError, StatementError

from tutorgate.core.clock import as_utc, normalize_now
from tutorgate.core.database import get_db_session, usage_events, usage_feedback, identities
from tutorgate.core.errors import NotFoundError
from tutorgate.models.usage_event import (
    FeedbackDecision,
    FeedbackReason,
    UsageEvent,
    UsageFeedback,
)

logger = logging.getLogger(__name__)


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return str(value)


def _sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Coerce metadata to JSON-safe values; drop it entirely if it still will not serialize."""
    if not metadata:
        return None
    try:
        cleaned = _json_safe(metadata)
        json.dumps(cleaned)
        return cleaned
    except (TypeError, ValueError) as e:
        logger.warning("[usage] metadata dropped", extra={"reason": str(e)})
        return None


def record_usage(
    identity: str,
    category: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    action: Optional[str] = None,
    correlation_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> str:
    """
    Append one usage event for a completed action.

    Args:
        identity: Resolved identity key
        category: Action category (basic, advanced)
        metadata: Optional non-critical details (tool inputs, model, timings)
        action: Tool name
        correlation_id: Event id of the answer a follow-up was generated from
        occurred_at: Timestamp of usage (defaults to now)

    Returns:
        The new event id
    """
    occurred_at = normalize_now(occurred_at)
    event_id = str(uuid4())
    safe_metadata = _sanitize_metadata(metadata)

    values = dict(
        id=event_id,
        identity_key=identity,
        category=category,
        action=action,
        correlation_id=correlation_id,
        occurred_at=occurred_at,
    )

    try:
        with get_db_session() as session:
            session.execute(insert(usage_events).values(metadata=safe_metadata, **values))
            session.execute(
                update(identities)
                .where(identities.c.identity_key == identity)
                .values(usage_count=identities.c.usage_count + 1)
            )
    except StatementError as e:
        if safe_metadata is None or isinstance(e, DBAPIError):
            raise
        # The driver rejected the metadata blob; the event itself must still land
        logger.warning("[usage] metadata rejected by store, retrying without it", extra={"reason": str(e.orig)})
        with get_db_session() as session:
            session.execute(insert(usage_events).values(metadata=None, **values))
            session.execute(
                update(identities)
                .where(identities.c.identity_key == identity)
                .values(usage_count=identities.c.usage_count + 1)
            )

    logger.info(
        "[usage] recorded",
        extra={"identity": identity, "category": category, "action": action, "event_id": event_id},
    )
    return event_id


def _window_start(now: datetime, window_seconds: int) -> datetime:
    return now - timedelta(seconds=window_seconds)


def count_recent(identity: str, window_seconds: int, now: Optional[Any] = None) -> int:
    """
    Count events for identity with now - window <= occurred_at <= now.

    Pure function of the ledger: same identity + same now + same window = same count.
    """
    now = normalize_now(now)
    with get_db_session() as session:
        count = session.execute(
            select(func.count())
            .select_from(usage_events)
            .where(usage_events.c.identity_key == identity)
            .where(usage_events.c.occurred_at >= _window_start(now, window_seconds))
            .where(usage_events.c.occurred_at <= now)
        ).scalar_one()
    return int(count)


def last_event_time(identity: str, now: Optional[Any] = None) -> Optional[datetime]:
    now = normalize_now(now)
    with get_db_session() as session:
        latest = session.execute(
            select(func.max(usage_events.c.occurred_at))
            .where(usage_events.c.identity_key == identity)
            .where(usage_events.c.occurred_at <= now)
        ).scalar_one_or_none()
    return as_utc(latest)


def cooldown_expiry(identity: str, window_seconds: int, now: Optional[Any] = None) -> Optional[datetime]:
    """When the most recent event leaves the rolling window, or None without events."""
    latest = last_event_time(identity, now=now)
    if latest is None:
        return None
    return latest + timedelta(seconds=window_seconds)


def get_usage_events(
    identity: str,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    category: Optional[str] = None,
) -> List[UsageEvent]:
    """
    Get usage events for an identity, oldest first.

    Args:
        identity: Identity to query
        start_time: Optional start of time window (inclusive)
        end_time: Optional end of time window (inclusive)
        category: Optional filter by category
    """
    with get_db_session() as session:
        query = select(usage_events).where(usage_events.c.identity_key == identity)

        if category:
            query = query.where(usage_events.c.category == category)
        if start_time:
            query = query.where(usage_events.c.occurred_at >= normalize_now(start_time))
        if end_time:
            query = query.where(usage_events.c.occurred_at <= normalize_now(end_time))

        rows = session.execute(query.order_by(usage_events.c.occurred_at)).all()

        return [
            UsageEvent(
                id=row.id,
                identity_key=row.identity_key,
                category=row.category,
                action=row.action,
                correlation_id=row.correlation_id,
                occurred_at=as_utc(row.occurred_at),
                metadata=row.metadata,
            )
            for row in rows
        ]


def get_usage_event(event_id: str) -> Optional[UsageEvent]:
    with get_db_session() as session:
        row = session.execute(select(usage_events).where(usage_events.c.id == event_id)).first()
        if not row:
            return None
        return UsageEvent(
            id=row.id,
            identity_key=row.identity_key,
            category=row.category,
            action=row.action,
            correlation_id=row.correlation_id,
            occurred_at=as_utc(row.occurred_at),
            metadata=row.metadata,
        )


def record_feedback(
    event_id: str,
    decision: FeedbackDecision,
    reason: Optional[FeedbackReason] = None,
) -> UsageFeedback:
    """
    Store the single feedback row for a usage event (last write wins).

    Raises:
        NotFoundError: If the event does not exist
    """
    decision = FeedbackDecision(decision)
    reason = FeedbackReason(reason) if reason else None

    if get_usage_event(event_id) is None:
        raise NotFoundError(f"Usage event not found: {event_id}")

    values = {"decision": decision.value, "reason": reason.value if reason else None}
    update_stmt = update(usage_feedback).where(usage_feedback.c.event_id == event_id).values(**values)
    try:
        with get_db_session() as session:
            if not session.execute(update_stmt).rowcount:
                session.execute(insert(usage_feedback).values(event_id=event_id, **values))
    except IntegrityError:
        # Concurrent first write landed; ours wins
        with get_db_session() as session:
            session.execute(update_stmt)

    logger.info("[usage] feedback", extra={"event_id": event_id, **values})
    return UsageFeedback(event_id=event_id, decision=decision, reason=reason)
