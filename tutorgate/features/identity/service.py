"""
tutorgate/features/identity/service.py

Identity records: lazily created on first call, never deleted.

Handles:
- get-or-create of the record for a resolved identity key
- downgrade (immediate) and scheduled downgrade at period end
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Any, Tuple

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutorgate.core.clock import as_utc, normalize_now
from tutorgate.core.config import settings
from tutorgate.core.database import get_db_session, identities
from tutorgate.models.identity import IdentityRecord, Tier, TierStatus

logger = logging.getLogger(__name__)


def _row_to_record(row) -> IdentityRecord:
    return IdentityRecord(
        identity_key=row.identity_key,
        tier=Tier(row.tier),
        tier_status=TierStatus(row.tier_status),
        usage_count=row.usage_count or 0,
        linked_code=row.linked_code,
        downgrade_at=as_utc(row.downgrade_at),
        next_billing_at=as_utc(row.next_billing_at),
        early_user=bool(row.early_user),
        created_at=as_utc(row.created_at),
    )


def get_identity(identity_key: str, *, session: Optional[Session] = None) -> Optional[IdentityRecord]:
    if session is not None:
        row = session.execute(
            select(identities).where(identities.c.identity_key == identity_key)
        ).first()
        return _row_to_record(row) if row else None

    with get_db_session() as own_session:
        return get_identity(identity_key, session=own_session)


def get_or_create_identity(identity_key: str, now: Optional[Any] = None) -> IdentityRecord:
    """Return the record for identity_key, creating a free-tier record on first sight."""
    normalized_now = normalize_now(now)

    existing = get_identity(identity_key)
    if existing:
        return existing

    early = bool(settings.EARLY_ACCESS_ENABLED)
    try:
        with get_db_session() as session:
            session.execute(
                insert(identities).values(
                    identity_key=identity_key,
                    tier=Tier.FREE.value,
                    tier_status=TierStatus.ACTIVE.value,
                    usage_count=0,
                    early_user=early,
                    early_user_registered_at=normalized_now if early else None,
                    created_at=normalized_now,
                    updated_at=normalized_now,
                )
            )
        logger.info("[identity] created", extra={"identity": identity_key, "early_user": early})
    except IntegrityError:
        # Concurrent first call inserted the row first
        logger.debug("[identity] create lost race", extra={"identity": identity_key})

    record = get_identity(identity_key)
    if record is None:
        raise RuntimeError(f"identity {identity_key!r} missing after create")
    return record


def downgrade_identity(
    identity_key: str,
    *,
    reason: str,
    now: Optional[Any] = None,
    session: Optional[Session] = None,
    linked_code: Optional[str] = None,
) -> bool:
    """Move a premium identity back to free. Returns True if a row changed.

    With linked_code, only downgrade while premium still comes from that
    code. The identity's linked_code is kept afterwards.
    """
    normalized_now = normalize_now(now)
    stmt = (
        update(identities)
        .where(identities.c.identity_key == identity_key)
        .where(identities.c.tier == Tier.PREMIUM.value)
    )
    if linked_code is not None:
        stmt = stmt.where(identities.c.linked_code == linked_code)
    stmt = stmt.values(
        tier=Tier.FREE.value,
        tier_status=TierStatus.ACTIVE.value,
        downgrade_at=None,
        updated_at=normalized_now,
    )
    if session is not None:
        changed = session.execute(stmt).rowcount > 0
    else:
        with get_db_session() as own_session:
            changed = own_session.execute(stmt).rowcount > 0

    if changed:
        logger.warning(
            "[identity] DOWNGRADED",
            extra={"identity": identity_key, "reason": reason},
        )
    return changed


def downgrade_identities(
    links: Iterable[Tuple[str, str]],
    *,
    reason: str,
    now: Optional[Any] = None,
) -> List[str]:
    """Downgrade each (identity_key, linked_code) pair in one transaction.

    Returns the identities that actually changed.
    """
    pairs = [(key, code) for key, code in links if key]
    if not pairs:
        return []
    changed: List[str] = []
    with get_db_session() as session:
        for key, code in pairs:
            if downgrade_identity(key, reason=reason, now=now, session=session, linked_code=code):
                changed.append(key)
    return changed


def schedule_downgrade(
    identity_keys: Iterable[str],
    downgrade_at: datetime,
    now: Optional[Any] = None,
) -> int:
    """Mark premium identities as cancelled, losing premium at downgrade_at."""
    normalized_now = normalize_now(now)
    keys = [key for key in identity_keys if key]
    if not keys:
        return 0
    with get_db_session() as session:
        result = session.execute(
            update(identities)
            .where(identities.c.identity_key.in_(keys))
            .where(identities.c.tier == Tier.PREMIUM.value)
            .values(
                tier_status=TierStatus.CANCELLED.value,
                downgrade_at=as_utc(downgrade_at),
                updated_at=normalized_now,
            )
        )
        count = result.rowcount
    logger.info(
        "[identity] downgrade scheduled",
        extra={"identities": keys, "downgrade_at": str(downgrade_at), "count": count},
    )
    return count


def clear_scheduled_downgrade(
    identity_keys: Iterable[str],
    next_billing_at: Optional[datetime] = None,
    now: Optional[Any] = None,
) -> int:
    """Undo a scheduled downgrade (subscription resumed) and record the next billing date."""
    normalized_now = normalize_now(now)
    keys = [key for key in identity_keys if key]
    if not keys:
        return 0
    with get_db_session() as session:
        result = session.execute(
            update(identities)
            .where(identities.c.identity_key.in_(keys))
            .where(identities.c.tier == Tier.PREMIUM.value)
            .values(
                tier_status=TierStatus.ACTIVE.value,
                downgrade_at=None,
                next_billing_at=as_utc(next_billing_at),
                updated_at=normalized_now,
            )
        )
        return result.rowcount
