"""
tutorgate/features/linking/service.py

Identity linker: joins a free tool-caller identity to a claimed activation code.

Two join keys, tried in order:
1. A pairing token presented by the caller (explicit). An invalid token
   never falls back to the heuristic.
2. The most recently claimed, still unlinked code (heuristic). It is not
   scoped to the caller in any way, so with two purchases claimed close
   together the first caller to arrive takes the most recent one. Disable
   with HEURISTIC_LINKING_ENABLED=false once callers present pairing tokens.

A link is one transaction of conditional updates. If any of them affects zero
rows a concurrent caller won; the transaction rolls back and the record comes
back unchanged. Losing a race is never an error.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Any

from sqlalchemy import select, update

from tutorgate.core.clock import normalize_now
from tutorgate.core.config import settings
from tutorgate.core.database import get_db_session, activation_codes, identities
from tutorgate.features.activation.pairing import consume_token, get_valid_token
from tutorgate.features.activation.service import row_to_activation_code, get_code
from tutorgate.features.identity.service import get_identity
from tutorgate.models.activation_code import ActivationCode, CodeState
from tutorgate.models.identity import IdentityRecord, Tier, TierStatus

logger = logging.getLogger(__name__)


class _LinkRaceLost(Exception):
    """A conditional update in the link transaction matched no row."""

    def __init__(self, step: str):
        super().__init__(step)
        self.step = step


def find_link_candidate(now: Optional[Any] = None) -> Optional[ActivationCode]:
    """Most recently claimed code that is not linked yet, within LINK_WINDOW_SECONDS if set."""
    normalized_now = normalize_now(now)
    query = (
        select(activation_codes)
        .where(activation_codes.c.state == CodeState.CLAIMED.value)
        .where(activation_codes.c.linked_identity.is_(None))
    )
    window = settings.LINK_WINDOW_SECONDS
    if window and window > 0:
        query = query.where(activation_codes.c.claimed_at >= normalized_now - timedelta(seconds=window))
    query = query.order_by(activation_codes.c.claimed_at.desc()).limit(1)

    with get_db_session() as session:
        row = session.execute(query).first()
        return row_to_activation_code(row) if row else None


def _link(
    record: IdentityRecord,
    code: ActivationCode,
    now: datetime,
    *,
    pairing_token: Optional[str] = None,
) -> bool:
    """Run the link transaction. Returns False when a concurrent caller won."""
    try:
        with get_db_session() as session:
            if pairing_token is not None:
                if not consume_token(session, pairing_token, record.identity_key, now):
                    raise _LinkRaceLost("pairing_token")

            result = session.execute(
                update(activation_codes)
                .where(activation_codes.c.code == code.code)
                .where(activation_codes.c.state == CodeState.CLAIMED.value)
                .where(activation_codes.c.linked_identity.is_(None))
                .values(
                    state=CodeState.LINKED.value,
                    linked_identity=record.identity_key,
                    linked_at=now,
                )
            )
            if result.rowcount != 1:
                raise _LinkRaceLost("code")

            result = session.execute(
                update(identities)
                .where(identities.c.identity_key == record.identity_key)
                .where(identities.c.tier == Tier.FREE.value)
                .values(
                    tier=Tier.PREMIUM.value,
                    tier_status=TierStatus.ACTIVE.value,
                    linked_code=code.code,
                    downgrade_at=None,
                    next_billing_at=code.next_billing_at,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise _LinkRaceLost("identity")
    except _LinkRaceLost as lost:
        logger.info(
            "[link] lost race",
            extra={"identity": record.identity_key, "code": code.code, "stage": lost.step},
        )
        return False
    return True


def _link_with_token(record: IdentityRecord, token: str, now: datetime) -> IdentityRecord:
    found = get_valid_token(token, now=now)
    if found is None:
        logger.warning("[link] pairing token rejected", extra={"identity": record.identity_key})
        return record

    code = get_code(found.code)
    if code is None or code.state != CodeState.CLAIMED or code.linked_identity is not None:
        logger.warning(
            "[link] pairing token points at an unlinkable code",
            extra={"identity": record.identity_key, "code": found.code},
        )
        return record

    if not _link(record, code, now, pairing_token=found.token):
        return record

    logger.info("[link] LINKED via pairing token", extra={"identity": record.identity_key, "code": code.code})
    return get_identity(record.identity_key) or record


def try_link(
    record: IdentityRecord,
    *,
    pairing_token: Optional[str] = None,
    now: Optional[Any] = None,
) -> IdentityRecord:
    """
    Opportunistically upgrade a free identity to premium.

    Returns the (possibly upgraded) record. Premium records come back as-is.
    """
    if record.tier != Tier.FREE:
        return record

    normalized_now = normalize_now(now)

    if pairing_token:
        return _link_with_token(record, pairing_token, normalized_now)

    if not settings.HEURISTIC_LINKING_ENABLED:
        return record

    candidate = find_link_candidate(normalized_now)
    if candidate is None:
        return record

    if not _link(record, candidate, normalized_now):
        return record

    logger.warning(
        "[link] LINKED via most-recent-claim heuristic",
        extra={
            "identity": record.identity_key,
            "code": candidate.code,
            "claimed_at": candidate.claimed_at.isoformat() if candidate.claimed_at else None,
        },
    )
    return get_identity(record.identity_key) or record
