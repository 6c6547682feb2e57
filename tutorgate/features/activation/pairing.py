"""
tutorgate/features/activation/pairing.py

Pairing tokens: a short code shown to the purchaser right after claiming an
activation code, which the tool caller can present to link explicitly
instead of relying on the most-recent-claim heuristic.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional, Any

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutorgate.core.clock import as_utc, normalize_now
from tutorgate.core.config import settings
from tutorgate.core.database import get_db_session, pairing_tokens
from tutorgate.core.errors import AppError
from tutorgate.models.activation_code import PairingToken

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
TOKEN_LENGTH = 6


def generate_pairing_token() -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def normalize_token(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    token = str(raw).strip().upper().replace("-", "").replace(" ", "")
    return token or None


def _row_to_token(row) -> PairingToken:
    return PairingToken(
        token=row.token,
        code=row.code,
        issued_at=as_utc(row.issued_at),
        expires_at=as_utc(row.expires_at),
        consumed_at=as_utc(row.consumed_at),
        consumed_by=row.consumed_by,
    )


def issue_pairing_token(code: str, now: Optional[Any] = None) -> PairingToken:
    """Issue a fresh token for a claimed code, valid for PAIRING_TOKEN_TTL_SECONDS."""
    normalized_now = normalize_now(now)
    expires_at = normalized_now + timedelta(seconds=settings.PAIRING_TOKEN_TTL_SECONDS)
    attempts = max(1, settings.ACTIVATION_CODE_MAX_ATTEMPTS)

    for attempt in range(1, attempts + 1):
        token = generate_pairing_token()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(pairing_tokens).values(
                        token=token,
                        code=code,
                        issued_at=normalized_now,
                        expires_at=expires_at,
                    )
                )
        except IntegrityError:
            logger.warning("[pairing] token collision", extra={"attempt": attempt})
            continue
        logger.info("[pairing] token issued", extra={"code": code, "expires_at": expires_at.isoformat()})
        return PairingToken(token=token, code=code, issued_at=normalized_now, expires_at=expires_at)

    raise AppError("Could not issue a pairing token", code="token_generation_failed")


def get_pairing_token(token: str) -> Optional[PairingToken]:
    normalized = normalize_token(token)
    if not normalized:
        return None
    with get_db_session() as session:
        row = session.execute(select(pairing_tokens).where(pairing_tokens.c.token == normalized)).first()
        return _row_to_token(row) if row else None


def get_valid_token(token: str, now: Optional[Any] = None) -> Optional[PairingToken]:
    """Return the token if it exists, is unexpired and unconsumed."""
    normalized_now = normalize_now(now)
    found = get_pairing_token(token)
    if found is None or found.consumed_at is not None:
        return None
    if found.expires_at <= normalized_now:
        return None
    return found


def consume_token(session: Session, token: str, identity_key: str, now: Any) -> bool:
    """Conditionally mark a token consumed inside the caller's transaction."""
    normalized_now = normalize_now(now)
    result = session.execute(
        update(pairing_tokens)
        .where(pairing_tokens.c.token == normalize_token(token))
        .where(pairing_tokens.c.consumed_at.is_(None))
        .where(pairing_tokens.c.expires_at > normalized_now)
        .values(consumed_at=normalized_now, consumed_by=identity_key)
    )
    return result.rowcount == 1
