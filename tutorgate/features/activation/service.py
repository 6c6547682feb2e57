"""
tutorgate/features/activation/service.py

Activation code registry.

Handles:
- Code issuance on purchase (collision-retrying)
- Claim: binds a code to the first device that presents it
- Revocation (refund, dispute, cancellation) with an explicit downgrade cascade

Every state transition is a conditional UPDATE whose rowcount is checked,
so concurrent callers coordinate through the store alone.
"""

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Any

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from tutorgate.core.clock import as_utc, normalize_now
from tutorgate.core.config import settings
from tutorgate.core.database import get_db_session, activation_codes
from tutorgate.core.errors import AppError, ValidationError
from tutorgate.features.activation.pairing import issue_pairing_token
from tutorgate.features.identity.service import downgrade_identities
from tutorgate.models.activation_code import ActivationCode, ClaimResult, CodeState
from tutorgate.models.verdict import ErrorKind

logger = logging.getLogger(__name__)

# No 0/O, 1/I/L: codes are read off a screen and typed by hand
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_GROUP_LENGTH = 4

_CODE_RE = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}$")

CLAIM_HINTS = {
    ErrorKind.INVALID_CODE: "Check the code in your purchase email and try again.",
    ErrorKind.CODE_REVOKED: "This code is no longer active. Contact support if you think this is a mistake.",
    ErrorKind.DEVICE_MISMATCH: "This code is already activated on another device.",
}


@dataclass(frozen=True)
class RevocationResult:
    """Result of revoking every code of a purchase."""
    purchase_id: str
    revoked_codes: List[str] = field(default_factory=list)
    downgraded_identities: List[str] = field(default_factory=list)


def generate_code() -> str:
    """Random XXXX-XXXX code from the unambiguous alphabet."""
    chars = [secrets.choice(CODE_ALPHABET) for _ in range(CODE_GROUP_LENGTH * 2)]
    return "".join(chars[:CODE_GROUP_LENGTH]) + "-" + "".join(chars[CODE_GROUP_LENGTH:])


def normalize_code(raw: Optional[str]) -> str:
    """Upper-case, strip whitespace and restore the dash (ABCD1234 -> ABCD-1234)."""
    if raw is None:
        return ""
    code = re.sub(r"\s+", "", str(raw)).upper()
    if len(code) == CODE_GROUP_LENGTH * 2 and "-" not in code:
        code = code[:CODE_GROUP_LENGTH] + "-" + code[CODE_GROUP_LENGTH:]
    return code


def row_to_activation_code(row) -> ActivationCode:
    return ActivationCode(
        code=row.code,
        purchase_id=row.purchase_id,
        owner_contact=row.owner_contact,
        state=CodeState(row.state),
        device_id=row.device_id,
        linked_identity=row.linked_identity,
        issued_at=as_utc(row.issued_at),
        claimed_at=as_utc(row.claimed_at),
        linked_at=as_utc(row.linked_at),
        revoked_at=as_utc(row.revoked_at),
        next_billing_at=as_utc(row.next_billing_at),
    )


def get_code(code: str) -> Optional[ActivationCode]:
    normalized = normalize_code(code)
    if not _CODE_RE.match(normalized):
        return None
    with get_db_session() as session:
        row = session.execute(select(activation_codes).where(activation_codes.c.code == normalized)).first()
        return row_to_activation_code(row) if row else None


def list_codes_for_purchase(purchase_id: str) -> List[ActivationCode]:
    with get_db_session() as session:
        rows = session.execute(
            select(activation_codes)
            .where(activation_codes.c.purchase_id == purchase_id)
            .order_by(activation_codes.c.issued_at)
        ).all()
        return [row_to_activation_code(row) for row in rows]


def issue_code(
    purchase_id: str,
    owner_contact: Optional[str] = None,
    now: Optional[Any] = None,
    next_billing_at: Optional[datetime] = None,
) -> str:
    """
    Create a code in state issued for a purchase.

    Retries on primary-key collision up to ACTIVATION_CODE_MAX_ATTEMPTS times.

    Raises:
        AppError(code_generation_failed): every attempt collided
    """
    normalized_now = normalize_now(now)
    attempts = max(1, settings.ACTIVATION_CODE_MAX_ATTEMPTS)

    for attempt in range(1, attempts + 1):
        code = generate_code()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(activation_codes).values(
                        code=code,
                        purchase_id=purchase_id,
                        owner_contact=owner_contact,
                        state=CodeState.ISSUED.value,
                        issued_at=normalized_now,
                        next_billing_at=as_utc(next_billing_at),
                    )
                )
        except IntegrityError:
            logger.warning("[activation] code collision", extra={"attempt": attempt, "purchase_id": purchase_id})
            continue

        logger.info("[activation] ISSUED", extra={"code": code, "purchase_id": purchase_id})
        return code

    logger.error("[activation] code generation failed", extra={"purchase_id": purchase_id, "attempts": attempts})
    raise AppError(
        "Could not generate a unique activation code",
        code="code_generation_failed",
        status_code=500,
    )


def _claim_failure(code: str, kind: ErrorKind, state: Optional[CodeState] = None) -> ClaimResult:
    logger.warning(f"[activation] {kind.value}", extra={"code": code, "error_code": kind.value})
    return ClaimResult(success=False, code=code, state=state, kind=kind, message=CLAIM_HINTS[kind])


def _claim_success(code: ActivationCode, now: datetime) -> ClaimResult:
    token = None
    if code.state == CodeState.CLAIMED and code.linked_identity is None:
        token = issue_pairing_token(code.code, now=now)
    return ClaimResult(
        success=True,
        code=code.code,
        state=code.state,
        pairing_token=token.token if token else None,
        pairing_expires_at=token.expires_at if token else None,
    )


def claim_code(code: str, device_id: str, now: Optional[Any] = None) -> ClaimResult:
    """
    Bind a code to a device.

    Checked in order: unknown -> INVALID_CODE, revoked -> CODE_REVOKED,
    bound to another device -> DEVICE_MISMATCH. The same device claiming
    again succeeds without changing the code.
    """
    normalized_now = normalize_now(now)
    normalized = normalize_code(code)

    # A lost binding race leaves the row bound to someone, so the re-read decides
    for _ in range(3):
        current = get_code(normalized)
        if current is None:
            return _claim_failure(normalized, ErrorKind.INVALID_CODE)
        if current.state == CodeState.REVOKED:
            return _claim_failure(normalized, ErrorKind.CODE_REVOKED, CodeState.REVOKED)
        if current.device_id is not None:
            if current.device_id != device_id:
                return _claim_failure(normalized, ErrorKind.DEVICE_MISMATCH, current.state)
            logger.info("[activation] re-claim same device", extra={"code": normalized})
            return _claim_success(current, normalized_now)

        with get_db_session() as session:
            result = session.execute(
                update(activation_codes)
                .where(activation_codes.c.code == normalized)
                .where(activation_codes.c.state == CodeState.ISSUED.value)
                .where(activation_codes.c.device_id.is_(None))
                .values(
                    state=CodeState.CLAIMED.value,
                    device_id=device_id,
                    claimed_at=normalized_now,
                )
            )
            bound = result.rowcount == 1

        if bound:
            logger.info("[activation] CLAIMED", extra={"code": normalized})
            claimed = current.model_copy(
                update={"state": CodeState.CLAIMED, "device_id": device_id, "claimed_at": normalized_now}
            )
            return _claim_success(claimed, normalized_now)

        logger.info("[activation] claim lost race, re-reading", extra={"code": normalized})

    raise AppError("Activation code changed concurrently; retry", code="claim_conflict", status_code=409)


def revoke_codes(purchase_id: str, now: Optional[Any] = None) -> List[ActivationCode]:
    """
    Move every non-revoked code of a purchase to revoked.

    Returns the codes this call revoked, as stored afterwards (linked_identity
    included). Identities are not touched here.
    """
    normalized_now = normalize_now(now)
    revoked: List[str] = []

    with get_db_session() as session:
        candidates = session.execute(
            select(activation_codes.c.code)
            .where(activation_codes.c.purchase_id == purchase_id)
            .where(activation_codes.c.state != CodeState.REVOKED.value)
        ).scalars().all()

        for code in candidates:
            result = session.execute(
                update(activation_codes)
                .where(activation_codes.c.code == code)
                .where(activation_codes.c.state != CodeState.REVOKED.value)
                .values(state=CodeState.REVOKED.value, revoked_at=normalized_now)
            )
            if result.rowcount == 1:
                revoked.append(code)

        if not revoked:
            return []

        # Re-read after the update so a link that landed in between is visible
        rows = session.execute(
            select(activation_codes).where(activation_codes.c.code.in_(revoked))
        ).all()
        codes = [row_to_activation_code(row) for row in rows]

    for code in codes:
        logger.warning(
            "[activation] REVOKED",
            extra={"code": code.code, "purchase_id": purchase_id, "identity": code.linked_identity},
        )
    return codes


def set_next_billing(purchase_id: str, next_billing_at: Optional[datetime]) -> int:
    with get_db_session() as session:
        result = session.execute(
            update(activation_codes)
            .where(activation_codes.c.purchase_id == purchase_id)
            .values(next_billing_at=as_utc(next_billing_at))
        )
        return result.rowcount


def linked_identities_for_purchase(purchase_id: str) -> List[str]:
    return [
        code.linked_identity
        for code in list_codes_for_purchase(purchase_id)
        if code.linked_identity and code.state == CodeState.LINKED
    ]


# Boundary operations


def issue_activation_code(
    purchase_id: str,
    owner_contact: Optional[str] = None,
    *,
    now: Optional[Any] = None,
    next_billing_at: Optional[datetime] = None,
) -> str:
    """Issue a code for a completed purchase."""
    if not purchase_id or not str(purchase_id).strip():
        raise ValidationError("purchase_id is required")
    return issue_code(str(purchase_id).strip(), owner_contact, now=now, next_billing_at=next_billing_at)


def claim_activation_code(code: str, device_id: str, *, now: Optional[Any] = None) -> ClaimResult:
    """Claim a code from the activation page. Rejections come back as a ClaimResult."""
    if not device_id or not str(device_id).strip():
        raise ValidationError("device_id is required")
    return claim_code(code, str(device_id).strip(), now=now)


def revoke_activation_code(purchase_id: str, *, now: Optional[Any] = None) -> RevocationResult:
    """Revoke every code of a purchase and downgrade the identities linked to them."""
    revoked = revoke_codes(purchase_id, now=now)
    linked = [(code.linked_identity, code.code) for code in revoked if code.linked_identity]
    downgraded = downgrade_identities(linked, reason="code_revoked", now=now)
    return RevocationResult(
        purchase_id=purchase_id,
        revoked_codes=[code.code for code in revoked],
        downgraded_identities=downgraded,
    )
