"""
tutorgate/features/entitlements/service.py

Entitlement gate.

Stages per call: RESOLVE -> LINK -> TIER_CHECK -> QUOTA_CHECK -> verdict.

Handles:
- Identity resolution and lazy downgrade re-check
- Opportunistic linking
- Tier allow-lists and the free-tier rolling quota
- Store failure policy (fail open or closed)

The gate never records usage; the dispatch layer does that after the action
has actually been performed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from tutorgate.core.clock import iso, normalize_now
from tutorgate.core.config import settings
from tutorgate.features.activation.service import get_code
from tutorgate.features.identity.resolver import resolve_identity
from tutorgate.features.identity.service import (
    downgrade_identity,
    get_identity,
    get_or_create_identity,
)
from tutorgate.features.linking.service import try_link
from tutorgate.features.usage.service import cooldown_expiry, count_recent
from tutorgate.models.activation_code import CodeState
from tutorgate.models.identity import IdentityRecord, Tier, TierStatus
from tutorgate.models.tools import CATEGORY_ADVANCED, CATEGORY_BASIC
from tutorgate.models.verdict import ErrorKind, GateStage, Verdict


logger = logging.getLogger(__name__)

# Explicit allow-list of action categories per tier
TIER_ACTIONS: Dict[Tier, FrozenSet[str]] = {
    Tier.FREE: frozenset({CATEGORY_BASIC}),
    Tier.PREMIUM: frozenset({CATEGORY_BASIC, CATEGORY_ADVANCED}),
}

PAIRING_HEADER = "x-pairing-code"

STORE_UNAVAILABLE = "store_unavailable"


def _store_policy() -> str:
    policy = str(settings.STORE_FAILURE_POLICY or "closed").lower()
    return policy if policy in ("open", "closed") else "closed"


def _pairing_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if str(key).lower() == PAIRING_HEADER and value and str(value).strip():
            return str(value).strip()
    return None


def _store_failure(identity: str, tier: Tier, action_category: str, stage: GateStage, error: Exception) -> Verdict:
    policy = _store_policy()
    logger.error(
        "[gate] store unavailable",
        extra={"identity": identity, "stage": stage.value, "policy": policy, "error": str(error)},
    )
    # Fail open only for actions the last known tier already grants
    if policy == "open" and action_category in TIER_ACTIONS.get(tier, frozenset()):
        return Verdict(
            allow=True,
            identity=identity,
            tier=tier.value,
            stage=stage,
            reason=STORE_UNAVAILABLE,
        )
    return Verdict(
        allow=False,
        identity=identity,
        tier=tier.value,
        stage=stage,
        kind=ErrorKind.INTERNAL,
        reason=STORE_UNAVAILABLE,
        hint="Service is temporarily unavailable. Please try again shortly.",
    )


def _lazy_downgrade_reason(record: IdentityRecord, now: datetime) -> Optional[str]:
    if record.tier != Tier.PREMIUM:
        return None
    if record.downgrade_at is not None and record.downgrade_at <= now:
        return "scheduled_downgrade"
    if record.linked_code:
        code = get_code(record.linked_code)
        if code is not None and code.state == CodeState.REVOKED:
            return "code_revoked"
    return None


def refresh_entitlement(record: IdentityRecord, now: Optional[Any] = None) -> IdentityRecord:
    """Apply a due scheduled downgrade or a revocation the cascade missed."""
    normalized_now = normalize_now(now)
    reason = _lazy_downgrade_reason(record, normalized_now)
    if reason is None:
        return record
    downgrade_identity(record.identity_key, reason=reason, now=normalized_now, linked_code=record.linked_code)
    return get_identity(record.identity_key) or record


def _upgrade_hint(action_category: str) -> str:
    return f"'{action_category}' actions need premium. Upgrade at {settings.UPGRADE_URL}"


def resolve_and_authorize(
    headers: Optional[Mapping[str, str]],
    action_category: str,
    *,
    peer_address: Optional[str] = None,
    pairing_token: Optional[str] = None,
    now: Optional[Any] = None,
) -> Verdict:
    """
    Decide whether the caller may perform an action of action_category.

    Args:
        headers: Inbound transport headers
        action_category: basic / advanced
        peer_address: Socket peer address (fallback for identity)
        pairing_token: Explicit join key; also read from the x-pairing-code header
        now: Fixed timestamp for deterministic decisions

    Returns:
        Verdict; user-facing denials are verdicts, never exceptions
    """
    normalized_now = normalize_now(now)
    identity = resolve_identity(headers, peer_address)
    token = pairing_token or _pairing_from_headers(headers)

    # RESOLVE
    try:
        record = get_or_create_identity(identity, now=normalized_now)
        record = refresh_entitlement(record, normalized_now)
    except SQLAlchemyError as e:
        return _store_failure(identity, Tier.FREE, action_category, GateStage.RESOLVE, e)

    # LINK (opportunistic; a store error here only skips linking)
    linked = False
    if record.tier == Tier.FREE:
        try:
            updated = try_link(record, pairing_token=token, now=normalized_now)
            linked = updated.tier == Tier.PREMIUM
            record = updated
        except SQLAlchemyError as e:
            logger.warning(
                "[gate] link skipped",
                extra={"identity": identity, "stage": GateStage.LINK.value, "error": str(e)},
            )

    tier = record.tier.value

    # TIER_CHECK
    if action_category not in TIER_ACTIONS.get(record.tier, frozenset()):
        logger.warning(
            "[gate] FORBIDDEN",
            extra={"identity": identity, "tier": tier, "action_category": action_category},
        )
        return Verdict(
            allow=False,
            identity=identity,
            tier=tier,
            stage=GateStage.TIER_CHECK,
            kind=ErrorKind.FORBIDDEN,
            reason="tier_lacks_action",
            hint=_upgrade_hint(action_category),
            linked=linked,
        )

    if record.tier == Tier.PREMIUM:
        logger.info("[gate] ALLOW", extra={"identity": identity, "tier": tier, "linked": linked})
        return Verdict(
            allow=True,
            identity=identity,
            tier=tier,
            stage=GateStage.TIER_CHECK,
            remaining=None,
            linked=linked,
        )

    # QUOTA_CHECK (free tier only)
    limit = settings.FREE_TIER_LIMIT
    window = settings.QUOTA_WINDOW_SECONDS
    try:
        used = count_recent(identity, window, now=normalized_now)
        expiry = cooldown_expiry(identity, window, now=normalized_now) if used >= limit else None
    except SQLAlchemyError as e:
        return _store_failure(identity, record.tier, action_category, GateStage.QUOTA_CHECK, e)

    if used >= limit:
        logger.warning(
            "[gate] LIMIT_EXCEEDED",
            extra={
                "identity": identity,
                "current_usage": used,
                "limit": limit,
                "cooldown_expiry": iso(expiry),
            },
        )
        return Verdict(
            allow=False,
            identity=identity,
            tier=tier,
            stage=GateStage.QUOTA_CHECK,
            kind=ErrorKind.LIMIT_EXCEEDED,
            reason="free_quota_exhausted",
            hint=f"Free limit reached. Try again after the cooldown or upgrade at {settings.UPGRADE_URL}",
            remaining=0,
            cooldown_expiry=expiry,
            linked=linked,
        )

    remaining = limit - used - 1
    logger.info(
        "[gate] ALLOW",
        extra={"identity": identity, "tier": tier, "current_usage": used, "remaining": remaining},
    )
    return Verdict(
        allow=True,
        identity=identity,
        tier=tier,
        stage=GateStage.QUOTA_CHECK,
        remaining=remaining,
        linked=linked,
    )


def describe_entitlement(
    headers: Optional[Mapping[str, str]],
    *,
    peer_address: Optional[str] = None,
    now: Optional[Any] = None,
) -> Dict[str, Any]:
    """Read-only entitlement summary for the caller. Never creates or links anything."""
    normalized_now = normalize_now(now)
    identity = resolve_identity(headers, peer_address)
    record = get_identity(identity) or IdentityRecord(identity_key=identity)

    tier = record.tier
    status = record.tier_status
    if _lazy_downgrade_reason(record, normalized_now):
        tier, status = Tier.FREE, TierStatus.ACTIVE

    summary: Dict[str, Any] = {
        "identity": identity,
        "tier": tier.value,
        "status": status.value,
        "allowed_categories": sorted(TIER_ACTIONS[tier]),
        "downgrade_at": iso(record.downgrade_at) if tier == Tier.PREMIUM else None,
        "next_billing_at": iso(record.next_billing_at) if tier == Tier.PREMIUM else None,
        "early_user": record.early_user,
    }

    if tier == Tier.PREMIUM:
        summary.update({"used": None, "limit": None, "remaining": None, "cooldown_expiry": None})
        return summary

    limit = settings.FREE_TIER_LIMIT
    window = settings.QUOTA_WINDOW_SECONDS
    used = count_recent(identity, window, now=normalized_now)
    summary.update(
        {
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used),
            "cooldown_expiry": iso(cooldown_expiry(identity, window, now=normalized_now)) if used >= limit else None,
            "upgrade_url": settings.UPGRADE_URL,
        }
    )
    return summary
