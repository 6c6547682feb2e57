"""Tests for linking a caller identity to a claimed activation code."""

from datetime import timedelta

from tutorgate.features.activation.pairing import get_pairing_token
from tutorgate.features.activation.service import (
    claim_activation_code,
    get_code,
    issue_activation_code,
    revoke_activation_code,
)
from tutorgate.features.identity.service import get_identity, get_or_create_identity
from tutorgate.features.linking import service as linking_service
from tutorgate.features.linking.service import find_link_candidate, try_link
from tutorgate.models.activation_code import CodeState
from tutorgate.models.identity import Tier


def _claimed_code(purchase_id, device_id, now, next_billing_at=None):
    code = issue_activation_code(purchase_id, now=now, next_billing_at=next_billing_at)
    result = claim_activation_code(code, device_id, now=now)
    return code, result.pairing_token


def test_heuristic_links_most_recent_claim(now, settings):
    older, _ = _claimed_code("sub_1", "device-A", now - timedelta(minutes=10))
    newer, _ = _claimed_code("sub_2", "device-B", now - timedelta(minutes=1))
    record = get_or_create_identity("subnet-10.0.0", now=now)

    linked = try_link(record, now=now)

    assert linked.tier == Tier.PREMIUM
    assert linked.linked_code == newer
    code = get_code(newer)
    assert code.state == CodeState.LINKED
    assert code.linked_identity == "subnet-10.0.0"
    assert code.linked_at == now
    assert get_code(older).state == CodeState.CLAIMED


def test_link_copies_next_billing_date(now, settings):
    billing = now + timedelta(days=30)
    _claimed_code("sub_1", "device-A", now, next_billing_at=billing)
    record = get_or_create_identity("user-1", now=now)

    linked = try_link(record, now=now)

    assert linked.next_billing_at == billing


def test_no_candidate_leaves_record_unchanged(now, settings):
    issue_activation_code("sub_1", now=now)  # issued, never claimed
    record = get_or_create_identity("user-1", now=now)

    assert try_link(record, now=now) == record


def test_linked_code_is_not_reused(now, settings):
    _claimed_code("sub_1", "device-A", now)
    first = try_link(get_or_create_identity("user-1", now=now), now=now)
    second = try_link(get_or_create_identity("user-2", now=now), now=now)

    assert first.tier == Tier.PREMIUM
    assert second.tier == Tier.FREE


def test_premium_record_returned_as_is(now, settings):
    _claimed_code("sub_1", "device-A", now)
    premium = try_link(get_or_create_identity("user-1", now=now), now=now)
    _claimed_code("sub_2", "device-B", now)

    assert try_link(premium, now=now) is premium
    assert find_link_candidate(now) is not None


def test_heuristic_disabled(now, settings, monkeypatch):
    monkeypatch.setattr(settings, "HEURISTIC_LINKING_ENABLED", False)
    _claimed_code("sub_1", "device-A", now)

    record = try_link(get_or_create_identity("user-1", now=now), now=now)

    assert record.tier == Tier.FREE


def test_link_window_excludes_stale_claims(now, settings, monkeypatch):
    monkeypatch.setattr(settings, "LINK_WINDOW_SECONDS", 300)
    _claimed_code("sub_1", "device-A", now - timedelta(minutes=10))

    assert find_link_candidate(now) is None
    assert try_link(get_or_create_identity("user-1", now=now), now=now).tier == Tier.FREE

    fresh, _ = _claimed_code("sub_2", "device-B", now - timedelta(minutes=1))
    assert find_link_candidate(now).code == fresh


def test_pairing_token_links_its_own_code(now, settings):
    """An explicit token wins over the more recent heuristic candidate."""
    paired, token = _claimed_code("sub_1", "device-A", now - timedelta(minutes=5))
    _claimed_code("sub_2", "device-B", now - timedelta(minutes=1))

    linked = try_link(get_or_create_identity("user-1", now=now), pairing_token=token.lower(), now=now)

    assert linked.linked_code == paired
    consumed = get_pairing_token(token)
    assert consumed.consumed_by == "user-1"
    assert consumed.consumed_at == now


def test_invalid_pairing_token_does_not_fall_back(now, settings):
    _claimed_code("sub_1", "device-A", now)

    record = try_link(get_or_create_identity("user-1", now=now), pairing_token="BOGUS1", now=now)

    assert record.tier == Tier.FREE
    assert find_link_candidate(now) is not None


def test_expired_pairing_token_rejected(now, settings):
    _, token = _claimed_code("sub_1", "device-A", now)
    later = now + timedelta(seconds=settings.PAIRING_TOKEN_TTL_SECONDS)

    record = try_link(get_or_create_identity("user-1", now=later), pairing_token=token, now=later)

    assert record.tier == Tier.FREE


def test_pairing_token_single_use(now, settings):
    _, token = _claimed_code("sub_1", "device-A", now)
    try_link(get_or_create_identity("user-1", now=now), pairing_token=token, now=now)

    second = try_link(get_or_create_identity("user-2", now=now), pairing_token=token, now=now)

    assert second.tier == Tier.FREE


def test_revoked_claimed_code_is_not_linked_by_heuristic(now, settings):
    code, _ = _claimed_code("sub_1", "device-A", now)
    revoke_activation_code("sub_1", now=now)

    record = try_link(get_or_create_identity("user-1", now=now), now=now)

    assert record.tier == Tier.FREE
    assert find_link_candidate(now) is None
    assert get_code(code).state == CodeState.REVOKED
    assert get_code(code).linked_identity is None


def test_revoked_claimed_code_is_not_linked_by_pairing_token(now, settings):
    code, token = _claimed_code("sub_1", "device-A", now)
    revoke_activation_code("sub_1", now=now)

    record = try_link(get_or_create_identity("user-1", now=now), pairing_token=token, now=now)

    assert record.tier == Tier.FREE
    assert record.linked_code is None
    assert get_code(code).state == CodeState.REVOKED
    assert get_identity("user-1").tier == Tier.FREE


def test_lost_race_returns_record_unchanged(now, settings, monkeypatch):
    """A stale candidate already linked by a concurrent caller is not double-linked."""
    code, _ = _claimed_code("sub_1", "device-A", now)
    stale = find_link_candidate(now)
    winner = try_link(get_or_create_identity("winner", now=now), now=now)
    assert winner.linked_code == code

    monkeypatch.setattr(linking_service, "find_link_candidate", lambda now=None: stale)
    loser = get_or_create_identity("loser", now=now)

    result = try_link(loser, now=now)

    assert result == loser
    assert get_identity("loser").tier == Tier.FREE
    assert get_code(code).linked_identity == "winner"


def test_lost_race_rolls_back_token_consumption(now, settings, monkeypatch):
    """When the code step loses, the pairing token stays unconsumed."""
    code, token = _claimed_code("sub_1", "device-A", now)
    stale = get_code(code)
    try_link(get_or_create_identity("winner", now=now), now=now)

    monkeypatch.setattr(linking_service, "get_code", lambda value: stale)

    result = try_link(get_or_create_identity("loser", now=now), pairing_token=token, now=now)

    assert result.tier == Tier.FREE
    assert get_pairing_token(token).consumed_at is None
