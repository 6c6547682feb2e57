"""Tests for activation code issuance, claim, and revocation."""

from datetime import timedelta

import pytest

from tutorgate.core.errors import AppError, ValidationError
from tutorgate.features.activation import service as activation_service
from tutorgate.features.activation.pairing import get_pairing_token, get_valid_token
from tutorgate.features.activation.service import (
    CODE_ALPHABET,
    claim_activation_code,
    generate_code,
    get_code,
    issue_activation_code,
    list_codes_for_purchase,
    normalize_code,
    revoke_activation_code,
)
from tutorgate.features.identity.service import get_identity, get_or_create_identity
from tutorgate.features.linking.service import try_link
from tutorgate.models.activation_code import CodeState
from tutorgate.models.identity import Tier
from tutorgate.models.verdict import ErrorKind


def test_generated_code_shape():
    code = generate_code()
    assert len(code) == 9
    assert code[4] == "-"
    assert all(ch in CODE_ALPHABET for ch in code.replace("-", ""))


def test_normalize_code_restores_dash_and_case():
    assert normalize_code(" abcd efgh ") == "ABCD-EFGH"
    assert normalize_code("abcd-efgh") == "ABCD-EFGH"
    assert normalize_code(None) == ""


def test_issue_creates_issued_code(now):
    code = issue_activation_code("sub_123", "buyer@example.com", now=now)

    stored = get_code(code)
    assert stored.state == CodeState.ISSUED
    assert stored.purchase_id == "sub_123"
    assert stored.owner_contact == "buyer@example.com"
    assert stored.device_id is None
    assert stored.issued_at == now


def test_issue_requires_purchase_id(now):
    with pytest.raises(ValidationError):
        issue_activation_code("  ", now=now)


def test_issue_retries_on_collision(now, monkeypatch, settings):
    taken = issue_activation_code("sub_a", now=now)
    fresh = "ZZZZ-ZZZZ"
    candidates = iter([taken, taken, fresh])
    monkeypatch.setattr(activation_service, "generate_code", lambda: next(candidates))

    assert issue_activation_code("sub_b", now=now) == fresh


def test_issue_gives_up_after_max_attempts(now, monkeypatch, settings):
    taken = issue_activation_code("sub_a", now=now)
    monkeypatch.setattr(settings, "ACTIVATION_CODE_MAX_ATTEMPTS", 3)
    monkeypatch.setattr(activation_service, "generate_code", lambda: taken)

    with pytest.raises(AppError) as exc:
        issue_activation_code("sub_b", now=now)
    assert exc.value.code == "code_generation_failed"


def test_claim_binds_device_and_issues_pairing_token(now, settings):
    code = issue_activation_code("sub_1", now=now)

    result = claim_activation_code(code.lower(), "device-A", now=now)

    assert result.success
    assert result.state == CodeState.CLAIMED
    stored = get_code(code)
    assert stored.device_id == "device-A"
    assert stored.claimed_at == now

    assert result.pairing_token
    assert result.pairing_expires_at == now + timedelta(seconds=settings.PAIRING_TOKEN_TTL_SECONDS)
    token = get_pairing_token(result.pairing_token)
    assert token.code == code


def test_claim_unknown_code_is_invalid(now):
    result = claim_activation_code("NOPE-NOPE", "device-A", now=now)
    assert not result.success
    assert result.kind == ErrorKind.INVALID_CODE
    assert result.message


def test_claim_garbage_code_is_invalid(now):
    result = claim_activation_code("not a code at all", "device-A", now=now)
    assert result.kind == ErrorKind.INVALID_CODE


def test_claim_requires_device_id(now):
    code = issue_activation_code("sub_1", now=now)
    with pytest.raises(ValidationError):
        claim_activation_code(code, "", now=now)


def test_claim_from_other_device_is_mismatch(now):
    code = issue_activation_code("sub_1", now=now)
    claim_activation_code(code, "device-A", now=now)

    result = claim_activation_code(code, "device-B", now=now)

    assert not result.success
    assert result.kind == ErrorKind.DEVICE_MISMATCH
    assert get_code(code).device_id == "device-A"


def test_same_device_reclaim_succeeds_without_mutation(now):
    code = issue_activation_code("sub_1", now=now)
    claim_activation_code(code, "device-A", now=now)
    later = now + timedelta(minutes=5)

    result = claim_activation_code(code, "device-A", now=later)

    assert result.success
    stored = get_code(code)
    assert stored.claimed_at == now
    assert stored.state == CodeState.CLAIMED
    # A fresh pairing token so the buyer can retry linking
    assert get_valid_token(result.pairing_token, now=later) is not None


def test_reclaim_of_linked_code_has_no_pairing_token(now, settings):
    code = issue_activation_code("sub_1", now=now)
    claim_activation_code(code, "device-A", now=now)
    record = get_or_create_identity("subnet-10.0.0", now=now)
    try_link(record, pairing_token=None, now=now)

    result = claim_activation_code(code, "device-A", now=now)

    assert result.success
    assert result.state == CodeState.LINKED
    assert result.pairing_token is None


def test_claim_revoked_code(now):
    code = issue_activation_code("sub_1", now=now)
    revoke_activation_code("sub_1", now=now)

    result = claim_activation_code(code, "device-A", now=now)
    assert result.kind == ErrorKind.CODE_REVOKED


def test_revoked_takes_precedence_over_device_mismatch(now):
    code = issue_activation_code("sub_1", now=now)
    claim_activation_code(code, "device-A", now=now)
    revoke_activation_code("sub_1", now=now)

    result = claim_activation_code(code, "device-B", now=now)
    assert result.kind == ErrorKind.CODE_REVOKED


def test_claim_race_loser_rereads_and_gets_mismatch(now, monkeypatch):
    """Two devices read the code as unclaimed; only one binding may land."""
    code = issue_activation_code("sub_1", now=now)
    stale = get_code(code)
    claim_activation_code(code, "device-A", now=now)

    real_get_code = activation_service.get_code
    reads = {"count": 0}

    def stale_once(value):
        reads["count"] += 1
        if reads["count"] == 1:
            return stale
        return real_get_code(value)

    monkeypatch.setattr(activation_service, "get_code", stale_once)

    result = activation_service.claim_code(code, "device-B", now=now)

    assert result.kind == ErrorKind.DEVICE_MISMATCH
    assert reads["count"] == 2
    assert real_get_code(code).device_id == "device-A"


def test_revoke_downgrades_linked_identity(now, settings):
    code = issue_activation_code("sub_1", now=now)
    claim_activation_code(code, "device-A", now=now)
    record = get_or_create_identity("subnet-10.0.0", now=now)
    linked = try_link(record, pairing_token=None, now=now)
    assert linked.tier == Tier.PREMIUM

    result = revoke_activation_code("sub_1", now=now)

    assert result.revoked_codes == [code]
    assert result.downgraded_identities == ["subnet-10.0.0"]
    assert get_code(code).state == CodeState.REVOKED
    downgraded = get_identity("subnet-10.0.0")
    assert downgraded.tier == Tier.FREE
    assert downgraded.linked_code == code


def test_revoke_is_idempotent(now):
    issue_activation_code("sub_1", now=now)
    first = revoke_activation_code("sub_1", now=now)
    second = revoke_activation_code("sub_1", now=now)
    assert len(first.revoked_codes) == 1
    assert second.revoked_codes == []


def test_revoke_does_not_downgrade_identity_relinked_elsewhere(now, settings):
    """An identity whose premium now comes from another code keeps it."""
    from sqlalchemy import update

    from tutorgate.core.database import get_db_session, identities

    old_code = issue_activation_code("sub_old", now=now)
    claim_activation_code(old_code, "device-A", now=now)
    record = get_or_create_identity("user-x", now=now)
    try_link(record, pairing_token=None, now=now)

    # Identity later moved onto a different purchase
    with get_db_session() as session:
        session.execute(
            update(identities).where(identities.c.identity_key == "user-x").values(linked_code="NEWC-ODE2")
        )

    result = revoke_activation_code("sub_old", now=now)

    assert result.downgraded_identities == []
    assert get_identity("user-x").tier == Tier.PREMIUM


def test_revoke_unknown_purchase_is_noop(now):
    result = revoke_activation_code("never-bought", now=now)
    assert result.revoked_codes == []
    assert result.downgraded_identities == []


def test_list_codes_for_purchase(now):
    first = issue_activation_code("sub_1", now=now)
    second = issue_activation_code("sub_1", now=now + timedelta(seconds=1))
    issue_activation_code("sub_2", now=now)

    assert [c.code for c in list_codes_for_purchase("sub_1")] == [first, second]
