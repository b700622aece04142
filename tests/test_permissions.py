"""Capability evaluation and mutation."""

import pytest

from warden.service.errors import NotFoundError, ValidationError
from warden.service.permissions import (
    Decision,
    DenyReason,
    capability_matches,
    validate_capability,
)
from warden.storage.models import IdentityStatus


def _claims_for(gateway, identity, session_id="sess-1"):
    token = gateway.codec.issue_access_token(identity, session_id)
    return gateway.codec.parse_access_token(token)


@pytest.mark.parametrize(
    "held,required,expected",
    [
        (("reports:read",), "reports:read", True),
        (("reports:read",), "reports:write", False),
        (("reports:*",), "reports:delete", True),
        (("reports:*",), "invoices:read", False),
        ((), "reports:read", False),
    ],
)
def test_capability_matching(held, required, expected):
    assert capability_matches(held, required) is expected


@pytest.mark.parametrize("bad", ["", "reports", "Reports:read", ":read", "reports:", "a:b:c"])
def test_invalid_capability_shapes(bad):
    with pytest.raises(ValidationError):
        validate_capability(bad)


async def test_allows_held_capability(gateway, alice):
    decision = await gateway.permissions.authorize(_claims_for(gateway, alice), "reports:read")
    assert decision == Decision.allow()


async def test_denies_missing_capability(gateway, alice):
    decision = await gateway.permissions.authorize(_claims_for(gateway, alice), "reports:write")
    assert decision == Decision.deny(DenyReason.MISSING_CAPABILITY)


async def test_denies_malformed_capability(gateway, alice):
    decision = await gateway.permissions.authorize(_claims_for(gateway, alice), "not a cap")
    assert decision.reason == DenyReason.INVALID_CAPABILITY


async def test_grant_makes_existing_tokens_stale(gateway, alice):
    claims = _claims_for(gateway, alice)
    assert (await gateway.permissions.authorize(claims, "reports:read")).allowed

    updated = await gateway.permissions.grant("acme", alice.id, "reports:write", actor_id="root")
    assert updated.version == alice.version + 1
    assert "reports:write" in updated.capabilities

    # The old token still claims reports:read but its version is behind
    decision = await gateway.permissions.authorize(claims, "reports:read")
    assert decision.reason == DenyReason.STALE_PERMISSIONS

    fresh = _claims_for(gateway, updated)
    assert (await gateway.permissions.authorize(fresh, "reports:write")).allowed


async def test_revoke_takes_effect_on_next_check(gateway, alice):
    claims = _claims_for(gateway, alice)
    await gateway.permissions.revoke("acme", alice.id, "reports:read")

    decision = await gateway.permissions.authorize(claims, "reports:read")
    assert not decision.allowed
    assert decision.reason == DenyReason.STALE_PERMISSIONS


async def test_noop_mutations_keep_version(gateway, alice):
    same = await gateway.permissions.grant("acme", alice.id, "reports:read")
    assert same.version == alice.version
    same = await gateway.permissions.revoke("acme", alice.id, "reports:write")
    assert same.version == alice.version
    same = await gateway.permissions.set_status("acme", alice.id, IdentityStatus.ACTIVE)
    assert same.version == alice.version


async def test_inactive_identity_denied(gateway, alice):
    claims = _claims_for(gateway, alice)
    await gateway.permissions.set_status("acme", alice.id, IdentityStatus.DISABLED)
    decision = await gateway.permissions.authorize(claims, "reports:read")
    assert decision.reason == DenyReason.IDENTITY_INACTIVE


async def test_unknown_identity_denied(gateway, alice):
    claims = _claims_for(gateway, alice)
    gateway.store.identities.pop(alice.id)
    gateway.cache.local.clear()
    gateway.cache.distributed.data.clear()
    decision = await gateway.permissions.authorize(claims, "reports:read")
    assert decision.reason == DenyReason.UNKNOWN_IDENTITY


async def test_mutations_require_existing_identity(gateway):
    with pytest.raises(NotFoundError):
        await gateway.permissions.grant("acme", "missing", "reports:read")


async def test_mutations_are_audited(gateway, alice):
    await gateway.permissions.grant("acme", alice.id, "reports:write", actor_id="root")
    await gateway.permissions.revoke("acme", alice.id, "reports:write", actor_id="root")
    await gateway.permissions.set_status(
        "acme", alice.id, IdentityStatus.LOCKED, actor_id="root"
    )
    await gateway.audit.flush()

    events = gateway.store.list_audit_events("acme", actor_id="root")
    assert [e.action for e in events] == [
        "capability.granted",
        "capability.revoked",
        "identity.status_changed",
    ]
    assert events[2].metadata["from"] == "active"
    assert events[2].metadata["to"] == "locked"
