"""Tests for the forum client and group reconciliation."""
import asyncio

import httpx
import pytest

from sso_bridge.discourse import (
    ChangeAction,
    ChangeRecord,
    DiscourseService,
    GroupCreationError,
    RequiredGroup,
    is_managed_group,
    tier_full_name,
    tier_group_name,
)
from sso_bridge.gate import ConcurrencyGate
from sso_bridge.upstream import create_client

UUID = "7d0b2f3e-member"


@pytest.fixture
async def discourse(config, discourse_api):
    client = create_client("discourse", timeout=5, transport=httpx.MockTransport(discourse_api.handler))
    yield DiscourseService(config, client, ConcurrencyGate(3, delay=0))
    await client.aclose()


def required(*slugs):
    return [RequiredGroup(tier_group_name(s), tier_full_name(s.title())) for s in slugs]


# --- names ---


def test_group_names():
    assert tier_group_name("gold") == "tier_gold"
    assert tier_full_name("Gold") == "Gold Tier"
    assert is_managed_group("tier_gold")
    assert not is_managed_group("Tier_Gold")
    assert not is_managed_group("staff")


# --- reconciliation ---


async def test_reconcile_removes_then_adds(discourse, discourse_api):
    discourse_api.add_user(UUID, 7, groups=["tier_a", "tier_b", "staff"])

    changes = await discourse.set_member_groups(UUID, required("b", "c"))

    assert changes == [
        ChangeRecord("tier_a", ChangeAction.REMOVED, True),
        ChangeRecord("tier_c", ChangeAction.ADDED, True),
    ]
    assert discourse_api.member_groups(UUID) == {"tier_b", "tier_c", "staff"}
    assert discourse_api.groups["tier_c"]["full_name"] == "C Tier"


async def test_reconcile_twice_is_idempotent(discourse, discourse_api):
    discourse_api.add_user(UUID, 7, groups=["tier_a", "tier_b"])
    await discourse.set_member_groups(UUID, required("b", "c"))
    before = len(discourse_api.mutations())

    assert await discourse.set_member_groups(UUID, required("b", "c")) == []
    assert len(discourse_api.mutations()) == before


async def test_reconcile_member_without_forum_account(discourse, discourse_api):
    assert await discourse.set_member_groups("never-logged-in", required("gold")) is None
    assert discourse_api.mutations() == []


async def test_reconcile_leaves_unmanaged_and_automatic_groups(discourse, discourse_api):
    discourse_api.add_group("tier_auto", automatic=True)
    discourse_api.add_user(UUID, 7, groups=["tier_auto", "moderators"])

    assert await discourse.set_member_groups(UUID, []) == []
    assert discourse_api.member_groups(UUID) == {"tier_auto", "moderators"}


async def test_reconcile_isolates_failures(discourse, discourse_api):
    discourse_api.add_user(UUID, 7)
    discourse_api.add_group("tier_c")
    discourse_api.fail_add.add("tier_c")

    changes = await discourse.set_member_groups(UUID, required("c", "d"))

    assert changes == [
        ChangeRecord("tier_c", ChangeAction.ADDED, False),
        ChangeRecord("tier_d", ChangeAction.ADDED, True),
    ]
    assert discourse_api.member_groups(UUID) == {"tier_d"}
    assert "tier_c" not in discourse.known_groups


async def test_reconcile_creation_failure_is_a_failed_change(discourse, discourse_api):
    discourse_api.add_user(UUID, 7)
    discourse_api.fail_create.add("tier_new")

    changes = await discourse.set_member_groups(UUID, [RequiredGroup("tier_new", "New Tier")])

    assert changes == [ChangeRecord("tier_new", ChangeAction.ADDED, False)]


async def test_reconcile_ignores_differently_cased_prefix(discourse, discourse_api):
    discourse_api.add_user(UUID, 7, groups=["Tier_Gold"])

    changes = await discourse.set_member_groups(UUID, required("gold"))

    assert changes == [ChangeRecord("tier_gold", ChangeAction.ADDED, True)]
    assert discourse_api.member_groups(UUID) == {"Tier_Gold", "tier_gold"}
    assert await discourse.set_member_groups(UUID, required("gold")) == []


async def test_reconcile_limits_forum_calls_in_flight(config, discourse_api):
    in_flight = 0
    peak = 0

    async def slow_forum(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return discourse_api.handler(request)

    discourse_api.add_user(UUID, 7, groups=["tier_a", "tier_b", "tier_c"])
    for name in ("tier_d", "tier_e", "tier_f"):
        discourse_api.add_group(name)
    client = create_client("discourse", timeout=5, transport=httpx.MockTransport(slow_forum))
    try:
        service = DiscourseService(config, client, ConcurrencyGate(2, delay=0))
        changes = await service.set_member_groups(UUID, required("d", "e", "f"))
    finally:
        await client.aclose()

    assert len(changes) == 6
    assert all(change.success for change in changes)
    assert peak == 2
    assert discourse_api.member_groups(UUID) == {"tier_d", "tier_e", "tier_f"}


# --- groups ---


async def test_create_group_uses_default_levels(discourse, discourse_api):
    result = await discourse.idempotently_create_group("tier_gold", "Gold Tier")

    assert result.created is True
    group = discourse_api.groups["tier_gold"]
    assert group["mentionable_level"] == 3
    assert group["visibility_level"] == 2
    assert group["members_visibility_level"] == 2
    assert group["full_name"] == "Gold Tier"


async def test_create_group_reuses_existing(discourse, discourse_api):
    existing = discourse_api.add_group("tier_gold")

    result = await discourse.idempotently_create_group("tier_gold", "Gold Tier")

    assert result.created is False
    assert result.group.id == existing["id"]
    assert ("POST", "/admin/groups.json") not in discourse_api.calls


async def test_known_group_skips_lookup(discourse, discourse_api):
    await discourse.idempotently_create_group("tier_gold", "Gold Tier")
    discourse_api.calls.clear()

    result = await discourse.idempotently_create_group("tier_gold", "Gold Tier")

    assert result.created is False
    assert discourse_api.calls == []


async def test_clear_caches_forces_lookup(discourse, discourse_api):
    await discourse.idempotently_create_group("tier_gold", "Gold Tier")
    discourse.clear_caches()
    discourse_api.calls.clear()

    await discourse.idempotently_create_group("tier_gold", "Gold Tier")

    assert discourse_api.calls == [("GET", "/groups/tier_gold.json")]


async def test_create_group_failure_raises(discourse, discourse_api):
    discourse_api.fail_create.add("tier_gold")
    with pytest.raises(GroupCreationError):
        await discourse.idempotently_create_group("tier_gold", "Gold Tier")


async def test_get_all_groups_and_delete(discourse, discourse_api):
    gold = discourse_api.add_group("tier_gold")
    discourse_api.add_group("staff")

    names = {g.name for g in await discourse.get_all_groups()}
    assert names == {"tier_gold", "staff"}

    await discourse.delete_group(gold["id"])
    assert "tier_gold" not in discourse_api.groups


# --- account lifecycle ---


async def test_suspend_anonymize_delete(discourse, discourse_api):
    discourse_api.add_user(UUID, 7)

    assert await discourse.suspend_external_user(UUID) is True
    assert await discourse.anonymize_external_user(UUID) is True
    assert await discourse.delete_external_user(UUID) is True

    assert discourse_api.account_actions == [("suspend", 7), ("anonymize", 7), ("delete", 7)]


async def test_lifecycle_action_without_account_is_noop(discourse, discourse_api):
    assert await discourse.suspend_external_user("unknown") is False
    assert discourse_api.account_actions == []
