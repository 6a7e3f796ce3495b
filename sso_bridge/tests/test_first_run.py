"""Tests for the one-off tier -> group sync command."""
import httpx

from sso_bridge.first_run import main, sync_tiers_once


async def _sync(config, ghost_api, discourse_api):
    return await sync_tiers_once(
        config,
        ghost_transport=httpx.MockTransport(ghost_api.handler),
        discourse_transport=httpx.MockTransport(discourse_api.handler),
    )


async def test_creates_groups_for_tiers(config, ghost_api, discourse_api):
    ghost_api.tiers = [{"slug": "gold", "name": "Gold"}, {"slug": "silver", "name": "Silver"}]
    discourse_api.add_group("tier_gold")

    assert await _sync(config, ghost_api, discourse_api) == 1
    assert discourse_api.groups["tier_silver"]["full_name"] == "Silver Tier"


async def test_never_removes_unmapped_groups(config, ghost_api, discourse_api):
    ghost_api.tiers = []
    discourse_api.add_group("tier_old")

    assert await _sync(config, ghost_api, discourse_api) == 0
    assert "tier_old" in discourse_api.groups
    assert discourse_api.mutations() == []


def test_main_exits_1_on_bad_config(monkeypatch):
    for key in ("DOG_DISCOURSE_SHARED_SECRET", "DOG_DISCOURSE_URL", "DOG_GHOST_URL"):
        monkeypatch.delenv(key, raising=False)
    assert main([]) == 1
