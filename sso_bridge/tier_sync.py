"""
Tier -> group sync, triggered by staff from the admin endpoint.
"""
import asyncio
import enum
import logging
import time
from dataclasses import dataclass

from sso_bridge.action_queue import ActionQueue
from sso_bridge.discourse import DiscourseService, is_managed_group, tier_full_name, tier_group_name
from sso_bridge.ghost import GhostService

logger = logging.getLogger(__name__)

LOG_PREFIX = "[discourse:sync]"
MINIMUM_SYNC_WAIT = 60
ADMIN_QUEUE_DELAY = 0.3
SYNC_KEY = "sync-tiers"


@dataclass(frozen=True)
class SyncTiers:
    remove_unmapped: bool


class SyncRequest(enum.Enum):
    QUEUED = "queued"
    ALREADY_QUEUED = "already-queued"
    TOO_SOON = "too-soon"


class TierSyncService:
    def __init__(self, discourse: DiscourseService, ghost: GhostService, minimum_wait: float = MINIMUM_SYNC_WAIT):
        self._discourse = discourse
        self._ghost = ghost
        self._minimum_wait = minimum_wait
        self.last_sync = float("-inf")
        self.queue = ActionQueue(self._run_sync, ADMIN_QUEUE_DELAY, name="admin")

    async def _create(self, name: str, full_name: str) -> None:
        try:
            result = await self._discourse.idempotently_create_group(name, full_name)
        except Exception:
            logger.exception("%s Unable to create group %s", LOG_PREFIX, name)
            return
        if result.created:
            logger.info("%s Created group %s", LOG_PREFIX, name)

    async def _delete(self, name: str, group_id: int) -> None:
        try:
            await self._discourse.delete_group(group_id)
        except Exception:
            logger.exception("%s Unable to delete group %s (%d)", LOG_PREFIX, name, group_id)
            return
        logger.info("%s Deleted group %s (%d)", LOG_PREFIX, name, group_id)

    async def sync_tiers_to_groups(self, remove_unmapped: bool = False) -> int:
        """
        Create a group for every tier that lacks one and, when asked, delete managed groups no tier
        maps to. Each change succeeds or fails on its own. Returns the number of changes attempted.
        """
        tiers = await self._ghost.get_tiers()
        unmapped = {
            group.name: group.id
            for group in await self._discourse.get_all_groups()
            if not group.automatic and is_managed_group(group.name)
        }

        work = []
        for tier in tiers:
            name = tier_group_name(tier["slug"])
            if name in unmapped:
                del unmapped[name]
            else:
                work.append(self._create(name, tier_full_name(tier["name"])))

        if remove_unmapped:
            work.extend(self._delete(name, group_id) for name, group_id in unmapped.items())
        elif unmapped:
            logger.info("%s Not removing unmapped groups: %s", LOG_PREFIX, ", ".join(unmapped))

        await asyncio.gather(*work)
        if not work:
            logger.info("%s Nothing to do", LOG_PREFIX)
        return len(work)

    async def _run_sync(self, action: SyncTiers) -> None:
        self.last_sync = time.monotonic()
        try:
            await self.sync_tiers_to_groups(action.remove_unmapped)
        finally:
            self.last_sync = time.monotonic()

    def request_sync(self, remove_unmapped: bool) -> SyncRequest:
        if self.last_sync + self._minimum_wait > time.monotonic():
            return SyncRequest.TOO_SOON
        if not self.queue.enqueue(SYNC_KEY, SyncTiers(remove_unmapped)):
            return SyncRequest.ALREADY_QUEUED
        return SyncRequest.QUEUED
