"""
Member sync jobs. Webhooks describe what should happen as one of the action types below;
MemberSyncService queues them (one pending job per member id) and runs them in order.
"""
import logging
from dataclasses import dataclass, field

from sso_bridge.action_queue import ActionQueue
from sso_bridge.discourse import (
    ChangeRecord,
    DiscourseService,
    RequiredGroup,
    tier_full_name,
    tier_group_name,
)
from sso_bridge.ghost import GhostService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncMember:
    """Re-read the member's tiers from the publisher, then set their groups."""
    ghost_id: str


@dataclass(frozen=True)
class SetMemberGroups:
    """Set groups from tiers already known (e.g. carried by the webhook). Empty tiers remove all."""
    uuid: str
    tiers: tuple[dict, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AnonymizeMember:
    uuid: str


@dataclass(frozen=True)
class SuspendMember:
    uuid: str


@dataclass(frozen=True)
class DeleteMember:
    uuid: str


MemberAction = SyncMember | SetMemberGroups | AnonymizeMember | SuspendMember | DeleteMember


def groups_for_tiers(tiers) -> list[RequiredGroup]:
    return [RequiredGroup(name=tier_group_name(t["slug"]), display_name=tier_full_name(t["name"])) for t in tiers]


class MemberSyncService:
    def __init__(self, discourse: DiscourseService, ghost: GhostService, delay: float):
        self._discourse = discourse
        self._ghost = ghost
        self.queue = ActionQueue(self.run, delay, name="member-sync")

    async def sync_groups(self, ghost_id: str) -> list[ChangeRecord] | None:
        member = await self._ghost.get_member(ghost_id)
        if member is None:
            logger.info("Member %s not found in Ghost; skipping sync", ghost_id)
            return None
        return await self.set_groups_from_tiers(member["uuid"], member.get("tiers") or [])

    async def set_groups_from_tiers(self, uuid: str, tiers) -> list[ChangeRecord] | None:
        changes = await self._discourse.set_member_groups(uuid, groups_for_tiers(tiers))
        if changes is None:
            # Not an error: they have not logged in to the forum yet
            logger.info("Member %s has no Discourse account yet; groups will be set on first login", uuid)
            return None
        for change in changes:
            logger.info(
                "Member %s: %s %s%s",
                uuid,
                change.action.value,
                change.group_name,
                "" if change.success else " (failed)",
            )
        return changes

    async def run(self, action: MemberAction):
        if isinstance(action, SyncMember):
            return await self.sync_groups(action.ghost_id)
        if isinstance(action, SetMemberGroups):
            return await self.set_groups_from_tiers(action.uuid, action.tiers)
        if isinstance(action, AnonymizeMember):
            return await self._discourse.anonymize_external_user(action.uuid)
        if isinstance(action, SuspendMember):
            return await self._discourse.suspend_external_user(action.uuid)
        if isinstance(action, DeleteMember):
            return await self._discourse.delete_external_user(action.uuid)
        raise TypeError(f"Unknown member action {action!r}")
