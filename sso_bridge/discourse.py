"""
Forum (Discourse) API client and the group reconciliation engine.

Tier groups are named `tier_<slug>`; any group carrying that prefix is managed here and may be
added or removed. Other groups, and groups the forum marks automatic, are never touched.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

import httpx

from sso_bridge.config import Config
from sso_bridge.gate import ConcurrencyGate
from sso_bridge.upstream import JSON_MIME_TYPE, UpstreamError, read_json
from sso_bridge.urls import join_url

logger = logging.getLogger(__name__)

SERVICE = "discourse"

# Must match the forum's own defaults
DEFAULT_MAX_DISCOURSE_REQUEST_CONCURRENCY = 3
DEFAULT_GROUP_MENTIONABLE_LEVEL = 3
DEFAULT_GROUP_VISIBILITY_LEVEL = 2
DEFAULT_GROUP_MEMBERS_VISIBILITY_LEVEL = 2

GROUP_PREFIX = "tier_"
GROUP_FULL_NAME_SUFFIX = " Tier"

SUSPEND_UNTIL = "3000-01-01"
SUSPEND_REASON = "Membership removed"


def tier_group_name(slug: str) -> str:
    return f"{GROUP_PREFIX}{slug}"


def tier_full_name(name: str) -> str:
    return f"{name}{GROUP_FULL_NAME_SUFFIX}"


def is_managed_group(name: str) -> bool:
    return name.startswith(GROUP_PREFIX)


@dataclass(frozen=True)
class ForumGroup:
    id: int
    name: str
    full_name: str | None = None
    automatic: bool = False
    visibility_level: int | None = None
    mentionable_level: int | None = None
    members_visibility_level: int | None = None

    @classmethod
    def from_api(cls, data: dict) -> "ForumGroup":
        return cls(
            id=data["id"],
            name=data["name"],
            full_name=data.get("full_name"),
            automatic=bool(data.get("automatic", False)),
            visibility_level=data.get("visibility_level"),
            mentionable_level=data.get("mentionable_level"),
            members_visibility_level=data.get("members_visibility_level"),
        )


@dataclass(frozen=True)
class GroupResult:
    created: bool
    group: ForumGroup


@dataclass(frozen=True)
class RequiredGroup:
    name: str
    display_name: str


@dataclass(frozen=True)
class MemberGroups:
    user_id: int
    groups: list[ForumGroup]


class ChangeAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeRecord:
    group_name: str
    action: ChangeAction
    success: bool


class GroupCreationError(UpstreamError):
    """A tier group could not be created, so nobody can be added to it."""


def _body_errors(response: httpx.Response) -> list:
    body = read_json(response)
    if isinstance(body, dict):
        return body.get("errors") or []
    return []


class DiscourseService:
    def __init__(self, config: Config, client: httpx.AsyncClient, gate: ConcurrencyGate | None = None):
        self._base_url = config.discourse_url
        self._client = client
        self._gate = gate or ConcurrencyGate(config.max_discourse_concurrency)
        self._headers = {
            "Accept": JSON_MIME_TYPE,
            "Api-Key": config.discourse_api_key,
            "Api-Username": config.discourse_api_user,
        }
        # name -> group confirmed to exist. Best effort: an entry can go stale if the group is
        # deleted in the forum; a failed membership change evicts it.
        self.known_groups: dict[str, ForumGroup] = {}

    def resolve(self, path: str, query: dict | None = None) -> str:
        return join_url(self._base_url, path, query=query)

    async def request(self, method: str, path: str, *, query: dict | None = None, json=None) -> httpx.Response:
        return await self._client.request(
            method, self.resolve(path, query), headers=self._headers, json=json
        )

    def clear_caches(self) -> None:
        self.known_groups.clear()

    # --- Groups ---

    async def get_all_groups(self) -> list[ForumGroup]:
        groups: list[ForumGroup] = []
        page = 0
        while True:
            response = await self.request("GET", "/groups.json", query={"page": page})
            if response.status_code != 200:
                raise UpstreamError(SERVICE, "Unable to list groups", response.status_code, read_json(response))
            body = response.json()
            batch = body.get("groups") or []
            groups.extend(ForumGroup.from_api(g) for g in batch)
            total = body.get("total_rows_groups", len(groups))
            if not batch or len(groups) >= total:
                return groups
            page += 1

    async def find_group(self, name: str) -> ForumGroup | None:
        if name in self.known_groups:
            return self.known_groups[name]
        response = await self.request("GET", f"/groups/{quote(name)}.json")
        if response.status_code != 200:
            return None
        group = ForumGroup.from_api(response.json()["group"])
        self.known_groups[name] = group
        return group

    async def idempotently_create_group(self, name: str, full_name: str) -> GroupResult:
        """
        Reuse the group called `name` if it exists, otherwise create it with the default levels.
        Raises GroupCreationError when creation fails.
        """
        existing = await self.find_group(name)
        if existing is not None:
            return GroupResult(created=False, group=existing)

        response = await self.request(
            "POST",
            "/admin/groups.json",
            json={
                "group": {
                    "name": name,
                    "full_name": full_name,
                    "automatic": False,
                    "mentionable_level": DEFAULT_GROUP_MENTIONABLE_LEVEL,
                    "visibility_level": DEFAULT_GROUP_VISIBILITY_LEVEL,
                    "members_visibility_level": DEFAULT_GROUP_MEMBERS_VISIBILITY_LEVEL,
                }
            },
        )
        if response.status_code != 200:
            error = GroupCreationError(
                SERVICE, f"Unable to create group {name}", response.status_code, read_json(response)
            )
            logger.error("%s: %s", error, error.details)
            raise error

        group = ForumGroup.from_api(response.json()["basic_group"])
        self.known_groups[name] = group
        return GroupResult(created=True, group=group)

    async def delete_group(self, group_id: int) -> None:
        response = await self.request("DELETE", f"/admin/groups/{group_id}.json")
        if response.status_code != 200:
            raise UpstreamError(SERVICE, f"Unable to delete group {group_id}", response.status_code, read_json(response))
        self.known_groups = {n: g for n, g in self.known_groups.items() if g.id != group_id}

    # --- Membership ---

    async def get_member_groups(self, uuid: str) -> MemberGroups | None:
        """Forum account (with groups) for a publisher uuid; None if the member never logged in."""
        response = await self.request("GET", f"/u/by-external/{quote(uuid, safe='')}.json")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UpstreamError(SERVICE, f"Unable to get member {uuid}", response.status_code, read_json(response))
        user = response.json()["user"]
        return MemberGroups(
            user_id=user["id"],
            groups=[ForumGroup.from_api(g) for g in user.get("groups") or []],
        )

    async def add_member_to_group(self, user_id: int, name: str, full_name: str) -> None:
        result = await self.idempotently_create_group(name, full_name)
        if result.created:
            logger.info("Created group %s", name)
        response = await self.request(
            "PUT",
            f"/groups/{result.group.id}/members.json",
            json={"user_ids": str(user_id), "notify_users": False},
        )
        errors = _body_errors(response)
        if response.status_code != 200 or errors:
            self.known_groups.pop(name, None)
            raise UpstreamError(
                SERVICE, f"Unable to add user {user_id} to group {name}", response.status_code, errors or read_json(response)
            )

    async def remove_member_from_group(self, user_id: int, name: str) -> None:
        group = await self.find_group(name)
        if group is None:
            raise UpstreamError(SERVICE, f"Unable to find group {name}")
        response = await self.request(
            "DELETE",
            f"/groups/{group.id}/members.json",
            json={"user_ids": str(user_id)},
        )
        errors = _body_errors(response)
        if response.status_code != 200 or errors:
            self.known_groups.pop(name, None)
            raise UpstreamError(
                SERVICE, f"Unable to remove user {user_id} from group {name}", response.status_code, errors or read_json(response)
            )

    async def set_member_groups(self, uuid: str, required: list[RequiredGroup]) -> list[ChangeRecord] | None:
        """
        Make the member's managed groups equal `required`.

        Returns one ChangeRecord per attempted change (removals first, in dispatch order), or None
        when the member has no forum account yet. A failed change never stops the others.
        """
        member = await self.get_member_groups(uuid)
        if member is None:
            return None

        wanted = {group.name: group for group in required}
        current = {g.name for g in member.groups if is_managed_group(g.name) and not g.automatic}

        scheduled = []
        for name in sorted(current - wanted.keys()):
            scheduled.append((name, ChangeAction.REMOVED, self._gate.run(self.remove_member_from_group, member.user_id, name)))
        for name, group in wanted.items():
            if name not in current:
                scheduled.append(
                    (name, ChangeAction.ADDED, self._gate.run(self.add_member_to_group, member.user_id, name, group.display_name))
                )

        results = await asyncio.gather(*(call for _, _, call in scheduled), return_exceptions=True)

        changes = []
        for (name, action, _), result in zip(scheduled, results):
            failed = isinstance(result, BaseException)
            if failed:
                logger.error("Unable to %s %s (user %d): %s", action.value, name, member.user_id, result)
            changes.append(ChangeRecord(group_name=name, action=action, success=not failed))
        return changes

    # --- Account lifecycle ---

    async def _require_user_id(self, uuid: str) -> int | None:
        member = await self.get_member_groups(uuid)
        if member is None:
            logger.info("Member %s has no Discourse account; nothing to do", uuid)
            return None
        return member.user_id

    async def _account_action(self, method: str, path: str, description: str, json=None) -> None:
        response = await self.request(method, path, json=json)
        if response.status_code != 200:
            raise UpstreamError(SERVICE, f"Unable to {description}", response.status_code, read_json(response))

    async def anonymize_external_user(self, uuid: str) -> bool:
        user_id = await self._require_user_id(uuid)
        if user_id is None:
            return False
        await self._account_action("PUT", f"/admin/users/{user_id}/anonymize.json", f"anonymize user {user_id}")
        logger.info("Anonymized Discourse user %d", user_id)
        return True

    async def suspend_external_user(self, uuid: str) -> bool:
        user_id = await self._require_user_id(uuid)
        if user_id is None:
            return False
        await self._account_action(
            "PUT",
            f"/admin/users/{user_id}/suspend.json",
            f"suspend user {user_id}",
            json={"suspend_until": SUSPEND_UNTIL, "reason": SUSPEND_REASON},
        )
        logger.info("Suspended Discourse user %d", user_id)
        return True

    async def delete_external_user(self, uuid: str) -> bool:
        user_id = await self._require_user_id(uuid)
        if user_id is None:
            return False
        await self._account_action("DELETE", f"/admin/users/{user_id}.json", f"delete user {user_id}")
        logger.info("Deleted Discourse user %d", user_id)
        return True
