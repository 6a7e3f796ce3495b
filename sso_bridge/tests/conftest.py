"""
Pytest configuration for sso_bridge. Both upstream services are faked with httpx.MockTransport,
so no test touches the network.
"""
import json
import re

import httpx
import pytest
from fastapi.testclient import TestClient

from sso_bridge.config import Config
from sso_bridge.main import create_app

GHOST_URL = "http://ghost.local"
DISCOURSE_URL = "http://forum.local"
BASE = "/ghost/api/external_discourse_on_ghost"
GHOST_ADMIN_KEY = "a" * 24 + ":" + "b" * 64


class FakeGhost:
    """In-memory publisher: members, tiers, sessions, staff sessions and a JWKS document."""

    def __init__(self):
        self.members: dict[str, dict] = {}
        self.sessions: dict[str, str] = {}
        self.tiers: list[dict] = []
        self.staff_cookie = "ghost-admin-api-session=staff"
        self.jwks: dict = {"keys": []}
        self.jwks_fetches = 0
        self.fail_sessions = False
        self.requests: list[httpx.Request] = []

    def add_member(self, member_id, uuid, email, name="", tiers=(), subscriptions=(), avatar_image=None):
        self.members[member_id] = {
            "id": member_id,
            "uuid": uuid,
            "email": email,
            "name": name,
            "avatar_image": avatar_image,
            "tiers": list(tiers),
            "subscriptions": list(subscriptions),
        }
        return self.members[member_id]

    def _find(self, field, value):
        return [m for m in self.members.values() if m[field] == value]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        cookie = request.headers.get("cookie", "")

        if path == "/members/api/member":
            if self.fail_sessions:
                return httpx.Response(500, json={"errors": [{"message": "boom"}]})
            member_id = self.sessions.get(cookie)
            if member_id is None:
                return httpx.Response(204)
            return httpx.Response(200, json=self.members[member_id])

        if path == "/members/.well-known/jwks.json":
            self.jwks_fetches += 1
            return httpx.Response(200, json=self.jwks)

        if path == "/ghost/api/admin/users/me/":
            if self.staff_cookie not in cookie:
                return httpx.Response(403, json={"errors": [{"message": "Forbidden"}]})
            return httpx.Response(200, json={"users": [{"email": "staff@ghost.local", "roles": [{"name": "Owner"}]}]})

        if not request.headers.get("authorization", "").startswith("Ghost "):
            return httpx.Response(401, json={"errors": [{"message": "Unauthorized"}]})

        if path == "/ghost/api/admin/config/":
            return httpx.Response(200, json={"config": {}})
        if path == "/ghost/api/admin/tiers/":
            return httpx.Response(200, json={"tiers": self.tiers})
        if path == "/ghost/api/admin/members/":
            field, _, quoted = request.url.params.get("filter", "").partition(":")
            return httpx.Response(200, json={"members": self._find(field, quoted.strip("'"))})
        match = re.fullmatch(r"/ghost/api/admin/members/([^/]+)/", path)
        if match:
            member = self.members.get(match.group(1))
            if member is None:
                return httpx.Response(404, json={"errors": [{"message": "Member not found"}]})
            return httpx.Response(200, json={"members": [member]})
        return httpx.Response(404, json={"errors": [{"message": "Not found"}]})


class FakeDiscourse:
    """In-memory forum: groups, users keyed by external id, membership and account actions."""

    def __init__(self):
        self.groups: dict[str, dict] = {}
        self.users: dict[str, dict] = {}
        self.site_settings: dict[str, str] = {}
        self.fail_create: set[str] = set()
        self.fail_add: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.account_actions: list[tuple[str, int]] = []
        self._next_id = 100

    def add_group(self, name, automatic=False):
        self._next_id += 1
        self.groups[name] = {"id": self._next_id, "name": name, "full_name": name, "automatic": automatic}
        return self.groups[name]

    def add_user(self, uuid, user_id, groups=()):
        for name in groups:
            if name not in self.groups:
                self.add_group(name)
        self.users[uuid] = {"id": user_id, "groups": set(groups)}

    def member_groups(self, uuid) -> set[str]:
        return set(self.users[uuid]["groups"])

    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] != "GET"]

    def _group_by_id(self, group_id):
        return next((g for g in self.groups.values() if g["id"] == group_id), None)

    def _user_by_id(self, user_id):
        return next((u for u in self.users.values() if u["id"] == user_id), None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else {}

        if path == "/session/current.json":
            return httpx.Response(200, json={"current_user": {"username": "system"}})
        if path == "/admin/site_settings.json":
            settings = [{"setting": k, "value": v} for k, v in self.site_settings.items()]
            return httpx.Response(200, json={"site_settings": settings})

        match = re.fullmatch(r"/u/by-external/(.+)\.json", path)
        if match:
            user = self.users.get(match.group(1))
            if user is None:
                return httpx.Response(404, json={"errors": ["not found"]})
            groups = [self.groups[name] for name in sorted(user["groups"])]
            return httpx.Response(200, json={"user": {"id": user["id"], "groups": groups}})

        if path == "/groups.json":
            groups = list(self.groups.values())
            return httpx.Response(200, json={"groups": groups, "total_rows_groups": len(groups)})

        if path == "/admin/groups.json" and method == "POST":
            group = body["group"]
            if group["name"] in self.fail_create:
                return httpx.Response(422, json={"errors": ["Name has already been taken"]})
            created = self.add_group(group["name"])
            created.update(group)
            return httpx.Response(200, json={"basic_group": created})

        match = re.fullmatch(r"/admin/groups/(\d+)\.json", path)
        if match and method == "DELETE":
            group = self._group_by_id(int(match.group(1)))
            if group is None:
                return httpx.Response(404, json={"errors": ["not found"]})
            del self.groups[group["name"]]
            return httpx.Response(200, json={"success": "OK"})

        match = re.fullmatch(r"/groups/(\d+)/members\.json", path)
        if match:
            group = self._group_by_id(int(match.group(1)))
            user = self._user_by_id(int(body["user_ids"]))
            if group is None or user is None:
                return httpx.Response(404, json={"errors": ["not found"]})
            if method == "PUT":
                if group["name"] in self.fail_add:
                    return httpx.Response(200, json={"errors": ["You cannot add users to this group"]})
                user["groups"].add(group["name"])
            else:
                user["groups"].discard(group["name"])
            return httpx.Response(200, json={"success": "OK"})

        match = re.fullmatch(r"/groups/(.+)\.json", path)
        if match and method == "GET":
            group = self.groups.get(match.group(1))
            if group is None:
                return httpx.Response(404, json={"errors": ["not found"]})
            return httpx.Response(200, json={"group": group})

        match = re.fullmatch(r"/admin/users/(\d+)(/anonymize|/suspend)?\.json", path)
        if match:
            action = (match.group(2) or "/delete").lstrip("/")
            self.account_actions.append((action, int(match.group(1))))
            return httpx.Response(200, json={"success": "OK"})

        return httpx.Response(404, json={"errors": ["not found"]})


@pytest.fixture
def config():
    return Config(
        discourse_secret="discourse-shared-secret",
        discourse_url=DISCOURSE_URL,
        discourse_api_key="c" * 64,
        ghost_url=GHOST_URL,
        ghost_api_key=GHOST_ADMIN_KEY,
        queue_delay_ms=0,
    )


@pytest.fixture
def ghost_api():
    return FakeGhost()


@pytest.fixture
def discourse_api():
    return FakeDiscourse()


@pytest.fixture
def make_client(ghost_api, discourse_api):
    """Start the app for a config; the lifespan runs for the rest of the test."""
    clients = []

    def _make(config):
        app = create_app(
            config,
            ghost_transport=httpx.MockTransport(ghost_api.handler),
            discourse_transport=httpx.MockTransport(discourse_api.handler),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
