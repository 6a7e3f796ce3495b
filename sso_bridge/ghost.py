"""
Publisher (Ghost) API client: member lookups by session, id, uuid or email; tiers; staff check.
Admin API calls are authenticated with a short-lived HS256 token minted from the admin key.
"""
import logging
import time

import httpx
import jwt

from sso_bridge.config import Config
from sso_bridge.upstream import JSON_MIME_TYPE, UpstreamError, read_json
from sso_bridge.urls import join_url, origin_of

logger = logging.getLogger(__name__)

SERVICE = "ghost"
ADMIN_API_VERSION = "v5.0"
ADMIN_TOKEN_TTL = 300


def _nql_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class GhostService:
    def __init__(self, config: Config, client: httpx.AsyncClient):
        self._config = config
        self._client = client
        self._base_url = config.ghost_url
        self._admin_url = config.admin_url
        self._key_id, _, self._key_secret = config.ghost_api_key.partition(":")

    # --- URLs ---

    def resolve(self, path: str, fragment: str = "", query: dict | None = None) -> str:
        return join_url(self._base_url, path, fragment, query)

    def resolve_admin(self, path: str, fragment: str = "", query: dict | None = None) -> str:
        return join_url(self._admin_url, path, fragment, query)

    @property
    def issuer(self) -> str:
        """Expected `iss` of member identity tokens."""
        return self.resolve("/members/api")

    @property
    def jwks_url(self) -> str:
        return self.resolve("/members/.well-known/jwks.json")

    # --- Admin API ---

    def admin_token(self) -> str:
        now = int(time.time())
        return jwt.encode(
            {"iat": now, "exp": now + ADMIN_TOKEN_TTL, "aud": "/admin/"},
            bytes.fromhex(self._key_secret),
            algorithm="HS256",
            headers={"kid": self._key_id},
        )

    def admin_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Ghost {self.admin_token()}",
            "Accept": JSON_MIME_TYPE,
            "Accept-Version": ADMIN_API_VERSION,
        }

    async def _admin_get(self, path: str, params: dict | None = None) -> httpx.Response:
        return await self._client.get(self.resolve_admin(path), params=params, headers=self.admin_headers())

    async def _browse_members(self, nql_filter: str) -> dict | None:
        response = await self._admin_get(
            "/ghost/api/admin/members/",
            {"filter": nql_filter, "include": "tiers", "limit": "2"},
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UpstreamError(SERVICE, "Unable to browse members", response.status_code, read_json(response))
        members = response.json().get("members") or []
        if len(members) != 1:
            return None
        return members[0]

    async def get_member(self, member_id: str) -> dict | None:
        """Member (with tiers) by publisher id; None if the publisher doesn't know it."""
        response = await self._admin_get(f"/ghost/api/admin/members/{member_id}/", {"include": "tiers"})
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UpstreamError(SERVICE, f"Unable to read member {member_id}", response.status_code, read_json(response))
        members = response.json().get("members") or []
        return members[0] if members else None

    async def get_member_by_uuid(self, uuid: str) -> dict | None:
        return await self._browse_members(f"uuid:{_nql_quote(uuid)}")

    async def get_member_by_email(self, email: str) -> dict | None:
        return await self._browse_members(f"email:{_nql_quote(email)}")

    async def get_tiers(self) -> list[dict]:
        response = await self._admin_get("/ghost/api/admin/tiers/", {"limit": "all"})
        if response.status_code != 200:
            raise UpstreamError(SERVICE, "Unable to list tiers", response.status_code, read_json(response))
        return response.json().get("tiers") or []

    # --- Cookie-authenticated lookups ---

    async def get_member_by_session(self, cookie: str) -> dict | None:
        """
        The member owning the session cookie. None means "not logged in" (publisher replies 204);
        any other non-200 raises UpstreamError.
        """
        response = await self._client.get(
            self.resolve("/members/api/member"),
            headers={"cookie": cookie, "Accept": JSON_MIME_TYPE},
        )
        if response.status_code == 204:
            return None
        if response.status_code != 200:
            raise UpstreamError(SERVICE, "Unable to get member from session", response.status_code, read_json(response))
        return response.json()

    async def authenticate_staff_from_cookie(self, cookie: str) -> dict | None:
        """Staff user for an admin session cookie, or None when the session isn't valid."""
        response = await self._client.get(
            self.resolve_admin("/ghost/api/admin/users/me/"),
            params={"include": "roles"},
            headers={
                "cookie": cookie,
                "Accept": JSON_MIME_TYPE,
                "Accept-Version": ADMIN_API_VERSION,
                "Origin": origin_of(self._admin_url),
            },
        )
        if response.status_code != 200:
            logger.info("Staff session rejected by Ghost (%d)", response.status_code)
            return None
        users = response.json().get("users") or []
        return users[0] if users else None
