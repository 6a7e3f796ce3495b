"""
Member identity token (JWT) verification against the publisher's JWKS.
RS512 only; issuer must match exactly; expiry enforced. The subject claim is the member's email.
Keys are fetched lazily and cached; an unknown kid triggers at most one re-fetch per refresh interval.
"""
import asyncio
import logging
import time
from dataclasses import dataclass

import httpx
import jwt

from sso_bridge.upstream import JSON_MIME_TYPE, UpstreamError

logger = logging.getLogger(__name__)

ALGORITHMS = ["RS512"]
JWKS_REFRESH_INTERVAL = 60


@dataclass(frozen=True)
class TokenVerification:
    success: bool
    subject_email: str | None = None
    error: str | None = None


def _failure(error: str) -> TokenVerification:
    return TokenVerification(success=False, error=error)


class MemberTokenVerifier:
    def __init__(
        self,
        jwks_url: str,
        issuer: str,
        client: httpx.AsyncClient,
        refresh_interval: float = JWKS_REFRESH_INTERVAL,
    ):
        self._jwks_url = jwks_url
        self._issuer = issuer
        self._client = client
        self._refresh_interval = refresh_interval
        self._keys: dict[str, jwt.PyJWK] | None = None
        self._fetched_at = float("-inf")
        self._lock = asyncio.Lock()

    def clear(self) -> None:
        """Drop cached keys; the next verification fetches them again."""
        self._keys = None
        self._fetched_at = float("-inf")

    async def _fetch_keys(self) -> None:
        response = await self._client.get(self._jwks_url, headers={"Accept": JSON_MIME_TYPE})
        if response.status_code != 200:
            raise UpstreamError("ghost", "Unable to fetch JWKS", response.status_code)
        key_set = jwt.PyJWKSet.from_dict(response.json())
        self._keys = {key.key_id: key for key in key_set.keys if key.key_id}
        self._fetched_at = time.monotonic()
        logger.info("Loaded %d member token signing key(s)", len(self._keys))

    async def _get_key(self, kid: str) -> jwt.PyJWK | None:
        async with self._lock:
            if self._keys is None:
                await self._fetch_keys()
            key = self._keys.get(kid)
            if key is None and time.monotonic() - self._fetched_at >= self._refresh_interval:
                await self._fetch_keys()
                key = self._keys.get(kid)
            return key

    async def verify(self, token: str) -> TokenVerification:
        """Never raises for a bad token; callers get a failed TokenVerification instead."""
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.InvalidTokenError as e:
            return _failure(f"Malformed token: {e}")
        if not kid:
            return _failure("Token has no key id")

        try:
            key = await self._get_key(kid)
        except (httpx.HTTPError, UpstreamError, jwt.PyJWTError, ValueError) as e:
            logger.error("Unable to load member token signing keys: %s", e)
            return _failure("Unable to load signing keys")
        if key is None:
            return _failure("Unknown signing key")

        try:
            claims = jwt.decode(
                token,
                key.key,
                algorithms=ALGORITHMS,
                issuer=self._issuer,
                options={"require": ["exp", "sub"], "verify_aud": False},
            )
        except jwt.ExpiredSignatureError:
            return _failure("Token expired")
        except jwt.InvalidIssuerError:
            return _failure("Invalid issuer")
        except jwt.InvalidTokenError as e:
            logger.debug("Member token rejected: %s", e)
            return _failure(str(e) or "Token verification failed")

        return TokenVerification(success=True, subject_email=claims["sub"])
