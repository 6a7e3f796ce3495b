"""
Staff-only maintenance endpoints: GET /admin/sync-tiers and GET /admin/clear-caches.
Authenticated with the publisher's admin session cookie.
"""
import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status

from sso_bridge.context import Bridge, get_bridge
from sso_bridge.tier_sync import SyncRequest
from sso_bridge.upstream import UpstreamError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin")

ADMIN_SESSION_COOKIE = "ghost-admin-api-session"


def _unauthorized(error: str = "You must be logged in to access this resource") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": error})


async def require_staff(request: Request, bridge: Bridge = Depends(get_bridge)) -> dict:
    """Staff user behind the request's admin session. Raises 401 otherwise."""
    cookie = request.headers.get("cookie") or ""
    if ADMIN_SESSION_COOKIE not in cookie:
        raise _unauthorized()
    try:
        user = await bridge.ghost.authenticate_staff_from_cookie(cookie)
    except (UpstreamError, httpx.HTTPError, ValueError):
        logger.exception("Unable to authenticate staff session")
        raise _unauthorized("Unable to determine authenticated user")
    if not user:
        raise _unauthorized()
    return user


@router.get("/sync-tiers")
async def sync_tiers(
    removeUnmappedTiers: str | None = None,
    bridge: Bridge = Depends(get_bridge),
    staff: dict = Depends(require_staff),
):
    """Queue a tier -> group sync. At most one per minute."""
    remove_unmapped = removeUnmappedTiers == "true"
    outcome = bridge.tier_sync.request_sync(remove_unmapped)
    if outcome is SyncRequest.TOO_SOON:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "A sync request recently occurred. Please wait before trying again"},
        )
    if outcome is SyncRequest.ALREADY_QUEUED:
        return {"message": "Syncing Tiers"}
    logger.info("Tier sync requested by %s", staff.get("email", "staff"))
    mode = "removing" if remove_unmapped else "not removing"
    return {"message": f"Syncing tiers ({mode} unmapped tiers)"}


@router.get("/clear-caches")
async def clear_caches(bridge: Bridge = Depends(get_bridge), staff: dict = Depends(require_staff)):
    bridge.clear_caches()
    return {"message": "Caches cleared"}
