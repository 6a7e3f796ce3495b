"""
Forum SSO endpoint (GET /sso).

The forum redirects here with a signed payload (sso + sig). We verify it, identify the member
(publisher session cookie, or a member JWT in jwt mode), and redirect back to the forum with a
new signed payload describing them.
"""
import logging
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from sso_bridge.context import Bridge, get_bridge
from sso_bridge.discourse import tier_group_name
from sso_bridge.signing import DecodeError, decode_payload, encode_payload, sign, verify
from sso_bridge.upstream import UpstreamError
from sso_bridge.urls import with_query

logger = logging.getLogger(__name__)
router = APIRouter()

JWT_AUTH_SCHEME = "GhostMembers"
GRAVATAR_HOSTS = ("gravatar.com", "www.gravatar.com", "secure.gravatar.com")


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _member_error() -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": "Unable to get your member information"})


def fix_avatar_url(url: str | None) -> str | None:
    """The forum can't render gravatar's transparent 'blank' default; ask for an identicon instead."""
    if not url:
        return url
    parsed = urlparse(url)
    if parsed.hostname not in GRAVATAR_HOSTS:
        return url
    query = parse_qsl(parsed.query, keep_blank_values=True)
    if ("d", "blank") not in query:
        return url
    query = [(k, "identicon" if k == "d" and v == "blank" else v) for k, v in query]
    return urlunparse(parsed._replace(query=urlencode(query)))


def build_sso_payload(member: dict, nonce: str) -> dict[str, str]:
    """Fields returned to the forum for this member."""
    payload = {
        "nonce": nonce,
        "email": member["email"],
        "external_id": member["uuid"],
    }
    avatar_url = fix_avatar_url(member.get("avatar_image"))
    if avatar_url:
        payload["avatar_url"] = avatar_url
    if member.get("name"):
        payload["name"] = member["name"]
    subscriptions = member.get("subscriptions") or []
    if subscriptions:
        # The forum won't create missing groups here; tier sync or a later member sync covers that
        payload["add_groups"] = ",".join(tier_group_name(s["tier"]["slug"]) for s in subscriptions)
    return payload


def signed_return_url(secret: str, return_sso_url: str, fields: dict[str, str]) -> str:
    encoded = encode_payload(fields)
    return with_query(return_sso_url, {"sso": encoded, "sig": sign(secret, encoded)})


def _single_param(request: Request, name: str) -> str | None:
    values = request.query_params.getlist(name)
    if len(values) != 1 or not values[0]:
        return None
    return values[0]


@router.get("/sso")
async def sso(request: Request, bridge: Bridge = Depends(get_bridge)):
    config = bridge.config
    sso_payload = _single_param(request, "sso")
    sig = _single_param(request, "sig")
    if sso_payload is None or sig is None:
        return _message(400, "SSO and signature are required and must not be arrays")

    if not verify(config.discourse_secret, sig, sso_payload):
        return _message(400, "Unable to verify signature")
    try:
        inbound = decode_payload(sso_payload)
    except DecodeError as e:
        logger.info("Rejected SSO payload: %s", e)
        return _message(400, "Unable to decode SSO payload")
    nonce = inbound.get("nonce")
    return_sso_url = inbound.get("return_sso_url")
    if not nonce or not return_sso_url:
        return _message(400, "SSO payload must include nonce and return_sso_url")

    resume = {"sso": sso_payload, "sig": sig}
    if config.sso_method == "jwt":
        member = await _member_from_jwt(request, bridge, resume)
    else:
        member = await _member_from_session(request, bridge, resume)
    if not isinstance(member, dict):
        return member

    fields = build_sso_payload(member, nonce)
    return RedirectResponse(signed_return_url(config.discourse_secret, return_sso_url, fields), status_code=302)


async def _member_from_session(request: Request, bridge: Bridge, resume: dict):
    login_url = with_query(bridge.config.login_url, resume)
    cookie = request.headers.get("cookie")
    if not cookie:
        return RedirectResponse(login_url, status_code=302)
    try:
        member = await bridge.ghost.get_member_by_session(cookie)
    except (UpstreamError, httpx.HTTPError, ValueError):
        logger.exception("Unable to get member from session")
        return _member_error()
    if member is None:
        return RedirectResponse(login_url, status_code=302)
    return member


async def _member_from_jwt(request: Request, bridge: Bridge, resume: dict):
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme != JWT_AUTH_SCHEME or not token.strip():
        sso_page = bridge.ghost.resolve(bridge.config.jwt_ghost_sso_path)
        return RedirectResponse(with_query(sso_page, resume), status_code=302)

    result = await bridge.member_tokens.verify(token.strip())
    if not result.success:
        return _message(401, f"Unable to verify JWT: {result.error}")
    try:
        member = await bridge.ghost.get_member_by_email(result.subject_email)
    except (UpstreamError, httpx.HTTPError, ValueError):
        logger.exception("Unable to look up member by email")
        return _member_error()
    if member is None:
        return _message(404, "Unable to find member")
    return member
