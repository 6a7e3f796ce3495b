"""
Publisher member webhooks: POST /hook/<member-updated-id> and POST /hook/<member-deleted-id>.
A verified delivery queues a member sync job and is answered with 202 straight away.
"""
import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from sso_bridge.config import Config
from sso_bridge.context import Bridge, get_bridge
from sso_bridge.member_sync import (
    AnonymizeMember,
    DeleteMember,
    SetMemberGroups,
    SuspendMember,
    SyncMember,
)
from sso_bridge.signing import verify

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-ghost-signature"
ACCEPTED = {"message": "Syncing member"}

# Delete action -> job for the removed member (by uuid)
_DELETE_JOBS = {
    "sync": lambda uuid: SetMemberGroups(uuid, ()),
    "suspend": SuspendMember,
    "anonymize": AnonymizeMember,
    "delete": DeleteMember,
}


class SignatureRejected(Exception):
    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message or str(status_code))


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def parse_signature_header(value: str) -> dict[str, str]:
    """'sha256=<hex>, t=<ms>' -> {'sha256': '<hex>', 't': '<ms>'}"""
    tokens = {}
    for part in value.split(","):
        key, sep, token = part.strip().partition("=")
        if sep and key:
            tokens[key] = token
    return tokens


def signed_bytes(body: bytes, timestamp: str, version: str) -> bytes:
    """The exact bytes the publisher signed. Raises ValueError for an unknown protocol version."""
    if version == "1":
        return body
    if version == "2":
        return body + timestamp.encode("utf-8")
    raise ValueError(f"Unsupported webhook secret version {version!r}")


def check_signature(bridge: Bridge, secret: str | None, header: str | None, body: bytes) -> None:
    """
    Raise SignatureRejected unless the delivery may be processed. status 204 means a replay:
    answer without doing anything so the sender stops retrying.
    """
    if not secret:
        return
    if not header:
        raise SignatureRejected(400, "Missing signature")
    tokens = parse_signature_header(header)
    signature, timestamp = tokens.get("sha256"), tokens.get("t")
    if not signature or not timestamp:
        raise SignatureRejected(400, "Invalid signature")

    if not bridge.replay_guard.add(timestamp):
        raise SignatureRejected(204)

    config = bridge.config
    try:
        payload = signed_bytes(body, timestamp, config.ghost_webhooks_secret_version)
    except ValueError:
        logger.error(
            "DOG_GHOST_MEMBER_WEBHOOKS_SECRET_VERSION must be 1 or 2, got %r",
            config.ghost_webhooks_secret_version,
        )
        raise SignatureRejected(500, "Invalid server configuration")

    if not verify(secret, signature, payload):
        raise SignatureRejected(400, "Invalid signature")

    if config.webhook_max_age_seconds:
        try:
            signed_at = int(timestamp) / 1000
        except ValueError:
            raise SignatureRejected(400, "Invalid signature")
        if time.time() - signed_at > config.webhook_max_age_seconds:
            raise SignatureRejected(400, "Signature expired")


async def _verified_body(request: Request, bridge: Bridge, secret: str | None):
    """Parsed JSON body of a verified delivery, or the Response to send instead."""
    body = await request.body()
    try:
        check_signature(bridge, secret, request.headers.get(SIGNATURE_HEADER), body)
    except SignatureRejected as e:
        if e.status_code == 204:
            logger.info("Ignoring replayed webhook delivery")
            return Response(status_code=204)
        return JSONResponse(status_code=e.status_code, content={"message": e.message})
    try:
        return await request.json()
    except ValueError:
        return _message(400, "Invalid JSON body")


def _member_snapshot(body, state: str) -> dict | None:
    if not isinstance(body, dict):
        return None
    member = body.get("member")
    if not isinstance(member, dict):
        return None
    snapshot = member.get(state)
    if not isinstance(snapshot, dict) or not snapshot.get("id"):
        return None
    return snapshot


def build_webhook_router(config: Config) -> APIRouter:
    router = APIRouter()
    delete_job = _DELETE_JOBS.get(config.ghost_member_delete_discourse_action)

    @router.post(f"/hook/{config.ghost_member_updated_route}")
    async def member_updated(request: Request, bridge: Bridge = Depends(get_bridge)):
        logger.info("Processing member updated event")
        body = await _verified_body(request, bridge, config.ghost_member_updated_secret)
        if isinstance(body, Response):
            return body
        member = _member_snapshot(body, "current")
        if member is None:
            return _message(400, "Missing member ID")

        queue = bridge.member_sync.queue
        member_id = member["id"]
        if queue.has(member_id):
            return JSONResponse(status_code=202, content=ACCEPTED)

        tiers = member.get("tiers")
        if tiers is None or not member.get("uuid"):
            queue.enqueue(member_id, SyncMember(member_id))
        else:
            queue.enqueue(member_id, SetMemberGroups(member["uuid"], tuple(tiers)))
        return JSONResponse(status_code=202, content=ACCEPTED)

    if delete_job is not None:

        @router.post(f"/hook/{config.ghost_member_deleted_route}")
        async def member_deleted(request: Request, bridge: Bridge = Depends(get_bridge)):
            logger.info("Processing member removed event")
            body = await _verified_body(request, bridge, config.ghost_member_deleted_secret)
            if isinstance(body, Response):
                return body
            member = _member_snapshot(body, "previous")
            if member is None or not member.get("uuid"):
                return _message(400, "Missing member ID")
            if not bridge.member_sync.queue.enqueue(member["id"], delete_job(member["uuid"])):
                logger.info("Member %s already has a pending job; dropping delete event", member["id"])
            return JSONResponse(status_code=202, content=ACCEPTED)

    return router
