"""
Service graph, assembled once at startup and stored on app.state.bridge.
Routers reach it through the get_bridge dependency.
"""
import logging
from dataclasses import dataclass

import httpx
from fastapi import Request

from sso_bridge.config import Config
from sso_bridge.discourse import DiscourseService
from sso_bridge.gate import ConcurrencyGate
from sso_bridge.ghost import GhostService
from sso_bridge.member_sync import MemberSyncService
from sso_bridge.member_tokens import MemberTokenVerifier
from sso_bridge.replay import ReplayGuard
from sso_bridge.tier_sync import TierSyncService
from sso_bridge.upstream import create_client

logger = logging.getLogger(__name__)


@dataclass
class Bridge:
    config: Config
    ghost_client: httpx.AsyncClient
    discourse_client: httpx.AsyncClient
    ghost: GhostService
    discourse: DiscourseService
    member_tokens: MemberTokenVerifier
    member_sync: MemberSyncService
    tier_sync: TierSyncService
    # Shared by both webhook routes
    replay_guard: ReplayGuard

    def clear_caches(self) -> None:
        self.discourse.clear_caches()
        self.member_tokens.clear()
        logger.info("Cleared group and signing key caches")


def build_bridge(
    config: Config,
    *,
    ghost_transport: httpx.AsyncBaseTransport | None = None,
    discourse_transport: httpx.AsyncBaseTransport | None = None,
) -> Bridge:
    ghost_client = create_client(
        "ghost", timeout=config.request_timeout, log_requests=config.log_ghost_requests, transport=ghost_transport
    )
    discourse_client = create_client(
        "discourse",
        timeout=config.request_timeout,
        log_requests=config.log_discourse_requests,
        transport=discourse_transport,
    )
    ghost = GhostService(config, ghost_client)
    discourse = DiscourseService(config, discourse_client, ConcurrencyGate(config.max_discourse_concurrency))
    return Bridge(
        config=config,
        ghost_client=ghost_client,
        discourse_client=discourse_client,
        ghost=ghost,
        discourse=discourse,
        member_tokens=MemberTokenVerifier(ghost.jwks_url, ghost.issuer, ghost_client),
        member_sync=MemberSyncService(discourse, ghost, config.queue_delay),
        tier_sync=TierSyncService(discourse, ghost),
        replay_guard=ReplayGuard(),
    )


async def close_bridge(bridge: Bridge) -> None:
    await bridge.member_sync.queue.close()
    await bridge.tier_sync.queue.close()
    await bridge.ghost_client.aclose()
    await bridge.discourse_client.aclose()


def get_bridge(request: Request) -> Bridge:
    return request.app.state.bridge
