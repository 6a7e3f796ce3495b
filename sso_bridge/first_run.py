"""
sso-bridge-sync-tiers: create a forum group for every publisher tier, once, from the command line.

Run after a fresh deployment so the tier groups exist before any staff session does.
Unmapped groups are never removed here.
"""
import argparse
import asyncio
import logging
import sys

import httpx

from sso_bridge.config import Config, ConfigError
from sso_bridge.discourse import DiscourseService
from sso_bridge.gate import ConcurrencyGate
from sso_bridge.ghost import GhostService
from sso_bridge.tier_sync import TierSyncService
from sso_bridge.upstream import UpstreamError, create_client

logger = logging.getLogger(__name__)


async def sync_tiers_once(
    config: Config,
    *,
    ghost_transport: httpx.AsyncBaseTransport | None = None,
    discourse_transport: httpx.AsyncBaseTransport | None = None,
    log_requests: bool = False,
) -> int:
    ghost_client = create_client(
        "ghost", timeout=config.request_timeout, log_requests=log_requests, transport=ghost_transport
    )
    discourse_client = create_client(
        "discourse", timeout=config.request_timeout, log_requests=log_requests, transport=discourse_transport
    )
    try:
        tier_sync = TierSyncService(
            DiscourseService(config, discourse_client, ConcurrencyGate(config.max_discourse_concurrency)),
            GhostService(config, ghost_client),
        )
        return await tier_sync.sync_tiers_to_groups(remove_unmapped=False)
    finally:
        await ghost_client.aclose()
        await discourse_client.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create a Discourse group for every Ghost tier.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log upstream requests")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    try:
        config = Config.from_env()
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    try:
        asyncio.run(sync_tiers_once(config, log_requests=args.verbose))
    except (UpstreamError, httpx.HTTPError) as e:
        logger.error("Failed syncing tiers: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
