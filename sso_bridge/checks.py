"""
sso-bridge-check: verify the configuration against the live forum and publisher.

Prints one line per check and exits 1 if any fatal check fails. Forum site settings the
bridge depends on are fatal; settings that only affect profile overrides are warnings.
"""
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass

import httpx

from sso_bridge.config import MOUNT_SUFFIX, Config, ConfigError
from sso_bridge.discourse import DiscourseService
from sso_bridge.ghost import GhostService
from sso_bridge.upstream import JSON_MIME_TYPE, create_client
from sso_bridge.urls import join_url

logger = logging.getLogger(__name__)

PASS, FAIL, WARN, SKIP = "pass", "fail", "warn", "skip"
_SYMBOLS = {PASS: "✓", FAIL: "✗", WARN: "⚠", SKIP: "○"}


@dataclass(frozen=True)
class CheckResult:
    group: str
    name: str
    status: str
    message: str = ""

    def __str__(self) -> str:
        suffix = f" - {self.message}" if self.message else ""
        return f"  {_SYMBOLS[self.status]} {self.group}: {self.name}{suffix}"


@dataclass(frozen=True)
class ForumSetting:
    name: str
    value: str
    fatal: bool


def forum_settings(config: Config) -> list[ForumSetting]:
    return [
        ForumSetting("enable_discourse_connect", "true", fatal=True),
        ForumSetting("discourse_connect_url", join_url(config.admin_url, f"{MOUNT_SUFFIX}/sso"), fatal=True),
        ForumSetting("discourse_connect_secret", config.discourse_secret, fatal=True),
        ForumSetting("auth_overrides_name", "true", fatal=False),
        ForumSetting("auth_overrides_email", "true", fatal=False),
        ForumSetting("discourse_connect_overrides_avatar", "true", fatal=False),
    ]


def _matches(expected: str, actual) -> bool:
    if expected in ("true", "false"):
        return str(actual).lower() == expected
    return actual == expected


def _api_key_issue(response: httpx.Response) -> str | None:
    if response.status_code == 403:
        return "Invalid API key"
    if not response.is_success:
        return f"Unexpected response ({response.status_code})"
    content_type = response.headers.get("content-type", "[missing]")
    if JSON_MIME_TYPE not in content_type:
        return f"Unexpected content type ({content_type})"
    return None


async def check_forum(config: Config, discourse: DiscourseService) -> list[CheckResult]:
    group = "Discourse"
    try:
        issue = _api_key_issue(await discourse.request("GET", "/session/current.json"))
    except httpx.HTTPError:
        issue = "request to Discourse failed"
    results = [CheckResult(group, "API Key", FAIL if issue else PASS, issue or "")]

    settings = {}
    if issue is None:
        try:
            response = await discourse.request("GET", "/admin/site_settings.json")
        except httpx.HTTPError:
            issue = "Unable to read site settings (request to Discourse failed)"
        else:
            if response.status_code == 200:
                settings = {s["setting"]: s["value"] for s in response.json().get("site_settings") or []}
            else:
                issue = f"Unable to read site settings ({response.status_code})"
        if issue:
            results.append(CheckResult(group, "Site Settings", FAIL, issue))

    for setting in forum_settings(config):
        if issue:
            results.append(CheckResult(group, setting.name, SKIP, "API not available"))
            continue
        actual = settings.get(setting.name)
        no_pass = FAIL if setting.fatal else WARN
        if actual is None:
            results.append(CheckResult(group, setting.name, no_pass, "Not set"))
        elif not _matches(setting.value, actual):
            shown = "[hidden]" if setting.name == "discourse_connect_secret" else f"expected {setting.value}, got {actual}"
            results.append(CheckResult(group, setting.name, no_pass, shown))
        else:
            results.append(CheckResult(group, setting.name, PASS))
    return results


async def check_publisher(config: Config, ghost: GhostService, client: httpx.AsyncClient) -> list[CheckResult]:
    group = "Ghost"
    try:
        response = await client.get(ghost.resolve_admin("/ghost/api/admin/config/"), headers=ghost.admin_headers())
        issue = _api_key_issue(response)
    except httpx.HTTPError:
        issue = "request to Ghost failed"
    results = [CheckResult(group, "API Key", FAIL if issue else PASS, issue or "")]

    if config.sso_method == "jwt":
        results.append(CheckResult(group, "SSO Page", SKIP, "N/A for JWT authentication"))
    elif not config.no_auth_redirect:
        results.append(CheckResult(group, "SSO Page", SKIP, "Default page used"))
    else:
        try:
            ok = (await client.get(config.no_auth_redirect)).is_success
        except httpx.HTTPError:
            ok = False
        results.append(CheckResult(group, "SSO Page", PASS if ok else FAIL))
    return results


async def run_checks(
    config: Config,
    *,
    ghost_transport: httpx.AsyncBaseTransport | None = None,
    discourse_transport: httpx.AsyncBaseTransport | None = None,
    log_requests: bool = False,
) -> list[CheckResult]:
    ghost_client = create_client(
        "ghost", timeout=config.request_timeout, log_requests=log_requests, transport=ghost_transport
    )
    discourse_client = create_client(
        "discourse", timeout=config.request_timeout, log_requests=log_requests, transport=discourse_transport
    )
    try:
        results = await check_forum(config, DiscourseService(config, discourse_client))
        results += await check_publisher(config, GhostService(config, ghost_client), ghost_client)
    finally:
        await ghost_client.aclose()
        await discourse_client.aclose()
    return results


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check the bridge configuration against Discourse and Ghost.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log upstream requests")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format="%(levelname)s %(message)s")

    try:
        config = Config.from_env()
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    results = asyncio.run(run_checks(config, log_requests=args.verbose))
    for result in results:
        print(result)
    counts = {status: sum(1 for r in results if r.status == status) for status in _SYMBOLS}
    print(
        f"\nConfiguration check completed with {counts[PASS]} passing, {counts[WARN]} warnings, "
        f"{counts[FAIL]} failing, and {counts[SKIP]} skipped"
    )
    if counts[FAIL]:
        return 1
    print("Everything looks good!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
