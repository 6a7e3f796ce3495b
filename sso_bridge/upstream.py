"""
Shared httpx client setup for the two upstream REST services (publisher and forum).
"""
import logging
import time
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx

logger = logging.getLogger(__name__)

JSON_MIME_TYPE = "application/json"


class UpstreamError(Exception):
    """An upstream service answered with something we cannot use. Details are for logs only."""

    def __init__(self, service: str, message: str, status: int | None = None, details=None):
        self.service = service
        self.status = status
        self.details = details
        super().__init__(f"[{service}] {message}" + (f" ({status})" if status is not None else ""))


def _no_cookies() -> CookieJar:
    # Each request forwards the caller's cookie explicitly; nothing may leak between members
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def create_client(
    service: str,
    *,
    timeout: float,
    log_requests: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Async client with a hard per-request timeout and optional request logging."""
    event_hooks = {}
    if log_requests:

        async def on_request(request: httpx.Request) -> None:
            request.extensions["started_at"] = time.monotonic()

        async def on_response(response: httpx.Response) -> None:
            request = response.request
            started_at = request.extensions.get("started_at", time.monotonic())
            logger.info(
                "[%s:fetch] %s %s %d in %dms",
                service,
                request.method,
                request.url.copy_with(query=None),
                response.status_code,
                (time.monotonic() - started_at) * 1000,
            )

        event_hooks = {"request": [on_request], "response": [on_response]}

    return httpx.AsyncClient(
        timeout=timeout,
        cookies=_no_cookies(),
        event_hooks=event_hooks,
        transport=transport,
        follow_redirects=False,
    )


def read_json(response: httpx.Response):
    """Response body as JSON, or the raw text when it isn't JSON."""
    try:
        return response.json()
    except ValueError:
        return response.text
