"""
Bridge configuration, read once from DOG_* environment variables.
The resulting Config is passed to every component; nothing reads os.environ after startup.
Validation errors name the variable, never its value.
"""
import logging
import os
import re
import secrets
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlparse

from sso_bridge.urls import join_path, join_url

logger = logging.getLogger(__name__)

SSO_METHODS = ("session", "jwt")
DELETE_ACTIONS = ("none", "sync", "suspend", "anonymize", "delete")
WEBHOOK_SECRET_VERSIONS = ("1", "2")

# Where the publisher proxies the bridge (publisher URL path + this suffix)
MOUNT_SUFFIX = "/ghost/api/external_discourse_on_ghost"

DEFAULT_PORT = 3286
DEFAULT_DISCOURSE_API_USER = "system"
DEFAULT_MAX_DISCOURSE_CONCURRENCY = 3
DEFAULT_QUEUE_DELAY_MS = 1000
DEFAULT_REQUEST_TIMEOUT = 10.0

_GHOST_ADMIN_KEY = re.compile(r"^[\da-f]{24}:[\da-f]{64}$")
_DISCOURSE_API_KEY = re.compile(r"^[\da-f]{64}$")


class ConfigError(Exception):
    """One or more configuration variables are missing or invalid."""

    def __init__(self, keys: list[str]):
        self.keys = keys
        noun = "key was" if len(keys) == 1 else "keys were"
        super().__init__(f"{len(keys)} config {noun} invalid: {', '.join(keys)}")


class _EnvReader:
    """Coerces raw environment strings, collecting every failure instead of stopping at the first."""

    def __init__(self, environ: Mapping[str, str]):
        self._environ = environ
        self.failures: list[str] = []

    def _raw(self, key: str) -> str | None:
        value = self._environ.get(key)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def _fail(self, key: str, reason: str, suggestion: str | None = None) -> None:
        logger.error("%s is not valid: %s", key, reason)
        if suggestion:
            logger.info('Suggestion: %s="%s"', key, suggestion)
        self.failures.append(key)

    def string(
        self,
        key: str,
        default: str | None = None,
        *,
        required: bool = False,
        pattern: re.Pattern | None = None,
        min_length: int = 0,
        suggestion: str | None = None,
    ) -> str | None:
        value = self._raw(key)
        if value is None:
            if required:
                self._fail(key, "This is a required variable", suggestion)
            return default
        if pattern is not None and not pattern.match(value):
            self._fail(key, f"Must match {pattern.pattern}", suggestion)
            return default
        if len(value) < min_length:
            self._fail(key, f"Must be at least {min_length} characters", suggestion)
            return default
        return value

    def url(self, key: str, default: str | None = None, *, required: bool = False) -> str | None:
        value = self._raw(key)
        if value is None:
            if required:
                self._fail(key, "This is a required variable")
            return default
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            self._fail(key, "Must be a URL")
            return default
        return value

    def boolean(self, key: str, default: bool) -> bool:
        value = self._raw(key)
        if value is None:
            return default
        return value.lower() == "true" or value == "1"

    def integer(self, key: str, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
        value = self._raw(key)
        if value is None:
            return default
        try:
            number = int(value)
        except ValueError:
            self._fail(key, "Must be a whole number")
            return default
        if minimum is not None and number < minimum:
            self._fail(key, f"Must be at least {minimum}")
            return default
        if maximum is not None and number > maximum:
            self._fail(key, f"Must be at most {maximum}")
            return default
        return number

    def number(self, key: str, default: float) -> float:
        value = self._raw(key)
        if value is None:
            return default
        try:
            number = float(value)
        except ValueError:
            self._fail(key, "Must be a number")
            return default
        if number <= 0:
            self._fail(key, "Must be greater than 0")
            return default
        return number

    def choice(self, key: str, default: str, choices: tuple[str, ...]) -> str:
        value = self._raw(key)
        if value is None:
            return default
        if value not in choices:
            self._fail(key, f"Must be {', '.join(choices)}")
            return default
        return value


@dataclass(frozen=True)
class Config:
    discourse_secret: str
    discourse_url: str
    discourse_api_key: str
    ghost_url: str
    ghost_api_key: str
    hostname: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    discourse_api_user: str = DEFAULT_DISCOURSE_API_USER
    ghost_admin_url: str | None = None
    log_discourse_requests: bool = False
    log_ghost_requests: bool = False
    enable_ghost_webhooks: bool = False
    ghost_webhooks_secret_version: str = "2"
    ghost_member_updated_route: str = "member-updated"
    ghost_member_updated_secret: str | None = None
    ghost_member_deleted_route: str = "member-deleted"
    ghost_member_deleted_secret: str | None = None
    ghost_member_delete_discourse_action: str = "none"
    sso_method: str = "session"
    no_auth_redirect: str | None = None
    jwt_ghost_sso_path: str = "/"
    max_discourse_concurrency: int = DEFAULT_MAX_DISCOURSE_CONCURRENCY
    queue_delay_ms: int = DEFAULT_QUEUE_DELAY_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    webhook_max_age_seconds: int = 0
    log_level: str = "INFO"

    @property
    def admin_url(self) -> str:
        return self.ghost_admin_url or self.ghost_url

    @property
    def mounted_base_path(self) -> str:
        """Path prefix every bridge route is served under, e.g. /ghost/api/external_discourse_on_ghost."""
        return join_path(urlparse(self.ghost_url).path, MOUNT_SUFFIX)

    @property
    def mounted_public_url(self) -> str:
        return join_url(self.ghost_url, MOUNT_SUFFIX)

    @property
    def login_url(self) -> str:
        """Where an unauthenticated member is sent in session mode."""
        return self.no_auth_redirect or join_url(self.ghost_url, "/", fragment="/portal/account")

    @property
    def queue_delay(self) -> float:
        return self.queue_delay_ms / 1000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """
        Build Config from DOG_* variables. Every invalid key is logged; raises ConfigError
        naming all of them if any failed.
        """
        env = _EnvReader(os.environ if environ is None else environ)
        config = cls(
            hostname=env.string("DOG_HOSTNAME", "127.0.0.1"),
            port=env.integer("DOG_PORT", DEFAULT_PORT, minimum=0, maximum=65535),
            discourse_secret=env.string(
                "DOG_DISCOURSE_SHARED_SECRET",
                "",
                required=True,
                min_length=8,
                suggestion=secrets.token_hex(16),
            ),
            discourse_url=env.url("DOG_DISCOURSE_URL", "", required=True),
            discourse_api_key=env.string("DOG_DISCOURSE_API_KEY", "", required=True, pattern=_DISCOURSE_API_KEY),
            discourse_api_user=env.string("DOG_DISCOURSE_API_USER", DEFAULT_DISCOURSE_API_USER),
            ghost_url=env.url("DOG_GHOST_URL", "", required=True),
            ghost_admin_url=env.url("DOG_GHOST_ADMIN_URL"),
            ghost_api_key=env.string("DOG_GHOST_ADMIN_TOKEN", "", required=True, pattern=_GHOST_ADMIN_KEY),
            log_discourse_requests=env.boolean("DOG_LOG_DISCOURSE_REQUESTS", False),
            log_ghost_requests=env.boolean("DOG_LOG_GHOST_REQUESTS", False),
            enable_ghost_webhooks=env.boolean("DOG_GHOST_MEMBER_WEBHOOKS_ENABLED", False),
            # Checked per request so a bad value surfaces as a 500 on the webhook, not a boot failure
            ghost_webhooks_secret_version=env.string("DOG_GHOST_MEMBER_WEBHOOKS_SECRET_VERSION", "2"),
            ghost_member_updated_route=env.string("DOG_GHOST_MEMBER_UPDATED_WEBHOOK_ID", secrets.token_hex(12)),
            ghost_member_updated_secret=env.string("DOG_GHOST_MEMBER_UPDATED_WEBHOOK_SECRET"),
            ghost_member_deleted_route=env.string("DOG_GHOST_MEMBER_DELETED_WEBHOOK_ID", secrets.token_hex(12)),
            ghost_member_deleted_secret=env.string("DOG_GHOST_MEMBER_DELETED_WEBHOOK_SECRET"),
            ghost_member_delete_discourse_action=env.choice(
                "DOG_GHOST_MEMBER_DELETE_DISCOURSE_ACTION", "none", DELETE_ACTIONS
            ),
            sso_method=env.choice("DOG_DISCOURSE_SSO_TYPE", "session", SSO_METHODS),
            no_auth_redirect=env.url("DOG_SSO_NO_AUTH_REDIRECT"),
            jwt_ghost_sso_path=env.string("DOG_JWT_GHOST_SSO_PAGE", "/"),
            max_discourse_concurrency=env.integer(
                "DOG_DISCOURSE_MAX_CONCURRENCY", DEFAULT_MAX_DISCOURSE_CONCURRENCY, minimum=1
            ),
            queue_delay_ms=env.integer("DOG_QUEUE_DELAY_MS", DEFAULT_QUEUE_DELAY_MS, minimum=0),
            request_timeout=env.number("DOG_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT),
            webhook_max_age_seconds=env.integer("DOG_GHOST_WEBHOOK_MAX_AGE_SECONDS", 0, minimum=0),
            log_level=env.choice(
                "DOG_LOG_LEVEL", "INFO", ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
            ),
        )
        if env.failures:
            raise ConfigError(env.failures)
        return config
