"""
URL helpers shared by the upstream clients and the SSO redirects.
"""
import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

_SLASHES = re.compile(r"[/\\]+")


def join_path(base_path: str, relative_path: str) -> str:
    """
    Append relative_path to base_path. Repeated slashes and backslashes collapse to one '/';
    '..' is rejected in either part so a joined path never escapes its base.
    """
    if ".." in base_path:
        raise ValueError("Invalid base path")
    if ".." in relative_path:
        raise ValueError("Invalid relative path")
    root = _SLASHES.sub("/", base_path or "").rstrip("/")
    relative = _SLASHES.sub("/", relative_path)
    if relative.startswith("./"):
        relative = relative[2:]
    return f"{root}/{relative.lstrip('/')}"


def join_url(base_url: str, path: str, fragment: str = "", query: dict | None = None) -> str:
    """Resolve path under base_url's path; replaces query and fragment."""
    parsed = urlparse(base_url)
    return urlunparse(
        parsed._replace(
            path=join_path(parsed.path, path),
            query=urlencode(query) if query else "",
            fragment=fragment,
        )
    )


def with_query(url: str, params: dict[str, str]) -> str:
    """Set params on url's query string, keeping existing parameters and the fragment."""
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"
