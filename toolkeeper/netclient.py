"""
Proxy-aware HTTP client shared by the tool lifecycle and the dependency audit.

Proxy settings are resolved from an explicit environment snapshot plus the
``run`` section of the persisted config, so nothing here reads the process
environment directly.
"""

from __future__ import annotations

import hashlib
import http.client
import json
import logging
import random
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

from .config import RunConfig

logger = logging.getLogger(__name__)

USER_AGENT = "toolkeeper/0.1"
DEFAULT_TIMEOUT = 30
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 0.2
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

HTTPS_PROXY_VARS = ("HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy", "HTTP_PROXY", "http_proxy")
HTTP_PROXY_VARS = ("HTTP_PROXY", "http_proxy", "ALL_PROXY", "all_proxy", "HTTPS_PROXY", "https_proxy")
ALL_PROXY_VARS = ("ALL_PROXY", "all_proxy", "HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy")
NO_PROXY_VARS = ("NO_PROXY", "no_proxy")


class NetworkError(Exception):
    """Raised when a request fails after all attempts."""


class HttpStatusError(NetworkError):
    """Raised for a non-success HTTP status."""

    def __init__(self, url: str, status: int, body: str = ""):
        self.url = url
        self.status = status
        self.body = body
        detail = f": {body[:200]}" if body else ""
        super().__init__(f"GET {url} returned HTTP {status}{detail}")


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES or 500 <= status <= 599


def calculate_backoff_delay(attempt: int, base_delay: float = BACKOFF_BASE_SECONDS, max_delay: float = 5.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds with up to 20% jitter
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


def _first_non_empty(env: Mapping[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = (env.get(key) or "").strip()
        if value:
            return value
    return None


def split_no_proxy(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class ProxySettings:
    """
    Effective proxy configuration.

    Attributes:
        https: Proxy for https:// targets
        http: Proxy for http:// targets
        all: Proxy for any scheme
        no_proxy: Hosts or domain suffixes that bypass the proxy
    """
    https: str | None = None
    http: str | None = None
    all: str | None = None
    no_proxy: tuple[str, ...] = field(default_factory=tuple)

    @staticmethod
    def from_env(env: Mapping[str, str], overrides: RunConfig | None = None) -> ProxySettings:
        """
        Resolve proxy settings. Config overrides win over the environment.

        Args:
            env: Environment snapshot
            overrides: ``run`` section of the persisted config
        """
        o = overrides or RunConfig()
        https = o.https_proxy or o.all_proxy or o.http_proxy or _first_non_empty(env, HTTPS_PROXY_VARS)
        http = o.http_proxy or o.all_proxy or o.https_proxy or _first_non_empty(env, HTTP_PROXY_VARS)
        all_proxy = o.all_proxy or o.https_proxy or o.http_proxy or _first_non_empty(env, ALL_PROXY_VARS)
        no_proxy = o.no_proxy or _first_non_empty(env, NO_PROXY_VARS)
        return ProxySettings(https=https, http=http, all=all_proxy, no_proxy=split_no_proxy(no_proxy))

    def bypasses(self, host: str) -> bool:
        """Check whether host matches the no_proxy list."""
        host = host.lower().split(":", 1)[0]
        for rule in self.no_proxy:
            rule = rule.lower().lstrip(".")
            if rule == "*":
                return True
            rule_host = rule.split(":", 1)[0]
            if host == rule_host or host.endswith("." + rule_host):
                return True
        return False

    def proxy_for(self, url: str) -> str | None:
        parsed = urlparse(url)
        if parsed.hostname and self.bypasses(parsed.hostname):
            return None
        if parsed.scheme == "https":
            return self.https or self.all
        if parsed.scheme == "http":
            return self.http or self.all
        return self.all


def normalized_proxy_env(settings: ProxySettings) -> dict[str, str]:
    """
    Expand proxy settings to both upper- and lower-case variables.

    Returns:
        Variables to overlay on a child process environment
    """
    out: dict[str, str] = {}
    pairs = (
        ("HTTPS_PROXY", settings.https),
        ("HTTP_PROXY", settings.http),
        ("ALL_PROXY", settings.all),
        ("NO_PROXY", ",".join(settings.no_proxy) or None),
    )
    for name, value in pairs:
        if value:
            out[name] = value
            out[name.lower()] = value
    return out


class HttpClient:
    """
    Thin urllib wrapper with proxy routing, auth and bounded retries.

    Only http(s) proxies are honoured; SOCKS URLs are ignored with a debug
    message since urllib cannot speak SOCKS.
    """

    def __init__(
        self,
        proxies: ProxySettings | None = None,
        github_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.proxies = proxies or ProxySettings()
        self.github_token = github_token
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._openers: dict[str | None, urllib.request.OpenerDirector] = {}

    def _opener(self, url: str) -> urllib.request.OpenerDirector:
        proxy = self.proxies.proxy_for(url)
        if proxy and not proxy.startswith(("http://", "https://")):
            logger.debug(f"Ignoring unsupported proxy scheme for {url}: {proxy}")
            proxy = None
        if proxy not in self._openers:
            mapping = {"http": proxy, "https": proxy} if proxy else {}
            self._openers[proxy] = urllib.request.build_opener(urllib.request.ProxyHandler(mapping))
        return self._openers[proxy]

    def _headers(self, url: str, extra: dict[str, str] | None) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        host = urlparse(url).hostname or ""
        if host == "api.github.com":
            headers["Accept"] = "application/vnd.github+json"
            if self.github_token:
                headers["Authorization"] = f"Bearer {self.github_token}"
        if extra:
            headers.update(extra)
        return headers

    def _with_retry(self, url: str, op: Callable[[], Any]) -> Any:
        last_error: Exception | None = None
        for attempt in range(self.max_attempts):
            try:
                return op()
            except urllib.error.HTTPError as e:
                body = _read_error_body(e)
                last_error = HttpStatusError(url, e.code, body)
                if not is_retryable_status(e.code):
                    raise last_error from e
            except (urllib.error.URLError, http.client.HTTPException, TimeoutError, ConnectionError) as e:
                last_error = NetworkError(f"GET {url} failed: {getattr(e, 'reason', e)}")

            if attempt < self.max_attempts - 1:
                delay = calculate_backoff_delay(attempt)
                logger.debug(f"Retrying {url} after {delay:.2f}s ({last_error})")
                self._sleep(delay)

        assert last_error is not None
        raise last_error

    def get_json(self, url: str, headers: dict[str, str] | None = None) -> Any:
        """
        Fetch and decode a JSON document.

        Raises:
            HttpStatusError: On a non-retryable or persistent HTTP error status
            NetworkError: On transport failure or undecodable JSON
        """
        def op() -> bytes:
            req = urllib.request.Request(url, headers=self._headers(url, headers))
            with self._opener(url).open(req, timeout=self.timeout) as resp:
                return resp.read()

        raw = self._with_retry(url, op)
        try:
            return json.loads(raw)
        except ValueError as e:
            raise NetworkError(f"GET {url} returned invalid JSON: {e}") from e

    def download(self, url: str, dest: Any) -> tuple[int, str]:
        """
        Stream url into a file, hashing while writing.

        Each retry restarts both the file and the digest.

        Args:
            url: Asset URL
            dest: Destination path

        Returns:
            Tuple of (bytes written, sha256 hex digest)
        """
        def op() -> tuple[int, str]:
            req = urllib.request.Request(
                url, headers=self._headers(url, {"Accept": "application/octet-stream"})
            )
            hasher = hashlib.sha256()
            total = 0
            with self._opener(url).open(req, timeout=self.timeout) as resp, open(dest, "wb") as f:
                for chunk in iter(lambda: resp.read(65536), b""):
                    f.write(chunk)
                    hasher.update(chunk)
                    total += len(chunk)
            return total, hasher.hexdigest()

        return self._with_retry(url, op)


def _read_error_body(err: urllib.error.HTTPError) -> str:
    try:
        return err.read().decode("utf-8", errors="replace").strip()
    except Exception:
        return ""


def timeout_from_env(env: Mapping[str, str]) -> float:
    """HTTP timeout in seconds from ``TOOLKEEPER_HTTP_TIMEOUT`` (default 30)."""
    raw = (env.get("TOOLKEEPER_HTTP_TIMEOUT") or "").strip()
    if not raw:
        return DEFAULT_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid TOOLKEEPER_HTTP_TIMEOUT={raw!r}")
        return DEFAULT_TIMEOUT
    return value if value > 0 else DEFAULT_TIMEOUT
