"""
Maintenance signal collection for the dependency audit.

Queries crates.io for release data and GitHub for repository activity.
Lookups go through a TTL cache; GitHub lookups are also memoized for the
lifetime of one SignalClient, and a 403 from GitHub stops further GitHub
calls in the same run.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from .cache import TtlCache
from .errors import RegistryQueryFailed
from .netclient import HttpClient, HttpStatusError, NetworkError

logger = logging.getLogger(__name__)

CRATES_API = "https://crates.io/api/v1/crates"
GITHUB_API = "https://api.github.com"

DEPS_CACHE_FILE = "deps-cache-v1.json"
CRATES_TTL_SECONDS = 6 * 60 * 60
GITHUB_TTL_SECONDS = 60 * 60

GITHUB_BLOCKED_MESSAGE = "skipped after GitHub API 403 (set GITHUB_TOKEN for stable quota)"

STD_ALTERNATIVES = {
    "once_cell": "std::sync::LazyLock / OnceLock",
    "is-terminal": "std::io::IsTerminal",
}

_GITHUB_URL_RE = re.compile(
    r"^(?:https?://|git\+https://|ssh://git@|git://)?(?:www\.)?github\.com[/:]([^/]+)/([^/]+)",
    re.IGNORECASE,
)
_GITHUB_SCP_RE = re.compile(r"^git@github\.com:([^/]+)/([^/]+)", re.IGNORECASE)


@dataclass(frozen=True)
class CrateInfo:
    """Release data of one crate from crates.io."""
    latest_version: str | None = None
    updated_at: str | None = None
    latest_release_at: str | None = None
    repository: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "latest_version": self.latest_version,
            "updated_at": self.updated_at,
            "latest_release_at": self.latest_release_at,
            "repository": self.repository,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CrateInfo:
        return CrateInfo(
            latest_version=data.get("latest_version"),
            updated_at=data.get("updated_at"),
            latest_release_at=data.get("latest_release_at"),
            repository=data.get("repository"),
        )


@dataclass(frozen=True)
class GithubRepoInfo:
    """Activity data of one GitHub repository."""
    stars: int | None = None
    archived: bool | None = None
    pushed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"stars": self.stars, "archived": self.archived, "pushed_at": self.pushed_at}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> GithubRepoInfo:
        return GithubRepoInfo(
            stars=data.get("stars"),
            archived=data.get("archived"),
            pushed_at=data.get("pushed_at"),
        )


def std_alternative(name: str) -> str | None:
    return STD_ALTERNATIVES.get(name)


def github_repo_from_url(url: str | None) -> tuple[str, str] | None:
    """
    Extract (owner, repo) from a GitHub repository URL.

    Accepts https, ssh and scp-like (``git@github.com:owner/repo``) forms;
    strips ``.git``, query strings and fragments.

    Returns:
        Tuple of (owner, repo), or None for non-GitHub URLs
    """
    if not url:
        return None
    text = url.strip().split("?", 1)[0].split("#", 1)[0].rstrip("/")
    match = _GITHUB_SCP_RE.match(text) or _GITHUB_URL_RE.match(text)
    if not match:
        return None
    owner, repo = match.group(1), match.group(2)
    if repo.endswith(".git"):
        repo = repo[:-4]
    if not owner or not repo:
        return None
    return owner, repo


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp, returning None when it is absent or invalid."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def age_days(value: str | None, now: datetime | None = None) -> int | None:
    """Whole days between a timestamp and now (never negative)."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    now = now or datetime.now(timezone.utc)
    return max(0, (now - parsed).days)


def _describe(err: Exception) -> str:
    if isinstance(err, HttpStatusError):
        return f"HTTP {err.status}"
    return str(err) or type(err).__name__


class SignalClient:
    """
    Fetches maintenance signals, safe to share between worker threads.

    Args:
        client: HTTP client (carries the GitHub token and proxies)
        cache: TTL cache for crates.io and GitHub responses
    """

    def __init__(self, client: HttpClient, cache: TtlCache | None = None):
        self.client = client
        self.cache = cache or TtlCache(None)
        self._github_blocked = threading.Event()
        self._memo_lock = threading.Lock()
        self._github_memo: dict[str, GithubRepoInfo | str] = {}

    @property
    def github_blocked(self) -> bool:
        return self._github_blocked.is_set()

    def crate_info(self, name: str) -> CrateInfo:
        """
        Latest release data for a crate.

        Raises:
            RegistryQueryFailed: If crates.io cannot be queried
        """
        key = f"crates:{name}"
        cached = self.cache.get(key, CRATES_TTL_SECONDS)
        if isinstance(cached, dict):
            return CrateInfo.from_dict(cached)

        try:
            payload = self.client.get_json(f"{CRATES_API}/{quote(name, safe='')}")
        except NetworkError as e:
            raise RegistryQueryFailed(_describe(e)) from e

        crate = payload.get("crate") if isinstance(payload, dict) else None
        if not isinstance(crate, dict):
            raise RegistryQueryFailed("unexpected crates.io payload")

        latest = crate.get("max_stable_version") or crate.get("max_version")
        released = None
        for version in payload.get("versions") or []:
            if isinstance(version, dict) and version.get("num") == latest:
                released = version.get("created_at")
                break
        info = CrateInfo(
            latest_version=latest,
            updated_at=crate.get("updated_at"),
            latest_release_at=released or crate.get("updated_at"),
            repository=crate.get("repository"),
        )
        self.cache.put(key, info.to_dict())
        logger.debug(f"crates.io {name}: {latest}")
        return info

    def github_repo(self, owner: str, repo: str) -> GithubRepoInfo:
        """
        Activity data for a GitHub repository.

        Raises:
            RegistryQueryFailed: If GitHub cannot be queried or was blocked earlier in this run
        """
        key = f"github:{owner.lower()}/{repo.lower()}"
        with self._memo_lock:
            memo = self._github_memo.get(key)
        if isinstance(memo, GithubRepoInfo):
            return memo
        if isinstance(memo, str):
            raise RegistryQueryFailed(memo)

        cached = self.cache.get(key, GITHUB_TTL_SECONDS)
        if isinstance(cached, dict):
            info = GithubRepoInfo.from_dict(cached)
            self._remember(key, info)
            return info

        if self.github_blocked:
            raise RegistryQueryFailed(GITHUB_BLOCKED_MESSAGE)

        try:
            payload = self.client.get_json(f"{GITHUB_API}/repos/{owner}/{repo}")
        except NetworkError as e:
            if isinstance(e, HttpStatusError) and e.status == 403:
                if not self._github_blocked.is_set():
                    logger.warning("GitHub API returned 403; skipping remaining GitHub lookups")
                self._github_blocked.set()
            message = _describe(e)
            self._remember(key, message)
            raise RegistryQueryFailed(message) from e

        if not isinstance(payload, dict):
            message = "unexpected GitHub payload"
            self._remember(key, message)
            raise RegistryQueryFailed(message)

        stars = payload.get("stargazers_count")
        archived = payload.get("archived")
        info = GithubRepoInfo(
            stars=stars if isinstance(stars, int) else None,
            archived=archived if isinstance(archived, bool) else None,
            pushed_at=payload.get("pushed_at"),
        )
        self.cache.put(key, info.to_dict())
        self._remember(key, info)
        return info

    def _remember(self, key: str, value: GithubRepoInfo | str) -> None:
        with self._memo_lock:
            self._github_memo[key] = value

    def save_cache(self) -> None:
        self.cache.save_if_dirty()
