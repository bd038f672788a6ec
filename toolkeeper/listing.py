"""
Installed tool listing with optional concurrent update checks.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable

from .cache import TtlCache
from .common import auto_jobs, normalize_jobs
from .download import resolve_latest_version
from .errors import KeeperError, StoreCorrupt
from .netclient import HttpClient
from .policy import TOOL_POLICIES, ToolPolicy, find_policy, normalize_version
from .probe import command_candidates, find_executable_in_dir, probe_version
from .store import ArtifactStore
from .table import truncate

logger = logging.getLogger(__name__)

UPDATE_CACHE_FILE = "tool-latest-cache-v1.json"
UPDATE_CACHE_TTL_SECONDS = 600
UPDATE_JOBS_MULTIPLIER = 2
UPDATE_JOBS_MIN = 2
UPDATE_JOBS_MAX = 8

STATUS_LATEST = "latest"
STATUS_UNSUPPORTED = "n/a"
STATUS_CHECK_FAILED = "check-failed"


def default_update_jobs() -> int:
    return auto_jobs(UPDATE_JOBS_MULTIPLIER, UPDATE_JOBS_MIN, UPDATE_JOBS_MAX)


@dataclass(frozen=True)
class LatestCheck:
    """
    Result of one upstream lookup.

    Exactly one of ``version`` / ``error`` is set, unless the tool is
    unsupported, in which case both are None.
    """
    version: str | None = None
    error: str | None = None


UNSUPPORTED = LatestCheck()


def list_update_status(installed_version: str, latest: LatestCheck) -> str:
    if latest.error is not None:
        return STATUS_CHECK_FAILED
    if latest.version is None:
        return STATUS_UNSUPPORTED
    if normalize_version(installed_version) == normalize_version(latest.version):
        return STATUS_LATEST
    return f"update -> {latest.version}"


@dataclass(frozen=True)
class ToolListRow:
    name: str
    version: str
    active: bool
    source: str
    update: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "active": self.active,
            "source": self.source,
            "update": self.update,
        }


@dataclass(frozen=True)
class UnmanagedBinary:
    """An executable in the bin dir that matches a policy but is not in the store."""
    name: str
    version: str
    path: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version, "path": self.path}


@dataclass
class ToolListReport:
    """
    Everything ``tool list`` prints.

    Attributes:
        scope: Scope name ("system" or "user")
        bin_path: Tool binaries directory
        rows: One row per installed version, sorted by name then newest version
        unmanaged: Unmanaged binaries detected in the bin dir
        check_failures: (tool, error) for failed update checks
        has_updates: Whether any installed version is behind upstream
        checked_updates: Whether update checks were requested
    """
    scope: str
    bin_path: str
    rows: list[ToolListRow] = field(default_factory=list)
    unmanaged: list[UnmanagedBinary] = field(default_factory=list)
    check_failures: list[tuple[str, str]] = field(default_factory=list)
    has_updates: bool = False
    checked_updates: bool = False

    @property
    def has_check_failures(self) -> bool:
        return bool(self.check_failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "tool_binaries_path": self.bin_path,
            "rows": [row.to_dict() for row in self.rows],
            "unmanaged": [item.to_dict() for item in self.unmanaged],
            "update_check_warnings": [f"{name}: {err}" for name, err in self.check_failures],
            "has_updates": self.has_updates,
            "has_check_failures": self.has_check_failures,
        }


def collect_unmanaged_binaries(store: ArtifactStore) -> list[UnmanagedBinary]:
    """Policy tools present in the bin dir without any stored version."""
    managed = set(store.managed_names())
    out: list[UnmanagedBinary] = []
    for policy in TOOL_POLICIES:
        if policy.name in managed:
            continue
        path = find_executable_in_dir(store.paths.bin_dir, command_candidates(policy.name))
        if path is None:
            continue
        out.append(UnmanagedBinary(
            name=policy.name,
            version=probe_version(path) or "unknown",
            path=str(path),
        ))
    return sorted(out, key=lambda item: item.name)


def fetch_latest_checks(
    policies: list[ToolPolicy],
    client: HttpClient,
    jobs: int | None = None,
    resolver: Callable[[ToolPolicy, HttpClient], str] = resolve_latest_version,
) -> dict[str, LatestCheck]:
    """
    Look up latest releases concurrently.

    A failed lookup becomes an error entry; it never aborts the others.

    Returns:
        Canonical name -> LatestCheck
    """
    if not policies:
        return {}
    workers = normalize_jobs(jobs or default_update_jobs(), len(policies))
    results: dict[str, LatestCheck] = {}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_policy = {executor.submit(resolver, p, client): p for p in policies}
        for future in as_completed(future_to_policy):
            policy = future_to_policy[future]
            try:
                results[policy.name] = LatestCheck(version=future.result())
            except KeeperError as e:
                results[policy.name] = LatestCheck(error=e.message)
            except Exception as e:
                results[policy.name] = LatestCheck(error=str(e) or type(e).__name__)
    return results


def resolve_latest_checks(
    names: list[str],
    client: HttpClient,
    cache: TtlCache | None = None,
    jobs: int | None = None,
) -> dict[str, LatestCheck]:
    """
    Latest-release status for installed tool names, using the cache when fresh.

    Returns:
        Installed name -> LatestCheck (UNSUPPORTED for names without a policy)
    """
    cache = cache or TtlCache(None)
    by_canonical: dict[str, LatestCheck] = {}
    tasks: list[ToolPolicy] = []
    seen: set[str] = set()
    for name in names:
        policy = find_policy(name)
        if policy is None or policy.name in seen:
            continue
        seen.add(policy.name)
        cached = cache.get(policy.name, UPDATE_CACHE_TTL_SECONDS)
        if isinstance(cached, dict) and cached.get("latest_version"):
            by_canonical[policy.name] = LatestCheck(version=str(cached["latest_version"]))
        else:
            tasks.append(policy)

    for canonical, check in fetch_latest_checks(tasks, client, jobs).items():
        if check.version is not None:
            cache.put(canonical, {"latest_version": check.version})
        by_canonical[canonical] = check
    cache.save_if_dirty()

    out: dict[str, LatestCheck] = {}
    for name in names:
        policy = find_policy(name)
        out[name] = by_canonical.get(policy.name, UNSUPPORTED) if policy else UNSUPPORTED
    return out


def build_tool_list(
    store: ArtifactStore,
    check_updates: bool = False,
    client: HttpClient | None = None,
    cache: TtlCache | None = None,
    jobs: int | None = None,
) -> ToolListReport:
    """
    Build the listing for one scope.

    Args:
        store: Store of the resolved scope
        check_updates: Query upstream for newer releases
        client: HTTP client (required when check_updates is set)
        cache: Latest-version cache
        jobs: Worker count for update checks
    """
    names = store.managed_names()
    latest: dict[str, LatestCheck] = {}
    if check_updates:
        latest = resolve_latest_checks(names, client or HttpClient(), cache, jobs)

    report = ToolListReport(
        scope=store.scope_label,
        bin_path=str(store.paths.bin_dir),
        unmanaged=collect_unmanaged_binaries(store),
        checked_updates=check_updates,
    )
    for name in names:
        active = store.read_pointer(name)
        try:
            store.get_active(name)
        except StoreCorrupt as e:
            logger.warning(e.message)
        check = latest.get(name)
        if check is not None and check.error is not None:
            report.check_failures.append((name, truncate(check.error, 120)))

        for installed in store.list_versions(name):
            update = None
            if check is not None:
                update = list_update_status(installed.version, check)
                if update.startswith("update ->"):
                    report.has_updates = True
            report.rows.append(ToolListRow(
                name=name,
                version=installed.version,
                active=installed.version == active,
                source=installed.source_kind,
                update=update,
            ))
    return report
