"""
Tool lifecycle: install, update, use, uninstall and sync.

Per (tool, scope) a tool moves from absent to one installed and active
version, then possibly to several installed versions with one active.
Removing the last version brings it back to absent. Every mutation runs
under the store lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .common import vlog
from .download import fetch_artifact, resolve_latest_version
from .errors import KeeperError, ManifestParseError, StoreCorrupt, VersionNotFound
from .netclient import HttpClient
from .policy import ToolRef, ToolSpec, detect_platform, get_policy
from .probe import command_candidates, find_executable_in_dir, probe_version
from .store import SOURCE_ADOPTED, ArtifactStore, InstalledVersion

logger = logging.getLogger(__name__)

DEFAULT_SYNC_FILE = "toolkeeper.tools.yml"


@dataclass(frozen=True)
class AdoptionCandidate:
    """An unmanaged executable recognized as a tool."""
    path: Path
    version: str


@dataclass(frozen=True)
class InstallResult:
    """
    Outcome of install or update.

    Attributes:
        tool: Resolved tool reference
        installed: Stored version metadata
        outcome: "installed", "adopted" or "already-installed"
        activated: Whether the active pointer now targets this version
        previous_active: Version active before the operation
        pruned: Versions removed after an update
        prune_failures: (version, error) pairs for versions that could not be removed
    """
    tool: ToolRef
    installed: InstalledVersion
    outcome: str
    activated: bool
    previous_active: str | None = None
    pruned: tuple[str, ...] = ()
    prune_failures: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": str(self.tool),
            "installed": self.installed.to_dict(),
            "outcome": self.outcome,
            "activated": self.activated,
            "previous_active": self.previous_active,
            "pruned": list(self.pruned),
            "prune_failures": [{"version": v, "error": e} for v, e in self.prune_failures],
        }


@dataclass(frozen=True)
class UninstallResult:
    name: str
    removed: tuple[str, ...]
    cleared_active: bool


@dataclass
class SyncResult:
    """Per-spec outcome of a sync run."""
    succeeded: list[InstallResult] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def load_sync_specs(path: Path) -> list[str]:
    """
    Read tool specs from a YAML sync manifest.

    Expected shape::

        tools:
          - codex
          - rg:14.1.1

    Specs are canonicalized and deduplicated, keeping first-seen order.

    Raises:
        ManifestParseError: If the file is unreadable, malformed or empty
    """
    location = str(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ManifestParseError(f"cannot read sync manifest: {e}", location) from e
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            location = f"{path}:{mark.line + 1}:{mark.column + 1}"
        raise ManifestParseError(f"invalid YAML: {e}", location) from e

    tools = data.get("tools") if isinstance(data, dict) else None
    if not isinstance(tools, list) or not tools:
        raise ManifestParseError(
            "expected a non-empty `tools` list, e.g. `tools: [codex, docker-compose]`",
            location,
        )

    specs: list[str] = []
    seen: set[str] = set()
    for index, raw in enumerate(tools):
        if not isinstance(raw, str) or not raw.strip():
            raise ManifestParseError("empty or non-string tool spec", f"{path}:tools[{index}]")
        try:
            normalized = str(ToolSpec.parse(raw))
        except KeeperError as e:
            raise ManifestParseError(e.message, f"{path}:tools[{index}]") from e
        if normalized not in seen:
            seen.add(normalized)
            specs.append(normalized)
    return specs


class ToolManager:
    """
    Lifecycle operations for one scope.

    Args:
        store: Artifact store of the resolved scope
        client: HTTP client for release lookups and downloads
        platform_key: Target platform (detected when omitted)
        verbose: Enable verbose progress messages
    """

    def __init__(
        self,
        store: ArtifactStore,
        client: HttpClient,
        platform_key: str | None = None,
        verbose: bool = False,
    ):
        self.store = store
        self.client = client
        self.platform_key = platform_key or detect_platform()
        self.verbose = verbose

    # Public operations

    def install(self, spec_text: str) -> InstallResult:
        """
        Install a tool, adopting an existing unmanaged binary when possible.

        Installing an already-present version is a no-op success. The new
        version becomes active only when the tool had no active version.
        """
        spec = ToolSpec.parse(spec_text)
        with self.store.lock():
            return self._install(spec, update=False)

    def update(self, spec_text: str) -> InstallResult:
        """
        Move a tool to the latest (or requested) version and prune the rest.

        Prune failures are reported on the result and never fail the update.
        """
        spec = ToolSpec.parse(spec_text)
        with self.store.lock():
            return self._install(spec, update=True)

    def use(self, ref_text: str) -> InstalledVersion:
        """
        Activate an installed version.

        Raises:
            VersionNotFound: If the version is not installed
        """
        ref = ToolRef.parse(ref_text)
        with self.store.lock():
            installed = self.store.set_active(ref.name, ref.version)
        logger.info(f"Active version set: {ref} (bin: {self.store.bin_path(ref.name)})")
        return installed

    def uninstall(self, spec_text: str) -> UninstallResult:
        """
        Remove one version, or all versions when none is given.

        Removing the active version clears the pointer and the bin entry.

        Raises:
            VersionNotFound: If nothing matching is installed
        """
        spec = ToolSpec.parse(spec_text)
        with self.store.lock():
            active = self.store.read_pointer(spec.name)
            if spec.version is not None:
                self.store.remove_version(spec.name, spec.version, clear_active=True)
                removed: tuple[str, ...] = (spec.version,)
                cleared = active == spec.version
            else:
                removed = tuple(self.store.remove_all(spec.name))
                cleared = active is not None
                if not removed and not cleared:
                    raise VersionNotFound(
                        f"`{spec.name}` is not installed in {self.store.scope_label} scope"
                    )
        for version in removed:
            logger.info(f"Removed {spec.name}:{version}")
        if cleared:
            logger.info(f"Cleared active version of `{spec.name}`")
        return UninstallResult(name=spec.name, removed=removed, cleared_active=cleared)

    def sync(self, manifest: Path) -> SyncResult:
        """Update every tool listed in a sync manifest, collecting failures."""
        specs = load_sync_specs(manifest)
        logger.info(f"Syncing {len(specs)} tool(s) from {manifest}")
        result = SyncResult()
        for index, spec in enumerate(specs, start=1):
            vlog(f"[{index}/{len(specs)}] {spec}", self.verbose)
            try:
                result.succeeded.append(self.update(spec))
            except (KeeperError, OSError) as e:
                message = e.message if isinstance(e, KeeperError) else str(e)
                logger.error(f"{spec}: {message}")
                result.failures.append((spec, message))
        return result

    # Internals

    def _active_version(self, name: str) -> str | None:
        try:
            active = self.store.get_active(name)
        except StoreCorrupt as e:
            logger.warning(f"{e.message}; the new version will be activated")
            return None
        return active.version if active else None

    def _adoption_candidate(self, spec: ToolSpec) -> AdoptionCandidate | None:
        if spec.version is not None or self.store.list_versions(spec.name):
            return None
        path = find_executable_in_dir(self.store.paths.bin_dir, command_candidates(spec.name))
        if path is None:
            return None
        version = probe_version(path)
        if version is None:
            logger.info(f"Found {path} but cannot determine its version; it will not be adopted")
            return None
        return AdoptionCandidate(path=path, version=version)

    def _resolve_version(self, spec: ToolSpec, adoption: AdoptionCandidate | None) -> str:
        if spec.version is not None:
            return spec.version
        if adoption is not None:
            return adoption.version
        policy = get_policy(spec.name)
        vlog(f"Resolving latest release for `{policy.name}`...", self.verbose)
        return resolve_latest_version(policy, self.client)

    def _install(self, spec: ToolSpec, update: bool) -> InstallResult:
        adoption = None if update else self._adoption_candidate(spec)
        version = self._resolve_version(spec, adoption)
        tool = spec.resolve(version)
        previous = self._active_version(tool.name)

        if self.store.has_version(tool.name, version):
            installed = self.store.ensure_manifest(tool.name, version)
            outcome = "already-installed"
            if previous == version:
                logger.info(f"`{tool.name}` is already at {version}")
            else:
                logger.info(f"Already installed: {tool}")
        elif adoption is not None and adoption.version == version:
            installed = self.store.write_version(
                tool.name, version, adoption.path, SOURCE_ADOPTED, f"existing binary {adoption.path}"
            )
            outcome = "adopted"
            logger.info(f"Adopted {tool} from {adoption.path}")
        else:
            policy = get_policy(tool.name)
            if update and previous:
                logger.info(f"Updating `{tool.name}`: {previous} -> {version}")
            with fetch_artifact(policy, version, self.platform_key, self.client, self.verbose) as artifact:
                installed = self.store.write_version(
                    tool.name, version, artifact.path, artifact.source_kind, artifact.source_detail
                )
            outcome = "installed"
            logger.info(f"Installed {tool} from {installed.source_detail}")

        activated = previous == version
        if update or previous is None:
            installed = self.store.set_active(tool.name, version)
            activated = True
            logger.info(f"Active version set: {tool} (bin: {self.store.bin_path(tool.name)})")
        elif outcome != "already-installed":
            logger.info(f"Run `keeper tool use {tool}` to activate it")

        pruned: list[str] = []
        failures: list[tuple[str, str]] = []
        if update:
            pruned, failures = self._prune_except(tool.name, version)

        return InstallResult(
            tool=tool,
            installed=installed,
            outcome=outcome,
            activated=activated,
            previous_active=previous,
            pruned=tuple(pruned),
            prune_failures=tuple(failures),
        )

    def _prune_except(self, name: str, keep: str) -> tuple[list[str], list[tuple[str, str]]]:
        removed: list[str] = []
        failures: list[tuple[str, str]] = []
        for installed in self.store.list_versions(name):
            if installed.version == keep:
                continue
            try:
                self.store.remove_version(name, installed.version)
            except (KeeperError, OSError) as e:
                message = e.message if isinstance(e, KeeperError) else str(e)
                logger.warning(f"Could not remove {name}:{installed.version}: {message}")
                failures.append((installed.version, message))
            else:
                removed.append(installed.version)
        if removed:
            logger.info(f"Removed old versions of `{name}`: {', '.join(removed)}")
        return removed, failures
