"""
Run resolution: find a tool's executable and launch it with normalized proxies.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Mapping, Sequence

from .common import is_executable_file
from .config import RunConfig
from .errors import KeeperError, StoreCorrupt, ToolNotFound
from .netclient import ProxySettings, normalized_proxy_env
from .policy import canonical_tool_name
from .scope import Scope, paths_for_scope
from .store import ArtifactStore

logger = logging.getLogger(__name__)


def _managed_executable(store: ArtifactStore, name: str) -> Path | None:
    version = store.read_pointer(name)
    if version is None:
        return None
    executable = store.binary_path(name, version)
    if not is_executable_file(executable):
        raise StoreCorrupt(
            f"active `{name}` version `{version}` in {store.scope_label} scope points to "
            f"missing executable `{executable}`",
            remediation=f"repair with `keeper tool update {name}`",
        )
    return executable


def find_in_path(name: str, env: Mapping[str, str]) -> Path | None:
    """Search the executable search path of an environment snapshot."""
    direct = Path(name)
    if len(direct.parts) > 1:
        return direct if is_executable_file(direct) else None
    for directory in (env.get("PATH") or "").split(os.pathsep):
        if not directory:
            continue
        candidate = Path(directory) / name
        if is_executable_file(candidate):
            return candidate
    return None


def resolve_executable(name: str, env: Mapping[str, str]) -> Path:
    """
    Resolve a tool name to an executable.

    Order: user-scope active pointer, system-scope active pointer, PATH.

    Raises:
        StoreCorrupt: If an active pointer references a missing executable
        ToolNotFound: If nothing resolves
    """
    canonical = canonical_tool_name(name)
    for scope in (Scope.USER, Scope.SYSTEM):
        paths = paths_for_scope(scope, env)
        if paths is None:
            continue
        executable = _managed_executable(ArtifactStore(paths), canonical)
        if executable is not None:
            logger.debug(f"Resolved {canonical} from {scope.value} scope: {executable}")
            return executable

    found = find_in_path(canonical, env) or (find_in_path(name, env) if name != canonical else None)
    if found is not None:
        return found
    raise ToolNotFound(
        f"tool `{canonical}` is not installed or active",
        remediation=f"install it with `keeper tool install {canonical}`",
    )


def child_environment(env: Mapping[str, str], overrides: RunConfig | None = None) -> dict[str, str]:
    """Environment for a launched tool, with every proxy variable spelled both ways."""
    child = dict(env)
    child.update(normalized_proxy_env(ProxySettings.from_env(env, overrides)))
    return child


def run_tool(
    name: str,
    args: Sequence[str],
    env: Mapping[str, str],
    overrides: RunConfig | None = None,
) -> int:
    """
    Launch a tool, inheriting stdio.

    Returns:
        The child's exit code (128 + signal number when killed by a signal)
    """
    executable = resolve_executable(name, env)
    try:
        completed = subprocess.run([str(executable), *args], env=child_environment(env, overrides), check=False)
    except OSError as e:
        raise KeeperError(f"failed to start `{executable}`: {e}") from e
    if completed.returncode < 0:
        return 128 - completed.returncode
    return completed.returncode
