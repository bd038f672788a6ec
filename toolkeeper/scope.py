"""
Scope resolution: system-wide versus per-user storage and binary locations.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping

from .common import env_value, home_dir, xdg_dir
from .errors import ScopeUnavailable

DEFAULT_SYSTEM_ROOT = "/var/lib/toolkeeper"
DEFAULT_SYSTEM_BIN = "/usr/local/bin"


class Scope(Enum):
    SYSTEM = "system"
    USER = "user"


@dataclass(frozen=True)
class ScopePaths:
    """
    Concrete directories for one scope.

    Attributes:
        scope: Scope these paths belong to
        store_dir: Root of ``<tool>/<version>/<binary>``
        current_dir: Directory holding one active-pointer file per tool
        bin_dir: Directory receiving the executable entry for each active tool
    """
    scope: Scope
    store_dir: Path
    current_dir: Path
    bin_dir: Path

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.value,
            "store_dir": str(self.store_dir),
            "current_dir": str(self.current_dir),
            "bin_dir": str(self.bin_dir),
        }


def paths_for_scope(scope: Scope, env: Mapping[str, str]) -> ScopePaths | None:
    """
    Compute the directories of a scope.

    Args:
        scope: Scope to resolve
        env: Environment snapshot

    Returns:
        ScopePaths, or None for the user scope when no home directory is known
    """
    if scope is Scope.SYSTEM:
        root = Path(env_value(env, "TOOLKEEPER_SYSTEM_ROOT") or DEFAULT_SYSTEM_ROOT)
        bin_dir = Path(env_value(env, "TOOLKEEPER_SYSTEM_BIN") or DEFAULT_SYSTEM_BIN)
        return ScopePaths(
            scope=scope,
            store_dir=root / "tools" / "store",
            current_dir=root / "tools" / "current",
            bin_dir=bin_dir,
        )

    data_home = xdg_dir(env, "XDG_DATA_HOME", ".local/share")
    state_home = xdg_dir(env, "XDG_STATE_HOME", ".local/state")
    bin_home = env_value(env, "XDG_BIN_HOME")
    home = home_dir(env)
    if data_home is None or state_home is None or (bin_home is None and home is None):
        return None
    return ScopePaths(
        scope=scope,
        store_dir=data_home / "toolkeeper" / "tools" / "store",
        current_dir=state_home / "toolkeeper" / "tools" / "current",
        bin_dir=Path(bin_home) if bin_home else home / ".local" / "bin",
    )


def is_writable_dir(path: Path) -> bool:
    """
    Check whether path is writable, or could be created under a writable parent.
    """
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK | os.X_OK)


def _scope_writable(paths: ScopePaths, is_writable: Callable[[Path], bool]) -> bool:
    return all(is_writable(d) for d in (paths.store_dir, paths.current_dir, paths.bin_dir))


def resolve_scope(
    requested: Scope | None,
    env: Mapping[str, str],
    is_writable: Callable[[Path], bool] = is_writable_dir,
) -> ScopePaths:
    """
    Pick the scope for this invocation.

    An explicit request wins. Otherwise the system scope is used when its
    roots are writable, then the user scope.

    Args:
        requested: Scope requested on the command line, if any
        env: Environment snapshot
        is_writable: Writability check (injectable for tests)

    Raises:
        ScopeUnavailable: If no usable scope exists
    """
    if requested is not None:
        paths = paths_for_scope(requested, env)
        if paths is None:
            raise ScopeUnavailable(
                f"{requested.value} scope is unavailable: HOME is not set",
                remediation="set HOME or the XDG_*_HOME variables",
            )
        return paths

    system = paths_for_scope(Scope.SYSTEM, env)
    if system is not None and _scope_writable(system, is_writable):
        return system

    user = paths_for_scope(Scope.USER, env)
    if user is not None and _scope_writable(user, is_writable):
        return user

    raise ScopeUnavailable(
        "no writable tool scope: system roots are not writable and no usable home directory",
        remediation="run with elevated privileges or set HOME",
    )
