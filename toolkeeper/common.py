"""
Common utilities shared across toolkeeper modules.
"""

from __future__ import annotations

import hashlib
import os
import stat
import time
from pathlib import Path
from typing import Mapping


def vlog(msg: str, verbose: bool = False) -> None:
    """
    Log a verbose progress message.

    Args:
        msg: Message to log
        verbose: Whether verbose mode is enabled
    """
    if verbose or os.environ.get("TOOLKEEPER_DEBUG", "0") == "1":
        from .logging_config import get_logger
        get_logger().info(msg)


def env_value(env: Mapping[str, str], key: str) -> str | None:
    """Return a stripped, non-empty environment value or None."""
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def home_dir(env: Mapping[str, str]) -> Path | None:
    """Resolve the home directory from an environment snapshot."""
    home = env_value(env, "HOME")
    return Path(home) if home else None


def xdg_dir(env: Mapping[str, str], var: str, fallback: str) -> Path | None:
    """
    Resolve an XDG base directory.

    Args:
        env: Environment snapshot
        var: XDG variable name (e.g. ``XDG_CACHE_HOME``)
        fallback: Path relative to home used when the variable is unset

    Returns:
        Directory path, or None when neither the variable nor HOME is set
    """
    explicit = env_value(env, var)
    if explicit:
        return Path(explicit)
    home = home_dir(env)
    if home is None:
        return None
    return home / fallback


def cpu_count() -> int:
    return os.cpu_count() or 1


def auto_jobs(multiplier: int, minimum: int, maximum: int) -> int:
    """Derive a worker count from the CPU count, clamped to [minimum, maximum]."""
    return max(minimum, min(maximum, cpu_count() * multiplier))


def normalize_jobs(requested: int, task_count: int) -> int:
    """Cap the worker count at the number of tasks (never below 1)."""
    return max(1, min(requested, max(task_count, 1)))


def now_unix_secs() -> int:
    return int(time.time())


def is_executable_file(path: Path) -> bool:
    """Check that path is a regular file with an execute bit set."""
    try:
        st = path.stat()
    except OSError:
        return False
    if not stat.S_ISREG(st.st_mode):
        return False
    return bool(st.st_mode & 0o111)


def sha256_file(path: Path) -> str:
    """Compute the hex sha256 digest of a file."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def atomic_write_text(path: Path, content: str, mode: int | None = None) -> None:
    """
    Write a text file by writing a sibling temp file and renaming it.

    Args:
        path: Destination path
        content: Text to write
        mode: Optional permission bits applied before the rename
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
