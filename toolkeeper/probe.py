"""
Version probing of existing executables.

Used for adopting unmanaged binaries and for recording the version of tools
built by a fallback command. Probing is best-effort: when no version can be
parsed the probe returns None and the caller decides what to do.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Sequence

from .common import is_executable_file
from .policy import normalize_version

logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = float(os.environ.get("TOOLKEEPER_PROBE_TIMEOUT", "5"))

VERSION_RE = re.compile(r"\bv?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?)\b", re.IGNORECASE)
ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;]*m")

VERSION_FLAG_SETS: tuple[tuple[str, ...], ...] = (
    ("--version",),
    ("-V",),
    ("version",),
)


def extract_version(text: str) -> str | None:
    """
    Extract the first ``X.Y.Z[-pre|+build]`` version from text.

    Returns:
        Normalized version without a leading "v", or None
    """
    match = VERSION_RE.search(ANSI_ESCAPE_RE.sub("", text))
    if not match:
        return None
    return normalize_version(match.group(1)) or None


def run_with_timeout(args: Sequence[str], timeout: float | None = None) -> str | None:
    """
    Run a command and return merged stdout and stderr.

    Returns:
        Output text, or None when the command could not run or exited non-zero
    """
    try:
        proc = subprocess.run(
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            timeout=timeout or TIMEOUT_SECONDS,
            check=False,
            env={**os.environ, "TERM": "dumb", "NO_COLOR": "1"},
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Probe {' '.join(args)} failed: {e}")
        return None
    if proc.returncode != 0:
        return None
    return f"{proc.stdout or ''}\n{proc.stderr or ''}"


def probe_version(binary: Path, flag_sets: Sequence[tuple[str, ...]] = VERSION_FLAG_SETS) -> str | None:
    """
    Ask an executable for its version.

    Tries each flag set in turn and returns the first parsable version.

    Args:
        binary: Executable to probe
        flag_sets: Argument tuples to try

    Returns:
        Version string, or None when it cannot be determined
    """
    if not is_executable_file(binary):
        return None
    for flags in flag_sets:
        output = run_with_timeout([str(binary), *flags])
        if output is None:
            continue
        version = extract_version(output)
        if version:
            logger.debug(f"Detected version {version} for {binary}")
            return version
    logger.debug(f"Could not determine version for {binary}")
    return None


def command_candidates(name: str) -> list[str]:
    """
    Executable names that may belong to a tool.

    ``codex-cli`` is also looked up as ``codex``.
    """
    candidates = [name]
    for suffix in ("-cli", "_cli"):
        if name.endswith(suffix) and len(name) > len(suffix):
            candidates.append(name[: -len(suffix)])
    return candidates


def find_executable_in_dir(directory: Path, names: Sequence[str]) -> Path | None:
    """Return the first executable in directory matching one of names."""
    for name in names:
        candidate = directory / name
        if is_executable_file(candidate):
            return candidate
    return None
