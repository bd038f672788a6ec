"""
Version-keyed artifact store with an atomic active pointer per tool.

Layout for one scope::

    <store_dir>/<tool>/<version>/<tool>            executable
    <store_dir>/<tool>/<version>/manifest.json     install metadata
    <current_dir>/<tool>                           active version (text)
    <current_dir>/.tool.lock                       mutation lock
    <bin_dir>/<tool>                               symlink (or copy) of the active executable

New versions are assembled in a hidden staging directory and renamed into
place; the pointer file is replaced with a single ``os.replace``. Readers
therefore see either the old or the new state, never a partial one.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from packaging.version import InvalidVersion, Version

from .common import atomic_write_text, now_unix_secs, sha256_file
from .errors import StoreCorrupt, VersionInUse, VersionNotFound
from .scope import ScopePaths

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
MANIFEST_SCHEMA_VERSION = 1
LOCK_FILE = ".tool.lock"

SOURCE_DOWNLOAD = "download"
SOURCE_ADOPTED = "adopted"
SOURCE_FALLBACK = "fallback"
SOURCE_SYNTHESIZED = "synthesized"


def version_sort_key(version: str) -> tuple:
    """
    Sort key placing valid PEP 440 versions by semantics, others lexically after.
    """
    try:
        return (1, Version(version), "")
    except InvalidVersion:
        return (0, Version("0"), version)


@dataclass(frozen=True)
class InstalledVersion:
    """
    One installed version of a tool.

    Attributes:
        name: Tool name
        version: Version string
        scope: Scope label ("system" or "user")
        path: Path of the stored executable
        sha256: Digest of the stored executable
        size_bytes: Executable size
        source_kind: download, adopted, fallback or synthesized
        source_detail: Where the binary came from
        installed_at_unix_secs: Install timestamp
    """
    name: str
    version: str
    scope: str
    path: Path
    sha256: str = ""
    size_bytes: int = 0
    source_kind: str = SOURCE_SYNTHESIZED
    source_detail: str = ""
    installed_at_unix_secs: int = 0

    @property
    def image(self) -> str:
        return f"{self.name}:{self.version}"

    def manifest_dict(self) -> dict[str, Any]:
        """Content of manifest.json."""
        return {
            "schema_version": MANIFEST_SCHEMA_VERSION,
            "name": self.name,
            "version": self.version,
            "installed_at_unix_secs": self.installed_at_unix_secs,
            "source_kind": self.source_kind,
            "source_detail": self.source_detail,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.manifest_dict()
        data.pop("schema_version")
        data["scope"] = self.scope
        data["path"] = str(self.path)
        return data


class ArtifactStore:
    """
    Artifact store for one scope.

    Mutating methods expect the caller to hold ``lock()``; reads are safe
    without it.
    """

    def __init__(self, paths: ScopePaths):
        self.paths = paths

    # Paths

    @property
    def scope_label(self) -> str:
        return self.paths.scope.value

    def name_dir(self, name: str) -> Path:
        return self.paths.store_dir / name

    def version_dir(self, name: str, version: str) -> Path:
        return self.name_dir(name) / version

    def binary_path(self, name: str, version: str) -> Path:
        return self.version_dir(name, version) / name

    def manifest_path(self, name: str, version: str) -> Path:
        return self.version_dir(name, version) / MANIFEST_FILE

    def current_file(self, name: str) -> Path:
        return self.paths.current_dir / name

    def bin_path(self, name: str) -> Path:
        return self.paths.bin_dir / name

    def ensure_layout(self) -> None:
        for directory in (self.paths.store_dir, self.paths.current_dir, self.paths.bin_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive lock on the scope for the duration of a mutation."""
        self.ensure_layout()
        lock_path = self.paths.current_dir / LOCK_FILE
        with open(lock_path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    # Reads

    def managed_names(self) -> list[str]:
        """Tool names with at least one stored version, sorted."""
        if not self.paths.store_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.paths.store_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".") and self._version_names(entry.name)
        )

    def _version_names(self, name: str) -> list[str]:
        root = self.name_dir(name)
        if not root.is_dir():
            return []
        return [
            entry.name
            for entry in root.iterdir()
            if entry.is_dir()
            and not entry.name.startswith(".")
            and (entry / name).is_file()
        ]

    def has_version(self, name: str, version: str) -> bool:
        return self.binary_path(name, version).is_file()

    def read_version(self, name: str, version: str) -> InstalledVersion:
        """
        Load metadata for a stored version.

        A missing or unreadable manifest yields synthesized metadata.

        Raises:
            VersionNotFound: If the version is not stored
        """
        binary = self.binary_path(name, version)
        if not binary.is_file():
            raise VersionNotFound(f"{name}:{version} is not installed in {self.scope_label} scope")

        manifest = self.manifest_path(name, version)
        data: dict[str, Any] = {}
        if manifest.is_file():
            try:
                with open(manifest, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable manifest {manifest}: {e}")

        if not data:
            return InstalledVersion(
                name=name,
                version=version,
                scope=self.scope_label,
                path=binary,
                size_bytes=binary.stat().st_size,
                source_kind=SOURCE_SYNTHESIZED,
                source_detail="existing store entry",
            )
        return InstalledVersion(
            name=name,
            version=version,
            scope=self.scope_label,
            path=binary,
            sha256=str(data.get("sha256", "")),
            size_bytes=int(data.get("size_bytes", 0) or 0),
            source_kind=str(data.get("source_kind", SOURCE_SYNTHESIZED)),
            source_detail=str(data.get("source_detail", "")),
            installed_at_unix_secs=int(data.get("installed_at_unix_secs", 0) or 0),
        )

    def list_versions(self, name: str) -> list[InstalledVersion]:
        """Stored versions of a tool, newest first."""
        versions = sorted(self._version_names(name), key=version_sort_key, reverse=True)
        return [self.read_version(name, v) for v in versions]

    def read_pointer(self, name: str) -> str | None:
        """Raw active version from the pointer file, without validation."""
        current = self.current_file(name)
        try:
            value = current.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def get_active(self, name: str) -> InstalledVersion | None:
        """
        Resolve the active version.

        Raises:
            StoreCorrupt: If the pointer references a version that is not stored
        """
        version = self.read_pointer(name)
        if version is None:
            return None
        if not self.has_version(name, version):
            raise StoreCorrupt(
                f"active `{name}` version `{version}` points to missing executable "
                f"`{self.binary_path(name, version)}`",
                remediation=f"repair with `keeper tool use {name}:<installed version>` "
                f"or `keeper tool update {name}`",
            )
        return self.read_version(name, version)

    # Mutations

    def write_version(
        self,
        name: str,
        version: str,
        source_file: Path,
        source_kind: str,
        source_detail: str,
    ) -> InstalledVersion:
        """
        Install an executable as ``name:version``.

        The version directory is assembled under a hidden staging directory and
        renamed into place. An existing version is returned unchanged.
        """
        if self.has_version(name, version):
            return self.read_version(name, version)

        name_dir = self.name_dir(name)
        name_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".staging-{version}-", dir=name_dir))
        try:
            staged_binary = staging / name
            shutil.copyfile(source_file, staged_binary)
            os.chmod(staged_binary, 0o755)

            installed = InstalledVersion(
                name=name,
                version=version,
                scope=self.scope_label,
                path=self.binary_path(name, version),
                sha256=sha256_file(staged_binary),
                size_bytes=staged_binary.stat().st_size,
                source_kind=source_kind,
                source_detail=source_detail,
                installed_at_unix_secs=now_unix_secs(),
            )
            with open(staging / MANIFEST_FILE, "w", encoding="utf-8") as f:
                json.dump(installed.manifest_dict(), f, indent=2)
                f.write("\n")

            target = self.version_dir(name, version)
            if target.exists():
                # Leftover without an executable; replace it.
                shutil.rmtree(target)
            os.replace(staging, target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.debug(f"Stored {name}:{version} at {installed.path}")
        return installed

    def ensure_manifest(self, name: str, version: str) -> InstalledVersion:
        """Write a synthesized manifest.json for a version that lacks one."""
        installed = self.read_version(name, version)
        if installed.source_kind != SOURCE_SYNTHESIZED or self.manifest_path(name, version).is_file():
            return installed
        binary = self.binary_path(name, version)
        installed = InstalledVersion(
            name=name,
            version=version,
            scope=self.scope_label,
            path=binary,
            sha256=sha256_file(binary),
            size_bytes=binary.stat().st_size,
            source_kind=SOURCE_SYNTHESIZED,
            source_detail="existing store entry",
            installed_at_unix_secs=now_unix_secs(),
        )
        atomic_write_text(
            self.manifest_path(name, version),
            json.dumps(installed.manifest_dict(), indent=2) + "\n",
        )
        return installed

    def set_active(self, name: str, version: str) -> InstalledVersion:
        """
        Point the tool at a stored version and refresh its bin entry.

        The bin entry is synced first; if the pointer replace then fails the
        previous bin entry is restored.

        Raises:
            VersionNotFound: If the version is not stored
        """
        if not self.has_version(name, version):
            raise VersionNotFound(
                f"{name}:{version} is not installed in {self.scope_label} scope",
                remediation=f"install it first with `keeper tool install {name}:{version}`",
            )
        previous = self.read_pointer(name)
        self._sync_bin_entry(name, version)
        try:
            atomic_write_text(self.current_file(name), f"{version}\n")
        except OSError:
            self._restore_bin_entry(name, previous)
            raise
        return self.read_version(name, version)

    def clear_active(self, name: str) -> None:
        """Remove the pointer file and the bin entry."""
        for path in (self.current_file(name), self.bin_path(name)):
            if path.is_symlink() or path.exists():
                path.unlink()

    def remove_version(self, name: str, version: str, clear_active: bool = False) -> None:
        """
        Delete one stored version.

        Args:
            name: Tool name
            version: Version to remove
            clear_active: Clear the pointer first when it targets this version

        Raises:
            VersionNotFound: If the version is not stored
            VersionInUse: If the version is active and clear_active is False
        """
        is_active = self.read_pointer(name) == version
        if is_active and not clear_active:
            raise VersionInUse(
                f"{name}:{version} is the active version",
                remediation=f"activate another version with `keeper tool use {name}:<version>` first",
            )
        if is_active:
            self.clear_active(name)
        if not self.version_dir(name, version).is_dir():
            if is_active:
                # Dangling pointer; clearing it is the whole repair.
                return
            raise VersionNotFound(f"{name}:{version} is not installed in {self.scope_label} scope")

        shutil.rmtree(self.version_dir(name, version))
        name_dir = self.name_dir(name)
        if name_dir.is_dir() and not any(name_dir.iterdir()):
            name_dir.rmdir()

    def remove_all(self, name: str) -> list[str]:
        """
        Delete every stored version of a tool and its pointer.

        Returns:
            Removed versions, newest first
        """
        versions = sorted(self._version_names(name), key=version_sort_key, reverse=True)
        self.clear_active(name)
        if self.name_dir(name).exists():
            shutil.rmtree(self.name_dir(name))
        return versions

    # Bin entry

    def _sync_bin_entry(self, name: str, version: str) -> None:
        self.paths.bin_dir.mkdir(parents=True, exist_ok=True)
        target = self.binary_path(name, version)
        dst = self.bin_path(name)
        tmp = dst.with_name(f".{name}.tmp-link-{os.getpid()}")
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        try:
            os.symlink(target, tmp)
        except OSError:
            shutil.copyfile(target, tmp)
            os.chmod(tmp, 0o755)
        try:
            os.replace(tmp, dst)
        finally:
            if tmp.is_symlink() or tmp.exists():
                tmp.unlink()

    def _restore_bin_entry(self, name: str, previous: str | None) -> None:
        try:
            if previous and self.has_version(name, previous):
                self._sync_bin_entry(name, previous)
            else:
                dst = self.bin_path(name)
                if dst.is_symlink() or dst.exists():
                    dst.unlink()
        except OSError as e:
            logger.warning(f"Could not restore bin entry for {name}: {e}")
