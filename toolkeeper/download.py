"""
Release download and verification.

Resolves release metadata from the GitHub API, streams the platform asset to
a temporary directory, verifies its sha256 against the digest published with
the release, and extracts the executable. Tools without a release asset for
the platform may fall back to ``cargo install``.
"""

from __future__ import annotations

import contextlib
import logging
import random
import re
import shutil
import subprocess
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, Sequence

from .common import is_executable_file, vlog
from .errors import ChecksumMismatch, DownloadFailed
from .netclient import HttpClient, HttpStatusError, NetworkError
from .policy import ToolPolicy
from .probe import probe_version
from .store import SOURCE_DOWNLOAD, SOURCE_FALLBACK

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
CARGO_TIMEOUT_SECONDS = 1800
CARGO_MAX_ATTEMPTS = 3

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class ReleaseAsset:
    """
    A downloadable release asset.

    Attributes:
        name: Asset file name
        url: Download URL
        sha256: Expected digest (lowercase hex)
    """
    name: str
    url: str
    sha256: str


@dataclass(frozen=True)
class VerifiedArtifact:
    """
    An executable ready to be handed to the store.

    Attributes:
        path: Executable inside a temporary directory
        version: Version the executable reports or was requested as
        source_kind: download or fallback
        source_detail: Human-readable origin
    """
    path: Path
    version: str
    source_kind: str
    source_detail: str


def parse_github_sha256_digest(digest: str | None) -> str | None:
    """Parse GitHub's ``sha256:<hex>`` asset digest field."""
    if not digest:
        return None
    algo, _, value = digest.strip().partition(":")
    value = value.strip().lower()
    if algo.lower() != "sha256" or not _SHA256_RE.match(value):
        return None
    return value


def _fetch_release(client: HttpClient, policy: ToolPolicy, path: str) -> dict:
    url = f"{GITHUB_API}/repos/{policy.owner}/{policy.repo}/releases/{path}"
    try:
        release = client.get_json(url)
    except HttpStatusError as e:
        hint = None
        if e.status in (403, 429):
            hint = "set GITHUB_TOKEN (or `keeper config set github-token`) for a stable API quota"
        elif e.status == 404:
            hint = f"check that the release exists at https://github.com/{policy.owner}/{policy.repo}/releases"
        raise DownloadFailed(f"GitHub release lookup for `{policy.name}` failed: {e}", remediation=hint) from e
    except NetworkError as e:
        raise DownloadFailed(f"GitHub release lookup for `{policy.name}` failed: {e}") from e
    if not isinstance(release, dict):
        raise DownloadFailed(f"unexpected GitHub release payload for `{policy.name}`")
    return release


def resolve_latest_version(policy: ToolPolicy, client: HttpClient) -> str:
    """
    Look up the latest published release version.

    Raises:
        DownloadFailed: If the release cannot be fetched or has no tag
    """
    release = _fetch_release(client, policy, "latest")
    tag = str(release.get("tag_name") or "").strip()
    if not tag:
        raise DownloadFailed(f"latest `{policy.name}` release has no tag name")
    version = policy.version_from_tag(tag)
    if not version:
        raise DownloadFailed(f"cannot derive a version from tag `{tag}`")
    return version


def fetch_release_asset(
    policy: ToolPolicy,
    version: str,
    platform_key: str | None,
    client: HttpClient,
) -> ReleaseAsset | None:
    """
    Find the platform asset of a release and its expected digest.

    Returns:
        ReleaseAsset, or None when the policy publishes no asset for the platform

    Raises:
        DownloadFailed: If the release or asset is missing, or has no usable digest
    """
    asset_name = policy.asset_name(version, platform_key)
    if asset_name is None:
        return None

    release = _fetch_release(client, policy, f"tags/{policy.release_tag(version)}")
    for asset in release.get("assets") or []:
        if not isinstance(asset, dict) or asset.get("name") != asset_name:
            continue
        expected = parse_github_sha256_digest(asset.get("digest"))
        if expected is None:
            raise DownloadFailed(
                f"release asset {asset_name} has no sha256 digest; refusing to install unverified binary"
            )
        url = asset.get("browser_download_url")
        if not url:
            raise DownloadFailed(f"release asset {asset_name} has no download URL")
        return ReleaseAsset(name=asset_name, url=str(url), sha256=expected)

    raise DownloadFailed(
        f"release {policy.release_tag(version)} of `{policy.name}` has no asset named {asset_name}"
    )


def is_tar_gz_asset(name: str) -> bool:
    return name.endswith(".tar.gz") or name.endswith(".tgz")


def _safe_members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    for member in tar.getmembers():
        path = PurePosixPath(member.name)
        if path.is_absolute() or ".." in path.parts:
            raise DownloadFailed(f"archive member escapes extraction root: {member.name}")
        if member.isfile() or member.isdir():
            yield member


def extract_tar_gz(archive: Path, dest: Path) -> None:
    """Extract regular files and directories of a tar.gz archive."""
    try:
        with tarfile.open(archive, "r:gz") as tar:
            for member in _safe_members(tar):
                tar.extract(member, dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise DownloadFailed(f"cannot extract {archive.name}: {e}") from e


def select_executable(root: Path, candidates: Sequence[str]) -> Path:
    """
    Pick the tool's executable from an extracted tree.

    A file named like one of the candidates wins (in candidate order);
    otherwise the only executable file in the tree is used.

    Raises:
        DownloadFailed: If no unique executable is found
    """
    files = sorted(p for p in root.rglob("*") if p.is_file())
    by_name: dict[str, Path] = {}
    for path in files:
        by_name.setdefault(path.name, path)
    for candidate in candidates:
        if candidate in by_name:
            return by_name[candidate]

    executables = [p for p in files if is_executable_file(p)]
    if len(executables) == 1:
        return executables[0]
    if not executables:
        raise DownloadFailed(f"no executable found in {root.name}")
    names = ", ".join(p.name for p in executables[:5])
    raise DownloadFailed(f"multiple executables found ({names}); cannot choose one")


def download_release_asset(
    client: HttpClient,
    asset: ReleaseAsset,
    policy: ToolPolicy,
    workdir: Path,
) -> Path:
    """
    Download and verify an asset, returning the executable path.

    Raises:
        DownloadFailed: On network failure after retries
        ChecksumMismatch: If the digest differs (the download is deleted)
    """
    download_path = workdir / asset.name
    logger.info(f"Downloading {asset.name}")
    try:
        size, actual = client.download(asset.url, download_path)
    except NetworkError as e:
        download_path.unlink(missing_ok=True)
        raise DownloadFailed(f"download of {asset.name} failed: {e}") from e

    if actual != asset.sha256:
        download_path.unlink(missing_ok=True)
        raise ChecksumMismatch(asset.name, asset.sha256, actual)
    logger.debug(f"Verified {asset.name} ({size} bytes, sha256 {actual})")

    if is_tar_gz_asset(asset.name):
        extract_root = workdir / "extract"
        extract_root.mkdir()
        extract_tar_gz(download_path, extract_root)
        return select_executable(extract_root, policy.executable_candidates())

    download_path.chmod(0o755)
    return download_path


def is_retryable_error(exit_code: int, stderr: str) -> bool:
    """Check command output for transient network or lock contention failures."""
    text = stderr.lower()
    if any(indicator in text for indicator in (
        "connection refused",
        "connection timed out",
        "connection reset",
        "temporary failure",
        "network unreachable",
        "could not resolve host",
        "spurious network error",
        "blocking waiting for file lock",
    )):
        return True
    return exit_code in {75, 111}


def run_cargo_install(package: str, version: str, root: Path, verbose: bool = False) -> None:
    """
    Build a crate with ``cargo install --locked`` into root, retrying transient failures.

    Raises:
        DownloadFailed: If cargo is missing or the build fails
    """
    command = ["cargo", "install", "--locked", "--version", version, package, "--root", str(root)]
    for attempt in range(CARGO_MAX_ATTEMPTS):
        vlog(f"Attempt {attempt + 1}/{CARGO_MAX_ATTEMPTS}: {' '.join(command)}", verbose)
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=CARGO_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as e:
            raise DownloadFailed(
                "no release asset for this platform and `cargo` is not installed",
                remediation="install a Rust toolchain (https://rustup.rs) or use a supported platform",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise DownloadFailed(f"cargo install {package} timed out after {CARGO_TIMEOUT_SECONDS}s") from e

        if result.returncode == 0:
            return
        stderr = (result.stderr or "").strip()
        if not is_retryable_error(result.returncode, stderr) or attempt == CARGO_MAX_ATTEMPTS - 1:
            raise DownloadFailed(f"cargo install {package}@{version} failed: {stderr[-400:]}")
        delay = 1.0 * (2 ** attempt) * (0.8 + random.random() * 0.4)
        vlog(f"Retrying after {delay:.1f}s delay...", verbose)
        time.sleep(delay)


@contextlib.contextmanager
def fetch_artifact(
    policy: ToolPolicy,
    version: str,
    platform_key: str | None,
    client: HttpClient,
    verbose: bool = False,
) -> Iterator[VerifiedArtifact]:
    """
    Produce a verified executable for ``policy`` at ``version``.

    The temporary directory holding the artifact is removed when the context
    exits, whether or not the store accepted it.

    Raises:
        DownloadFailed: If neither a release asset nor a fallback is available
        ChecksumMismatch: If the release asset fails verification
    """
    workdir = Path(tempfile.mkdtemp(prefix=f"toolkeeper-{policy.name}-"))
    try:
        asset = fetch_release_asset(policy, version, platform_key, client)
        if asset is not None:
            path = download_release_asset(client, asset, policy, workdir)
            yield VerifiedArtifact(
                path=path,
                version=version,
                source_kind=SOURCE_DOWNLOAD,
                source_detail=f"{asset.url} (sha256 {asset.sha256[:12]}…)",
            )
            return

        if policy.cargo_package is None:
            raise DownloadFailed(
                f"`{policy.name}` has no release asset for platform {platform_key or 'unknown'}"
            )

        logger.info(f"No release asset for {platform_key}; building {policy.cargo_package} with cargo")
        cargo_root = workdir / "cargo"
        run_cargo_install(policy.cargo_package, version, cargo_root, verbose)
        path = select_executable(cargo_root / "bin", policy.executable_candidates())
        reported = probe_version(path) or version
        if reported != version:
            logger.warning(f"{policy.name} built from cargo reports {reported}, expected {version}")
        yield VerifiedArtifact(
            path=path,
            version=version,
            source_kind=SOURCE_FALLBACK,
            source_detail=f"cargo install {policy.cargo_package}@{version} (reports {reported})",
        )
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
