"""
Tests for release download and verification (toolkeeper/download.py).
"""

import hashlib
import io
import subprocess
import tarfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from toolkeeper.download import (
    ReleaseAsset,
    download_release_asset,
    extract_tar_gz,
    fetch_artifact,
    fetch_release_asset,
    is_retryable_error,
    parse_github_sha256_digest,
    resolve_latest_version,
    run_cargo_install,
    select_executable,
)
from toolkeeper.errors import ChecksumMismatch, DownloadFailed
from toolkeeper.netclient import HttpStatusError, NetworkError
from toolkeeper.policy import get_policy
from toolkeeper.store import SOURCE_DOWNLOAD, SOURCE_FALLBACK

DIGEST = "a" * 64


def _tar_gz(path: Path, members: dict[str, bytes], mode: int = 0o755) -> Path:
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return path


def _release(asset_name: str, digest: str | None = f"sha256:{DIGEST}") -> dict:
    asset = {"name": asset_name, "browser_download_url": f"https://dl.example/{asset_name}"}
    if digest is not None:
        asset["digest"] = digest
    return {"tag_name": "14.1.1", "assets": [asset]}


class TestDigestParsing:
    """Tests for GitHub asset digest parsing."""

    def test_valid_digest(self):
        """Test sha256:<hex> is accepted and lowercased."""
        assert parse_github_sha256_digest(f"sha256:{'AB' * 32}") == "ab" * 32

    @pytest.mark.parametrize("digest", [None, "", "md5:abc", "sha256:xyz", "sha256:" + "a" * 63])
    def test_invalid_digest(self, digest):
        """Test other algorithms or malformed values are rejected."""
        assert parse_github_sha256_digest(digest) is None


class TestReleaseLookup:
    """Tests for GitHub release metadata lookups."""

    def test_latest_version_strips_prefix(self):
        """Test the tag prefix is removed from the latest release."""
        client = MagicMock()
        client.get_json.return_value = {"tag_name": "rust-v0.46.0"}
        assert resolve_latest_version(get_policy("codex"), client) == "0.46.0"
        assert client.get_json.call_args.args[0].endswith("/repos/openai/codex/releases/latest")

    def test_rate_limit_hint(self):
        """Test 403 responses suggest configuring a token."""
        client = MagicMock()
        client.get_json.side_effect = HttpStatusError("https://api.github.com/x", 403)
        with pytest.raises(DownloadFailed) as exc:
            resolve_latest_version(get_policy("rg"), client)
        assert "GITHUB_TOKEN" in exc.value.remediation

    def test_network_error(self):
        """Test transport failures become DownloadFailed."""
        client = MagicMock()
        client.get_json.side_effect = NetworkError("down")
        with pytest.raises(DownloadFailed) as exc:
            resolve_latest_version(get_policy("rg"), client)
        assert exc.value.retryable

    def test_fetch_release_asset(self):
        """Test the platform asset and digest are selected."""
        name = "ripgrep-14.1.1-x86_64-unknown-linux-musl.tar.gz"
        client = MagicMock()
        client.get_json.return_value = _release(name)
        asset = fetch_release_asset(get_policy("rg"), "14.1.1", "x86_64-linux", client)
        assert asset == ReleaseAsset(name=name, url=f"https://dl.example/{name}", sha256=DIGEST)
        assert client.get_json.call_args.args[0].endswith("/releases/tags/14.1.1")

    def test_missing_digest_refused(self):
        """Test assets without a digest are never installed."""
        name = "ripgrep-14.1.1-x86_64-unknown-linux-musl.tar.gz"
        client = MagicMock()
        client.get_json.return_value = _release(name, digest=None)
        with pytest.raises(DownloadFailed, match="no sha256 digest"):
            fetch_release_asset(get_policy("rg"), "14.1.1", "x86_64-linux", client)

    def test_no_asset_for_platform(self):
        """Test platforms without an asset return None without a request."""
        client = MagicMock()
        assert fetch_release_asset(get_policy("rg"), "14.1.1", "x86_64-windows", client) is None
        client.get_json.assert_not_called()

    def test_asset_absent_from_release(self):
        """Test a release lacking the expected asset fails."""
        client = MagicMock()
        client.get_json.return_value = _release("something-else.tar.gz")
        with pytest.raises(DownloadFailed, match="has no asset named"):
            fetch_release_asset(get_policy("rg"), "14.1.1", "x86_64-linux", client)


class TestArchives:
    """Tests for archive extraction and executable selection."""

    def test_extract_and_select(self, tmp_path):
        """Test the named executable is found inside the archive."""
        archive = _tar_gz(tmp_path / "rg.tar.gz", {
            "ripgrep-14.1.1/rg": b"#!/bin/sh\n",
            "ripgrep-14.1.1/README.md": b"docs",
        })
        dest = tmp_path / "out"
        dest.mkdir()
        extract_tar_gz(archive, dest)
        assert select_executable(dest, ("rg",)).name == "rg"

    def test_path_traversal_rejected(self, tmp_path):
        """Test members escaping the extraction root are refused."""
        archive = _tar_gz(tmp_path / "evil.tar.gz", {"../evil": b"x"})
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DownloadFailed):
            extract_tar_gz(archive, dest)
        assert not (tmp_path / "evil").exists()

    def test_single_executable_fallback(self, tmp_path):
        """Test the only executable is chosen when no name matches."""
        exe = tmp_path / "dir" / "tool-x86_64"
        exe.parent.mkdir()
        exe.write_text("x")
        exe.chmod(0o755)
        (tmp_path / "dir" / "notes.txt").write_text("n")
        assert select_executable(tmp_path, ("tool",)) == exe

    def test_ambiguous_executables(self, tmp_path):
        """Test several unnamed executables are ambiguous."""
        for name in ("a", "b"):
            exe = tmp_path / name
            exe.write_text("x")
            exe.chmod(0o755)
        with pytest.raises(DownloadFailed, match="multiple executables"):
            select_executable(tmp_path, ("tool",))


class TestDownloadReleaseAsset:
    """Tests for downloading and verifying assets."""

    def _client_writing(self, body: bytes):
        client = MagicMock()

        def download(url, dest):
            Path(dest).write_bytes(body)
            return len(body), hashlib.sha256(body).hexdigest()

        client.download.side_effect = download
        return client

    def test_plain_binary(self, tmp_path):
        """Test a verified single-file asset becomes executable."""
        body = b"compose binary"
        asset = ReleaseAsset("docker-compose-linux-x86_64", "https://dl/x", hashlib.sha256(body).hexdigest())
        path = download_release_asset(self._client_writing(body), asset, get_policy("docker-compose"), tmp_path)
        assert path.read_bytes() == body
        assert path.stat().st_mode & 0o111

    def test_checksum_mismatch_deletes_download(self, tmp_path):
        """Test a digest mismatch raises and removes the file."""
        asset = ReleaseAsset("docker-compose-linux-x86_64", "https://dl/x", DIGEST)
        with pytest.raises(ChecksumMismatch) as exc:
            download_release_asset(self._client_writing(b"tampered"), asset, get_policy("docker-compose"), tmp_path)
        assert exc.value.expected == DIGEST
        assert not (tmp_path / asset.name).exists()


class TestCargoFallback:
    """Tests for the cargo install fallback."""

    def test_retryable_error_detection(self):
        """Test transient cargo errors are retryable."""
        assert is_retryable_error(101, "error: spurious network error")
        assert is_retryable_error(101, "Blocking waiting for file lock on package cache")
        assert not is_retryable_error(101, "error: could not compile")

    def test_cargo_missing(self, tmp_path):
        """Test a missing cargo binary gives a remediation."""
        with patch("toolkeeper.download.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(DownloadFailed) as exc:
                run_cargo_install("just", "1.36.0", tmp_path)
        assert "rustup" in exc.value.remediation

    def test_retries_transient_failure(self, tmp_path):
        """Test a transient failure is retried."""
        results = [
            subprocess.CompletedProcess([], 101, "", "spurious network error"),
            subprocess.CompletedProcess([], 0, "", ""),
        ]
        with patch("toolkeeper.download.subprocess.run", side_effect=results) as run, \
                patch("toolkeeper.download.time.sleep"):
            run_cargo_install("just", "1.36.0", tmp_path)
        assert run.call_count == 2
        assert run.call_args.args[0][:4] == ["cargo", "install", "--locked", "--version"]

    def test_permanent_failure(self, tmp_path):
        """Test a compile error fails immediately."""
        result = subprocess.CompletedProcess([], 101, "", "error: could not compile")
        with patch("toolkeeper.download.subprocess.run", return_value=result) as run:
            with pytest.raises(DownloadFailed, match="could not compile"):
                run_cargo_install("just", "1.36.0", tmp_path)
        assert run.call_count == 1


class TestFetchArtifact:
    """Tests for the artifact context manager."""

    def test_release_asset_path(self):
        """Test a release asset yields a download artifact and cleans up."""
        policy = get_policy("docker-compose")
        asset = ReleaseAsset("docker-compose-linux-x86_64", "https://dl/x", DIGEST)

        def fake_download(client, asset, policy, workdir):
            path = workdir / asset.name
            path.write_text("bin")
            return path

        with patch("toolkeeper.download.fetch_release_asset", return_value=asset), \
                patch("toolkeeper.download.download_release_asset", side_effect=fake_download):
            with fetch_artifact(policy, "2.29.7", "x86_64-linux", MagicMock()) as artifact:
                assert artifact.source_kind == SOURCE_DOWNLOAD
                assert artifact.path.exists()
                workdir = artifact.path.parent
        assert not workdir.exists()

    def test_no_asset_and_no_fallback(self):
        """Test tools without a cargo package fail on unsupported platforms."""
        with patch("toolkeeper.download.fetch_release_asset", return_value=None):
            with pytest.raises(DownloadFailed, match="no release asset"):
                with fetch_artifact(get_policy("docker-compose"), "2.29.7", None, MagicMock()):
                    pass

    def test_cargo_fallback(self):
        """Test tools with a crate fall back to cargo install."""
        def fake_cargo(package, version, root, verbose=False):
            exe = root / "bin" / "just"
            exe.parent.mkdir(parents=True)
            exe.write_text("#!/bin/sh\n")
            exe.chmod(0o755)

        with patch("toolkeeper.download.fetch_release_asset", return_value=None), \
                patch("toolkeeper.download.run_cargo_install", side_effect=fake_cargo), \
                patch("toolkeeper.download.probe_version", return_value="1.36.0"):
            with fetch_artifact(get_policy("just"), "1.36.0", "x86_64-windows", MagicMock()) as artifact:
                assert artifact.source_kind == SOURCE_FALLBACK
                assert artifact.path.name == "just"
                assert "cargo install just@1.36.0" in artifact.source_detail
