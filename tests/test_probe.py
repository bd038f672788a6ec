"""
Tests for executable version probing (toolkeeper/probe.py).
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from toolkeeper.probe import (
    command_candidates,
    extract_version,
    find_executable_in_dir,
    probe_version,
    run_with_timeout,
)


def _executable(path, content="#!/bin/sh\nexit 0\n"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(0o755)
    return path


class TestExtractVersion:
    """Tests for version extraction from command output."""

    @pytest.mark.parametrize("text,expected", [
        ("ripgrep 14.1.1 (rev 4649aa9700)", "14.1.1"),
        ("codex-cli 0.46.0", "0.46.0"),
        ("Docker Compose version v2.29.7", "2.29.7"),
        ("tool 1.0.0-beta.2\n", "1.0.0-beta.2"),
        ("\x1b[32mjust 1.36.0\x1b[0m", "1.36.0"),
        ("no version here", None),
        ("version 1.2", None),
    ])
    def test_extract(self, text, expected):
        """Test the first X.Y.Z version is returned."""
        assert extract_version(text) == expected


class TestRunWithTimeout:
    """Tests for probe command execution."""

    def test_success_merges_streams(self):
        """Test stdout and stderr are merged."""
        proc = MagicMock(returncode=0, stdout="out", stderr="err")
        with patch("toolkeeper.probe.subprocess.run", return_value=proc):
            output = run_with_timeout(["tool", "--version"])
        assert "out" in output and "err" in output

    def test_nonzero_exit(self):
        """Test non-zero exits yield None."""
        proc = MagicMock(returncode=2, stdout="", stderr="usage")
        with patch("toolkeeper.probe.subprocess.run", return_value=proc):
            assert run_with_timeout(["tool", "--version"]) is None

    def test_timeout(self):
        """Test timeouts yield None."""
        with patch("toolkeeper.probe.subprocess.run", side_effect=subprocess.TimeoutExpired("tool", 5)):
            assert run_with_timeout(["tool"]) is None


class TestProbeVersion:
    """Tests for probing executables."""

    def test_tries_flag_sets_in_order(self, tmp_path):
        """Test later flag sets are tried when earlier ones fail."""
        binary = _executable(tmp_path / "tool")
        with patch("toolkeeper.probe.run_with_timeout", side_effect=[None, "tool 3.2.1"]) as run:
            assert probe_version(binary) == "3.2.1"
        assert run.call_args_list[1].args[0] == [str(binary), "-V"]

    def test_cannot_determine_version(self, tmp_path):
        """Test unparsable output returns None."""
        binary = _executable(tmp_path / "tool")
        with patch("toolkeeper.probe.run_with_timeout", return_value="garbage"):
            assert probe_version(binary) is None

    def test_non_executable(self, tmp_path):
        """Test non-executable files are not run."""
        target = tmp_path / "plain"
        target.write_text("data")
        with patch("toolkeeper.probe.run_with_timeout") as run:
            assert probe_version(target) is None
        run.assert_not_called()


class TestCandidates:
    """Tests for executable name candidates."""

    def test_cli_suffix_stripped(self):
        """Test -cli and _cli suffixes add a shorter candidate."""
        assert command_candidates("codex-cli") == ["codex-cli", "codex"]
        assert command_candidates("rg") == ["rg"]
        assert command_candidates("-cli") == ["-cli"]

    def test_find_executable_in_dir(self, tmp_path):
        """Test the first executable candidate is returned."""
        _executable(tmp_path / "codex")
        assert find_executable_in_dir(tmp_path, ["codex-cli", "codex"]) == tmp_path / "codex"
        assert find_executable_in_dir(tmp_path, ["missing"]) is None
