"""
Tests for built-in tool policies and spec parsing (toolkeeper/policy.py).
"""

import pytest

from toolkeeper.errors import InvalidToolSpec, UnsupportedTool
from toolkeeper.policy import (
    TOOL_POLICIES,
    ToolRef,
    ToolSpec,
    canonical_tool_name,
    detect_platform,
    find_policy,
    get_policy,
    normalize_version,
    supported_tools,
    validate_name,
)


class TestDetectPlatform:
    """Tests for platform key detection."""

    @pytest.mark.parametrize("system,machine,expected", [
        ("Linux", "x86_64", "x86_64-linux"),
        ("Linux", "aarch64", "aarch64-linux"),
        ("Darwin", "arm64", "aarch64-macos"),
        ("Windows", "AMD64", "x86_64-windows"),
        ("FreeBSD", "x86_64", None),
        ("Linux", "riscv64", None),
    ])
    def test_platform_keys(self, system, machine, expected):
        """Test OS/arch combinations map to platform keys."""
        assert detect_platform(system, machine) == expected


class TestPolicyTable:
    """Tests for the closed policy table."""

    def test_names_and_aliases_unique(self):
        """Test no alias collides with another policy."""
        names = [n for p in TOOL_POLICIES for n in p.supported_names()]
        assert len(names) == len(set(names))

    def test_alias_lookup(self):
        """Test aliases resolve to the canonical policy."""
        assert find_policy("ripgrep").name == "rg"
        assert find_policy("codex-cli").name == "codex"
        assert canonical_tool_name("fdfind") == "fd"
        assert canonical_tool_name("unknown-tool") == "unknown-tool"

    def test_get_policy_unsupported(self):
        """Test unsupported tools list the supported ones."""
        with pytest.raises(UnsupportedTool) as exc:
            get_policy("nope")
        assert "rg" in exc.value.remediation

    def test_asset_names(self):
        """Test asset templates render per platform."""
        rg = get_policy("rg")
        assert rg.asset_name("14.1.1", "x86_64-linux") == "ripgrep-14.1.1-x86_64-unknown-linux-musl.tar.gz"
        assert rg.asset_name("14.1.1", "aarch64-linux") == "ripgrep-14.1.1-aarch64-unknown-linux-gnu.tar.gz"
        assert rg.asset_name("14.1.1", "x86_64-windows") is None
        assert rg.asset_name("14.1.1", None) is None

    def test_release_tags(self):
        """Test tag prefixes are applied and stripped."""
        codex = get_policy("codex")
        assert codex.release_tag("0.46.0") == "rust-v0.46.0"
        assert codex.version_from_tag("rust-v0.46.0") == "0.46.0"
        fd = get_policy("fd")
        assert fd.version_from_tag("v10.2.0") == "10.2.0"
        assert get_policy("rg").version_from_tag("14.1.1") == "14.1.1"

    def test_source_label_mentions_cargo_fallback(self):
        """Test policies with a crate advertise the cargo fallback."""
        assert "cargo fallback (du-dust)" in get_policy("dust").source_label
        assert "cargo" not in get_policy("docker-compose").source_label

    def test_supported_tools_sorted(self):
        """Test the supported view is sorted by name."""
        names = [v.name for v in supported_tools()]
        assert names == sorted(names)
        assert len(names) == len(TOOL_POLICIES)


class TestToolSpec:
    """Tests for name[:version] parsing."""

    def test_name_only(self):
        """Test a bare name has no version."""
        spec = ToolSpec.parse("ripgrep")
        assert spec == ToolSpec("rg", None)
        assert str(spec) == "rg"

    def test_name_and_version(self):
        """Test a leading v is stripped from versions."""
        spec = ToolSpec.parse("fd:v10.2.0")
        assert spec == ToolSpec("fd", "10.2.0")
        assert str(spec.resolve("10.2.0")) == "fd:10.2.0"

    @pytest.mark.parametrize("text", ["", ":1.0", "../etc", "rg:", "rg:../1", "a b"])
    def test_invalid_specs(self, text):
        """Test malformed specs raise InvalidToolSpec."""
        with pytest.raises(InvalidToolSpec):
            ToolSpec.parse(text)

    def test_ref_requires_version(self):
        """Test ToolRef needs an explicit version."""
        assert ToolRef.parse("rg:14.0.0") == ToolRef("rg", "14.0.0")
        with pytest.raises(InvalidToolSpec) as exc:
            ToolRef.parse("rg")
        assert "rg:<version>" in exc.value.remediation

    def test_validate_name_dot_paths(self):
        """Test dot paths are rejected."""
        with pytest.raises(InvalidToolSpec):
            validate_name("..")
        assert validate_name("my_tool-1.0") == "my_tool-1.0"

    def test_normalize_version(self):
        """Test v prefix removal."""
        assert normalize_version("v1.2.3") == "1.2.3"
        assert normalize_version(" 1.2.3 ") == "1.2.3"
