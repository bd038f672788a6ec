"""
Built-in tool policies and tool spec parsing.

The policy table is closed: each supported tool is one immutable entry with
its GitHub release source, per-platform asset names and optional cargo
fallback. Nothing registers policies at runtime.
"""

from __future__ import annotations

import platform as _platform
import re
from dataclasses import dataclass, field

from .errors import InvalidToolSpec, UnsupportedTool

# Platform keys: "<arch>-<os>"
PLATFORM_KEYS = (
    "x86_64-linux",
    "aarch64-linux",
    "x86_64-macos",
    "aarch64-macos",
    "x86_64-windows",
    "aarch64-windows",
)

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}
_OS_ALIASES = {
    "linux": "linux",
    "darwin": "macos",
    "windows": "windows",
}

LINUX_MUSL = {
    "x86_64-linux": "x86_64-unknown-linux-musl",
    "aarch64-linux": "aarch64-unknown-linux-musl",
}
MACOS = {
    "x86_64-macos": "x86_64-apple-darwin",
    "aarch64-macos": "aarch64-apple-darwin",
}


def detect_platform(system: str | None = None, machine: str | None = None) -> str | None:
    """
    Map the running OS and CPU to a platform key.

    Returns:
        Platform key such as ``x86_64-linux``, or None when unsupported
    """
    os_name = _OS_ALIASES.get((system or _platform.system()).lower())
    arch = _ARCH_ALIASES.get((machine or _platform.machine()).lower())
    if not os_name or not arch:
        return None
    return f"{arch}-{os_name}"


def _triple_assets(template: str, *tables: dict[str, str]) -> dict[str, str]:
    assets: dict[str, str] = {}
    for table in tables:
        for key, triple in table.items():
            assets[key] = template.replace("{triple}", triple)
    return assets


@dataclass(frozen=True)
class ToolPolicy:
    """
    Source policy for one managed tool.

    Attributes:
        name: Canonical tool name (also the store and bin entry name)
        aliases: Alternative names resolving to this policy
        owner: GitHub repository owner
        repo: GitHub repository name
        tag_prefix: Prefix stripped from release tags (e.g. "v")
        assets: Platform key -> asset file name, ``{version}`` templated
        binary_names: File names accepted as the executable inside archives
        cargo_package: Crate installed with ``cargo install`` when no asset exists
    """
    name: str
    owner: str
    repo: str
    assets: dict[str, str]
    tag_prefix: str = ""
    aliases: tuple[str, ...] = ()
    binary_names: tuple[str, ...] = ()
    cargo_package: str | None = None

    @property
    def source_label(self) -> str:
        label = "GitHub Release (SHA-256 verified)"
        if self.cargo_package:
            label += f", cargo fallback ({self.cargo_package})"
        return label

    def supported_names(self) -> tuple[str, ...]:
        return (self.name,) + self.aliases

    def asset_name(self, version: str, platform_key: str | None) -> str | None:
        """Expected release asset for a platform, or None if the release has none."""
        if platform_key is None:
            return None
        template = self.assets.get(platform_key)
        if template is None:
            return None
        return template.replace("{version}", version)

    def executable_candidates(self) -> tuple[str, ...]:
        names = self.binary_names or (self.name,)
        return names + tuple(f"{n}.exe" for n in names)

    def release_tag(self, version: str) -> str:
        return f"{self.tag_prefix}{version}"

    def version_from_tag(self, tag: str) -> str:
        if self.tag_prefix and tag.startswith(self.tag_prefix):
            return tag[len(self.tag_prefix):]
        return normalize_version(tag)


TOOL_POLICIES: tuple[ToolPolicy, ...] = (
    ToolPolicy(
        name="codex",
        aliases=("codex-cli",),
        owner="openai",
        repo="codex",
        tag_prefix="rust-v",
        assets=_triple_assets("codex-{triple}.tar.gz", LINUX_MUSL, MACOS),
        binary_names=("codex", "codex-x86_64-unknown-linux-musl", "codex-aarch64-unknown-linux-musl",
                      "codex-x86_64-apple-darwin", "codex-aarch64-apple-darwin"),
        cargo_package="codex-cli",
    ),
    ToolPolicy(
        name="docker-compose",
        owner="docker",
        repo="compose",
        tag_prefix="v",
        assets={
            "x86_64-linux": "docker-compose-linux-x86_64",
            "aarch64-linux": "docker-compose-linux-aarch64",
            "x86_64-macos": "docker-compose-darwin-x86_64",
            "aarch64-macos": "docker-compose-darwin-aarch64",
            "x86_64-windows": "docker-compose-windows-x86_64.exe",
            "aarch64-windows": "docker-compose-windows-aarch64.exe",
        },
    ),
    ToolPolicy(
        name="rg",
        aliases=("ripgrep",),
        owner="BurntSushi",
        repo="ripgrep",
        assets=_triple_assets(
            "ripgrep-{version}-{triple}.tar.gz",
            {"x86_64-linux": "x86_64-unknown-linux-musl", "aarch64-linux": "aarch64-unknown-linux-gnu"},
            MACOS,
        ),
    ),
    ToolPolicy(
        name="fd",
        aliases=("fdfind",),
        owner="sharkdp",
        repo="fd",
        tag_prefix="v",
        assets=_triple_assets("fd-v{version}-{triple}.tar.gz", LINUX_MUSL, MACOS),
    ),
    ToolPolicy(
        name="tcping",
        aliases=("tcping-rs",),
        owner="lvillis",
        repo="tcping-rs",
        assets=_triple_assets(
            "tcping-{version}-{triple}.tar.gz",
            LINUX_MUSL,
            {"aarch64-macos": "aarch64-apple-darwin"},
        ),
        cargo_package="tcping",
    ),
    ToolPolicy(
        name="dust",
        owner="bootandy",
        repo="dust",
        tag_prefix="v",
        assets=_triple_assets(
            "dust-v{version}-{triple}.tar.gz",
            LINUX_MUSL,
            {"x86_64-macos": "x86_64-apple-darwin"},
        ),
        cargo_package="du-dust",
    ),
    ToolPolicy(
        name="just",
        owner="casey",
        repo="just",
        assets=_triple_assets("just-{version}-{triple}.tar.gz", LINUX_MUSL, MACOS),
        cargo_package="just",
    ),
)

_POLICY_BY_NAME: dict[str, ToolPolicy] = {
    alias: policy for policy in TOOL_POLICIES for alias in policy.supported_names()
}


def find_policy(name: str) -> ToolPolicy | None:
    return _POLICY_BY_NAME.get(name.strip().lower())


def get_policy(name: str) -> ToolPolicy:
    """
    Look up the policy for a tool name or alias.

    Raises:
        UnsupportedTool: If no built-in policy matches
    """
    policy = find_policy(name)
    if policy is None:
        supported = ", ".join(p.name for p in TOOL_POLICIES)
        raise UnsupportedTool(
            f"unsupported tool `{name}`",
            remediation=f"supported tools: {supported}",
        )
    return policy


def canonical_tool_name(name: str) -> str:
    """Resolve an alias to its canonical name; unknown names pass through."""
    policy = find_policy(name)
    return policy.name if policy else name.strip()


def normalize_version(version: str) -> str:
    version = version.strip()
    return version[1:] if version[:1] in ("v", "V") else version


_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_name(name: str, what: str = "tool name") -> str:
    """
    Check a tool name or version string is safe to use as a path segment.

    Raises:
        InvalidToolSpec: If empty, a dot path, or containing separators
    """
    if not name:
        raise InvalidToolSpec(f"{what} must not be empty")
    if name in (".", "..") or not _NAME_RE.match(name):
        raise InvalidToolSpec(
            f"invalid {what} `{name}`: only letters, digits, '.', '_' and '-' are allowed"
        )
    return name


@dataclass(frozen=True)
class ToolSpec:
    """A ``name[:version]`` request."""
    name: str
    version: str | None = None

    @staticmethod
    def parse(text: str) -> ToolSpec:
        """
        Parse ``name`` or ``name:version``; aliases become canonical names.

        Raises:
            InvalidToolSpec: If the text is malformed
        """
        text = text.strip()
        name, sep, version = text.partition(":")
        name = validate_name(canonical_tool_name(name))
        if not sep:
            return ToolSpec(name=name)
        version = normalize_version(version)
        validate_name(version, "version")
        return ToolSpec(name=name, version=version)

    def resolve(self, version: str) -> ToolRef:
        return ToolRef(name=self.name, version=version)

    def __str__(self) -> str:
        return f"{self.name}:{self.version}" if self.version else self.name


@dataclass(frozen=True)
class ToolRef:
    """A fully resolved ``name:version`` reference."""
    name: str
    version: str

    @staticmethod
    def parse(text: str) -> ToolRef:
        """
        Parse ``name:version``.

        Raises:
            InvalidToolSpec: If the version part is missing
        """
        spec = ToolSpec.parse(text)
        if spec.version is None:
            raise InvalidToolSpec(
                f"`{text}` must include a version",
                remediation=f"use `{spec.name}:<version>`",
            )
        return ToolRef(name=spec.name, version=spec.version)

    def __str__(self) -> str:
        return f"{self.name}:{self.version}"


@dataclass(frozen=True)
class SupportedToolView:
    """One row of ``tool list --supported``."""
    name: str
    aliases: tuple[str, ...] = field(default_factory=tuple)
    source: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "aliases": list(self.aliases), "source": self.source}


def supported_tools() -> list[SupportedToolView]:
    return sorted(
        (SupportedToolView(p.name, p.aliases, p.source_label) for p in TOOL_POLICIES),
        key=lambda v: v.name,
    )
