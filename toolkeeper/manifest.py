"""
Cargo manifest and lockfile parsing for the dependency audit.

Reads ``Cargo.toml`` (a package or a virtual workspace) and, when present,
``Cargo.lock`` into a sorted list of DependencySpec. Only normal
dependencies are kept unless dev, build or optional ones are requested.
"""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ManifestParseError

MANIFEST_NAME = "Cargo.toml"
LOCKFILE_NAME = "Cargo.lock"

SECTION_KINDS = {
    "dependencies": "normal",
    "dev-dependencies": "dev",
    "dev_dependencies": "dev",
    "build-dependencies": "build",
    "build_dependencies": "build",
}

_TOML_POSITION_RE = re.compile(r"\(at line (\d+), column (\d+)\)")


@dataclass(frozen=True)
class DependencySpec:
    """
    One dependency merged across every place it is declared.

    Attributes:
        name: Registry package name
        requirement: Comma-joined sorted version requirements
        kinds: Comma-joined sorted kinds (normal, dev, build)
        optional: True only if every declaration is optional
        resolved: Comma-joined sorted versions from the lockfile, if any
    """
    name: str
    requirement: str
    kinds: str
    optional: bool = False
    resolved: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "requirement": self.requirement,
            "kinds": self.kinds,
            "optional": self.optional,
            "resolved": self.resolved,
        }


@dataclass
class _Builder:
    requirements: set[str] = field(default_factory=set)
    kinds: set[str] = field(default_factory=set)
    optional: bool = True


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ManifestParseError("file not found", str(path)) from e
    except OSError as e:
        raise ManifestParseError(f"cannot read file: {e}", str(path)) from e
    except tomllib.TOMLDecodeError as e:
        location = str(path)
        match = _TOML_POSITION_RE.search(str(e))
        if match:
            location = f"{path}:{match.group(1)}:{match.group(2)}"
        raise ManifestParseError(f"invalid TOML: {e}", location) from e


def resolve_manifest_path(path: Path | None) -> Path:
    """
    Accept a manifest file or a directory containing one.

    Defaults to ``./Cargo.toml``.
    """
    path = Path.cwd() if path is None else path
    if path.is_dir():
        path = path / MANIFEST_NAME
    return path.resolve()


def _workspace_members(root: Path, workspace: dict[str, Any]) -> list[Path]:
    members = workspace.get("members", [])
    excludes = workspace.get("exclude", [])
    if not isinstance(members, list) or not isinstance(excludes, list):
        raise ManifestParseError("workspace members/exclude must be arrays", f"{root / MANIFEST_NAME}:workspace")

    excluded = {(root / str(e)).resolve() for e in excludes}
    out: list[Path] = []
    for pattern in members:
        if not isinstance(pattern, str):
            raise ManifestParseError("workspace member must be a string", f"{root / MANIFEST_NAME}:workspace.members")
        for match in sorted(root.glob(pattern)):
            manifest = match / MANIFEST_NAME
            if match.resolve() in excluded or not manifest.is_file():
                continue
            if manifest not in out:
                out.append(manifest)
    return out


def find_workspace_root(manifest_path: Path, doc: dict[str, Any]) -> tuple[Path, dict[str, Any]] | None:
    """
    Locate the workspace a package manifest belongs to.

    Honours an explicit ``package.workspace`` path, otherwise walks up the
    parent directories to the first Cargo.toml with a ``[workspace]`` table.

    Returns:
        (workspace manifest path, parsed document), or None for a standalone package
    """
    package = doc.get("package")
    explicit = package.get("workspace") if isinstance(package, dict) else None
    if isinstance(explicit, str):
        candidate = (manifest_path.parent / explicit / MANIFEST_NAME).resolve()
        candidate_doc = _load_toml(candidate)
        if not isinstance(candidate_doc.get("workspace"), dict):
            raise ManifestParseError(
                f"`package.workspace` points at {candidate}, which has no [workspace] table",
                f"{manifest_path}:package.workspace",
            )
        return candidate, candidate_doc

    for parent in manifest_path.parent.parents:
        candidate = parent / MANIFEST_NAME
        if not candidate.is_file():
            continue
        candidate_doc = _load_toml(candidate)
        if isinstance(candidate_doc.get("workspace"), dict):
            return candidate, candidate_doc
    return None


def _requirement_of(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("version"), str):
        return value["version"]
    return None


def _parse_entry(
    key: str,
    entry: Any,
    workspace_deps: dict[str, Any],
    location: str,
) -> tuple[str, str, bool] | None:
    """
    Normalize one dependency entry.

    Returns:
        (package name, requirement, optional), or None for path/git-only entries
    """
    if isinstance(entry, str):
        return key, entry, False
    if not isinstance(entry, dict):
        raise ManifestParseError("dependency must be a version string or a table", location)

    optional = entry.get("optional", False)
    if not isinstance(optional, bool):
        raise ManifestParseError("`optional` must be a boolean", location)

    source: dict[str, Any] = entry
    if entry.get("workspace") is True:
        inherited = workspace_deps.get(key)
        if inherited is None:
            raise ManifestParseError(
                f"`{key}` inherits from the workspace but [workspace.dependencies] has no such entry",
                location,
            )
        source = inherited if isinstance(inherited, dict) else {"version": inherited}

    package = entry.get("package") or source.get("package") or key
    if not isinstance(package, str):
        raise ManifestParseError("`package` must be a string", location)

    requirement = _requirement_of(source)
    if requirement is None:
        if "path" in source or "git" in source:
            return None
        requirement = "*"
    return package, requirement, optional


def _dependency_tables(doc: dict[str, Any], manifest: Path):
    for section, kind in SECTION_KINDS.items():
        if section in doc:
            yield section, kind, doc[section]
    targets = doc.get("target", {})
    if not isinstance(targets, dict):
        raise ManifestParseError("`target` must be a table", f"{manifest}:target")
    for cfg, table in targets.items():
        if not isinstance(table, dict):
            raise ManifestParseError("target entry must be a table", f"{manifest}:target.{cfg}")
        for section, kind in SECTION_KINDS.items():
            if section in table:
                yield f"target.{cfg}.{section}", kind, table[section]


def parse_lockfile(path: Path) -> dict[str, list[str]]:
    """
    Read resolved versions from a Cargo.lock.

    Returns:
        Package name -> sorted list of locked versions (empty dict if absent)
    """
    if not path.is_file():
        return {}
    doc = _load_toml(path)
    packages = doc.get("package", [])
    if not isinstance(packages, list):
        raise ManifestParseError("`package` must be an array of tables", f"{path}:package")

    resolved: dict[str, set[str]] = {}
    for index, pkg in enumerate(packages):
        if not isinstance(pkg, dict) or not isinstance(pkg.get("name"), str) or not isinstance(pkg.get("version"), str):
            raise ManifestParseError("package entry needs string `name` and `version`", f"{path}:package[{index}]")
        resolved.setdefault(pkg["name"], set()).add(pkg["version"])
    return {name: sorted(versions) for name, versions in resolved.items()}


def parse_manifest(
    manifest_path: Path,
    include_dev: bool = False,
    include_build: bool = False,
    include_optional: bool = False,
) -> list[DependencySpec]:
    """
    Parse a Cargo manifest (and its lockfile) into dependency specs.

    When the manifest has a ``[package]`` table only that package is read;
    a virtual workspace reads every member. A workspace member takes
    inherited dependencies and the lockfile from its workspace root.

    Args:
        manifest_path: Path to Cargo.toml
        include_dev: Keep dev-dependencies
        include_build: Keep build-dependencies
        include_optional: Keep optional dependencies

    Returns:
        Specs sorted by name

    Raises:
        ManifestParseError: On any malformed input
    """
    root_doc = _load_toml(manifest_path)
    root_dir = manifest_path.parent
    if "workspace" not in root_doc and "package" in root_doc:
        enclosing = find_workspace_root(manifest_path, root_doc)
    else:
        enclosing = None
    workspace_path, workspace_doc = enclosing or (manifest_path, root_doc)

    workspace = workspace_doc.get("workspace", {})
    if not isinstance(workspace, dict):
        raise ManifestParseError("`workspace` must be a table", f"{workspace_path}:workspace")
    workspace_deps = workspace.get("dependencies", {})
    if not isinstance(workspace_deps, dict):
        raise ManifestParseError("`workspace.dependencies` must be a table", f"{workspace_path}:workspace.dependencies")

    if "package" in root_doc or not workspace:
        documents = [(manifest_path, root_doc)]
    else:
        documents = [(m, _load_toml(m)) for m in _workspace_members(root_dir, workspace)]

    allowed = {"normal"}
    if include_dev:
        allowed.add("dev")
    if include_build:
        allowed.add("build")

    collected: dict[str, _Builder] = {}
    for path, doc in documents:
        for section, kind, table in _dependency_tables(doc, path):
            if not isinstance(table, dict):
                raise ManifestParseError(f"`{section}` must be a table", f"{path}:{section}")
            if kind not in allowed:
                continue
            for key, entry in table.items():
                parsed = _parse_entry(key, entry, workspace_deps, f"{path}:{section}.{key}")
                if parsed is None:
                    continue
                name, requirement, optional = parsed
                if optional and not include_optional:
                    continue
                builder = collected.setdefault(name, _Builder())
                builder.requirements.add(requirement)
                builder.kinds.add(kind)
                builder.optional = builder.optional and optional

    locked = parse_lockfile(workspace_path.parent / LOCKFILE_NAME)
    return [
        DependencySpec(
            name=name,
            requirement=",".join(sorted(b.requirements)),
            kinds=",".join(sorted(b.kinds)),
            optional=b.optional,
            resolved=",".join(locked[name]) if name in locked else None,
        )
        for name, b in sorted(collected.items())
    ]
