"""
toolkeeper - Managed CLI tool versions and dependency maintenance audits.

Core Modules:
- Tool lifecycle: scopes, artifact store, verified downloads, install/update/use/uninstall
- Listing and run resolution: installed versions, update checks, launching tools
- Dependency audit: Cargo manifest parsing, concurrent signal collection, risk classification
- Foundation: config, proxy-aware HTTP client, logging, error taxonomy
"""

__version__ = "0.1.0"

from .errors import (
    KeeperError,
    ScopeUnavailable,
    ChecksumMismatch,
    DownloadFailed,
    VersionNotFound,
    VersionInUse,
    ManifestParseError,
    RegistryQueryFailed,
    ConfigCorrupt,
    ToolNotFound,
    StoreCorrupt,
    UnsupportedTool,
    InvalidToolSpec,
)
from .scope import Scope, ScopePaths, resolve_scope
from .store import ArtifactStore, InstalledVersion
from .policy import TOOL_POLICIES, ToolPolicy, ToolRef, ToolSpec
from .lifecycle import ToolManager
from .listing import build_tool_list
from .runner import resolve_executable, run_tool
from .manifest import DependencySpec, parse_manifest
from .audit_engine import DependencyRecord, RiskLevel, audit_dependencies, classify_risk
from .signals import SignalClient
from .netclient import HttpClient, ProxySettings

__all__ = [
    "__version__",
    # Errors
    "KeeperError",
    "ScopeUnavailable",
    "ChecksumMismatch",
    "DownloadFailed",
    "VersionNotFound",
    "VersionInUse",
    "ManifestParseError",
    "RegistryQueryFailed",
    "ConfigCorrupt",
    "ToolNotFound",
    "StoreCorrupt",
    "UnsupportedTool",
    "InvalidToolSpec",
    # Tool lifecycle
    "Scope",
    "ScopePaths",
    "resolve_scope",
    "ArtifactStore",
    "InstalledVersion",
    "TOOL_POLICIES",
    "ToolPolicy",
    "ToolRef",
    "ToolSpec",
    "ToolManager",
    "build_tool_list",
    "resolve_executable",
    "run_tool",
    # Dependency audit
    "DependencySpec",
    "parse_manifest",
    "DependencyRecord",
    "RiskLevel",
    "audit_dependencies",
    "classify_risk",
    "SignalClient",
    # Network
    "HttpClient",
    "ProxySettings",
]
