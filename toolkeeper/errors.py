"""
Error taxonomy for tool lifecycle and dependency audit operations.

Every error carries a human-readable message, whether retrying could help,
and an optional remediation hint printed by the CLI.
"""

from __future__ import annotations


class KeeperError(Exception):
    """
    Base exception for toolkeeper errors.

    Attributes:
        message: Human-readable error message
        retryable: Whether this error can be retried
        remediation: Suggested fix for the error
    """
    def __init__(
        self,
        message: str,
        retryable: bool = False,
        remediation: str | None = None,
    ):
        self.message = message
        self.retryable = retryable
        self.remediation = remediation
        super().__init__(message)


class ScopeUnavailable(KeeperError):
    """Neither the system nor the user roots are writable."""


class ChecksumMismatch(KeeperError):
    """Downloaded artifact digest differs from the release metadata."""

    def __init__(self, asset: str, expected: str, actual: str):
        super().__init__(
            f"sha256 mismatch for {asset}: expected {expected}, got {actual}",
            remediation="the download was discarded; retry later or report the release",
        )
        self.asset = asset
        self.expected = expected
        self.actual = actual


class DownloadFailed(KeeperError):
    """Release metadata or asset could not be fetched."""

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message, retryable=True, remediation=remediation)


class VersionNotFound(KeeperError):
    """Requested version is not present in the store."""


class VersionInUse(KeeperError):
    """Version is the active pointer target and cannot be removed."""


class ManifestParseError(KeeperError):
    """
    Dependency manifest or lockfile is malformed.

    Attributes:
        location: Path plus line/column or dotted key, when known
    """
    def __init__(self, message: str, location: str | None = None):
        text = f"{location}: {message}" if location else message
        super().__init__(text)
        self.location = location


class RegistryQueryFailed(KeeperError):
    """Registry or source-host lookup failed for a single dependency."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ConfigCorrupt(KeeperError):
    """Persisted configuration could not be parsed or has invalid values."""


class ToolNotFound(KeeperError):
    """No managed or PATH executable resolves for the requested tool."""


class StoreCorrupt(KeeperError):
    """Active pointer references a version missing from the store."""


class UnsupportedTool(KeeperError):
    """Tool name does not match any built-in policy."""


class InvalidToolSpec(KeeperError):
    """Tool spec string is not a valid ``name[:version]``."""
