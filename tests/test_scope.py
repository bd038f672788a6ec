"""
Tests for scope resolution (toolkeeper/scope.py).
"""

from pathlib import Path

import pytest

from toolkeeper.errors import ScopeUnavailable
from toolkeeper.scope import Scope, is_writable_dir, paths_for_scope, resolve_scope


class TestPathsForScope:
    """Tests for per-scope directory layout."""

    def test_system_defaults(self):
        """Test the default system layout."""
        paths = paths_for_scope(Scope.SYSTEM, {})
        assert paths.store_dir == Path("/var/lib/toolkeeper/tools/store")
        assert paths.current_dir == Path("/var/lib/toolkeeper/tools/current")
        assert paths.bin_dir == Path("/usr/local/bin")

    def test_system_overrides(self, tmp_path):
        """Test system root and bin overrides."""
        env = {"TOOLKEEPER_SYSTEM_ROOT": str(tmp_path / "root"), "TOOLKEEPER_SYSTEM_BIN": str(tmp_path / "bin")}
        paths = paths_for_scope(Scope.SYSTEM, env)
        assert paths.store_dir == tmp_path / "root" / "tools" / "store"
        assert paths.bin_dir == tmp_path / "bin"

    def test_user_home_fallbacks(self):
        """Test user scope falls back to ~/.local locations."""
        paths = paths_for_scope(Scope.USER, {"HOME": "/home/u"})
        assert paths.store_dir == Path("/home/u/.local/share/toolkeeper/tools/store")
        assert paths.current_dir == Path("/home/u/.local/state/toolkeeper/tools/current")
        assert paths.bin_dir == Path("/home/u/.local/bin")

    def test_user_xdg_variables(self):
        """Test XDG variables take precedence."""
        env = {"HOME": "/home/u", "XDG_DATA_HOME": "/d", "XDG_STATE_HOME": "/s", "XDG_BIN_HOME": "/b"}
        paths = paths_for_scope(Scope.USER, env)
        assert paths.store_dir == Path("/d/toolkeeper/tools/store")
        assert paths.current_dir == Path("/s/toolkeeper/tools/current")
        assert paths.bin_dir == Path("/b")

    def test_user_without_home(self):
        """Test the user scope is unavailable without HOME or XDG variables."""
        assert paths_for_scope(Scope.USER, {}) is None

    def test_scope_names(self):
        """Test scopes are named after their command line flags."""
        assert Scope.SYSTEM.value == "system"
        assert Scope.USER.value == "user"


class TestResolveScope:
    """Tests for automatic and explicit scope selection."""

    def test_explicit_request_wins(self):
        """Test an explicit scope is returned without writability checks."""
        paths = resolve_scope(Scope.USER, {"HOME": "/home/u"}, is_writable=lambda p: False)
        assert paths.scope is Scope.USER

    def test_explicit_user_without_home(self):
        """Test an explicit user scope without HOME fails."""
        with pytest.raises(ScopeUnavailable):
            resolve_scope(Scope.USER, {})

    def test_prefers_writable_system(self):
        """Test the system scope is chosen when writable."""
        paths = resolve_scope(None, {"HOME": "/home/u"}, is_writable=lambda p: True)
        assert paths.scope is Scope.SYSTEM

    def test_falls_back_to_user(self):
        """Test the user scope is chosen when the system roots are read-only."""
        def writable(path):
            return str(path).startswith("/home/u")

        paths = resolve_scope(None, {"HOME": "/home/u"}, is_writable=writable)
        assert paths.scope is Scope.USER

    def test_nothing_writable(self):
        """Test ScopeUnavailable when no scope is usable."""
        with pytest.raises(ScopeUnavailable):
            resolve_scope(None, {"HOME": "/home/u"}, is_writable=lambda p: False)


class TestIsWritableDir:
    """Tests for writability probing."""

    def test_existing_dir(self, tmp_path):
        """Test an existing writable directory."""
        assert is_writable_dir(tmp_path)

    def test_missing_dir_under_writable_parent(self, tmp_path):
        """Test a not-yet-created directory under a writable parent."""
        assert is_writable_dir(tmp_path / "a" / "b")

    def test_file_is_not_dir(self, tmp_path):
        """Test a regular file does not count."""
        target = tmp_path / "file"
        target.write_text("x")
        assert not is_writable_dir(target)
