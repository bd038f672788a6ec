"""
Tests for persisted configuration (toolkeeper/config.py).
"""

import os
from pathlib import Path

import pytest

from toolkeeper.config import (
    AuthConfig,
    KeeperConfig,
    RunConfig,
    config_path,
    get_value,
    load_config,
    mask_secret,
    resolve_github_token,
    save_config,
    set_value,
    unset_value,
)
from toolkeeper.errors import ConfigCorrupt


class TestConfigDataclasses:
    """Tests for the config dataclasses."""

    def test_defaults_are_empty(self):
        """Test a default config has no token and no proxies."""
        cfg = KeeperConfig()
        assert cfg.auth.github_token is None
        assert cfg.run.https_proxy is None
        assert cfg.run.no_proxy is None

    def test_from_dict_round_trip(self):
        """Test from_dict reads both sections and to_dict writes them back."""
        data = {
            "auth": {"github_token": "ghp_secret"},
            "run": {"https_proxy": "http://proxy:8080", "no_proxy": "localhost,.internal"},
        }
        cfg = KeeperConfig.from_dict(data)
        assert cfg.auth.github_token == "ghp_secret"
        assert cfg.run.https_proxy == "http://proxy:8080"
        out = cfg.to_dict()
        assert out["auth"]["github_token"] == "ghp_secret"
        assert out["run"]["no_proxy"] == "localhost,.internal"

    def test_run_config_rejects_proxy_without_scheme(self):
        """Test proxy values must be URLs."""
        with pytest.raises(ValueError):
            RunConfig(http_proxy="proxy.example.com:8080")

    def test_auth_config_blank_token_is_none(self):
        """Test whitespace-only tokens are treated as unset."""
        assert AuthConfig.from_dict({"github_token": "   "}).github_token is None


class TestConfigPath:
    """Tests for config path resolution."""

    def test_override_variable_wins(self, tmp_path):
        """Test TOOLKEEPER_CONFIG overrides XDG and HOME."""
        env = {"TOOLKEEPER_CONFIG": str(tmp_path / "custom.yml"), "HOME": "/home/x"}
        assert config_path(env) == tmp_path / "custom.yml"

    def test_xdg_config_home(self):
        """Test XDG_CONFIG_HOME is used when set."""
        env = {"XDG_CONFIG_HOME": "/xdg", "HOME": "/home/x"}
        assert config_path(env) == Path("/xdg/toolkeeper/config.yml")

    def test_home_fallback(self):
        """Test ~/.config is used without XDG_CONFIG_HOME."""
        assert config_path({"HOME": "/home/x"}) == Path("/home/x/.config/toolkeeper/config.yml")

    def test_no_home_raises(self):
        """Test an empty environment cannot resolve a path."""
        with pytest.raises(ConfigCorrupt):
            config_path({})


class TestLoadSave:
    """Tests for loading and saving YAML config files."""

    def test_missing_file_yields_defaults(self, tmp_path):
        """Test a missing config file is not an error."""
        assert load_config(tmp_path / "absent.yml") == KeeperConfig()

    def test_invalid_yaml_raises(self, tmp_path):
        """Test malformed YAML raises ConfigCorrupt with a remediation."""
        path = tmp_path / "config.yml"
        path.write_text("auth: [unclosed\n")
        with pytest.raises(ConfigCorrupt) as exc:
            load_config(path)
        assert exc.value.remediation is not None

    def test_non_mapping_raises(self, tmp_path):
        """Test a top-level list is rejected."""
        path = tmp_path / "config.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigCorrupt):
            load_config(path)

    def test_invalid_proxy_raises(self, tmp_path):
        """Test invalid proxy values surface as ConfigCorrupt."""
        path = tmp_path / "config.yml"
        path.write_text("run:\n  http_proxy: not-a-url\n")
        with pytest.raises(ConfigCorrupt):
            load_config(path)

    def test_save_then_load(self, tmp_path):
        """Test saved config loads back with owner-only permissions."""
        path = tmp_path / "nested" / "config.yml"
        cfg = set_value(KeeperConfig(), "github-token", "ghp_abcdefgh12345678")
        save_config(cfg, path)
        loaded = load_config(path)
        assert loaded.auth.github_token == "ghp_abcdefgh12345678"
        assert os.stat(path).st_mode & 0o777 == 0o600


class TestValues:
    """Tests for get/set/unset of config keys."""

    def test_set_and_get(self):
        """Test set_value returns an updated copy."""
        cfg = KeeperConfig()
        updated = set_value(cfg, "run-https-proxy", "http://proxy:3128")
        assert get_value(updated, "run-https-proxy") == "http://proxy:3128"
        assert get_value(cfg, "run-https-proxy") is None

    def test_unset(self):
        """Test unset_value clears a key."""
        cfg = set_value(KeeperConfig(), "run-no-proxy", "localhost")
        assert get_value(unset_value(cfg, "run-no-proxy"), "run-no-proxy") is None

    def test_unknown_key(self):
        """Test unknown keys list the valid ones."""
        with pytest.raises(ConfigCorrupt) as exc:
            get_value(KeeperConfig(), "nope")
        assert "github-token" in exc.value.remediation

    def test_set_invalid_proxy(self):
        """Test setting an invalid proxy raises ConfigCorrupt."""
        with pytest.raises(ConfigCorrupt):
            set_value(KeeperConfig(), "run-http-proxy", "no scheme")


class TestSecrets:
    """Tests for token resolution and masking."""

    def test_mask_long_secret(self):
        """Test long secrets keep four characters at each end."""
        assert mask_secret("ghp_1234567890abcd") == "ghp_...abcd"

    def test_mask_short_secret(self):
        """Test short secrets are fully masked."""
        assert mask_secret("short") == "********"

    def test_token_precedence(self):
        """Test explicit > GITHUB_TOKEN > GH_TOKEN > config."""
        cfg = set_value(KeeperConfig(), "github-token", "from-config")
        env = {"GITHUB_TOKEN": "from-github", "GH_TOKEN": "from-gh"}
        assert resolve_github_token("explicit", env, cfg) == "explicit"
        assert resolve_github_token(None, env, cfg) == "from-github"
        assert resolve_github_token(None, {"GH_TOKEN": "from-gh"}, cfg) == "from-gh"
        assert resolve_github_token(None, {}, cfg) == "from-config"
        assert resolve_github_token(None, {}, KeeperConfig()) is None
