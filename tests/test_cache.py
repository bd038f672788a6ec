"""
Tests for TTL caches (toolkeeper/cache.py).
"""

import json

from toolkeeper.cache import TtlCache, cache_file_path


class TestTtlCache:
    """Tests for cache freshness and persistence."""

    def test_fresh_and_expired(self):
        """Test entries expire after the TTL."""
        cache = TtlCache(None)
        cache.put("k", {"v": 1}, now=1000)
        assert cache.get("k", 60, now=1030) == {"v": 1}
        assert cache.get("k", 60, now=1061) is None

    def test_future_timestamp_is_stale(self):
        """Test entries fetched in the future are ignored."""
        cache = TtlCache(None)
        cache.put("k", "v", now=2000)
        assert cache.get("k", 60, now=1000) is None

    def test_save_only_when_dirty(self, tmp_path):
        """Test unchanged caches are not rewritten."""
        path = tmp_path / "sub" / "cache.json"
        cache = TtlCache(path)
        assert not cache.save_if_dirty()
        cache.put("k", "v")
        assert cache.save_if_dirty()
        assert json.loads(path.read_text())["schema_version"] == 1
        assert not cache.save_if_dirty()

    def test_corrupt_or_foreign_file_is_empty(self, tmp_path):
        """Test unreadable or foreign-schema files load as empty."""
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        assert TtlCache.load(path).get("k", 60) is None
        path.write_text(json.dumps({"schema_version": 99, "entries": {"k": {}}}))
        assert TtlCache.load(path).get("k", 60) is None

    def test_cache_file_path(self, tmp_path):
        """Test XDG_CACHE_HOME is honoured and HOME is the fallback."""
        assert cache_file_path({"XDG_CACHE_HOME": str(tmp_path)}, "x.json") == tmp_path / "toolkeeper" / "x.json"
        assert cache_file_path({"HOME": str(tmp_path)}, "x.json") == tmp_path / ".cache" / "toolkeeper" / "x.json"
        assert cache_file_path({}, "x.json") is None
