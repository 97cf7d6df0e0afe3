"""
Unit tests for configuration loading and the TTL/LRU cache.
"""

import json

import pytest

from targetgraph.core.caching import CacheKey, MemoryCache, NullCache, build_cache
from targetgraph.core.config import Config, RUN_BUDGET_CEILING_MS, RUN_BUDGET_FLOOR_MS
from targetgraph.core.exceptions import ConfigurationError, MissingConfigurationError


@pytest.mark.unit
class TestConfig:

    def test_testing_environment_overrides(self):
        config = Config(env="testing")
        assert config.batch_min_delay_ms == 0
        assert config.batch_max_delay_ms == 0
        assert config.cache_enabled is False
        assert config.openai_api_key is None
        assert config["phase_timeout_ms"] == 2000

    def test_explicit_overrides_win(self):
        config = Config(env="testing", overrides={"phase_timeout_ms": 300, "string_confidence": 0.4})
        assert config.phase_timeout_ms == 300
        assert config.get("string_confidence") == 0.4

    def test_unknown_key(self):
        config = Config(env="testing")
        assert config.not_a_key is None
        with pytest.raises(MissingConfigurationError) as exc:
            config["not_a_key"]
        assert exc.value.config_key == "not_a_key"

    def test_invalid_environment(self):
        with pytest.raises(ConfigurationError):
            Config(env="moon")

    @pytest.mark.parametrize("overrides", [
        {"mcp_transport_mode": "carrier_pigeon"},
        {"string_confidence": 0},
        {"disease_over_target_confidence": 1.5},
        {"batch_min_delay_ms": 50, "batch_max_delay_ms": 10},
        {"ranking_timeout_ms": 0},
        {"cache_max_entries": 0},
    ])
    def test_validation_failures(self, overrides):
        with pytest.raises(ConfigurationError):
            Config(env="testing", overrides=overrides)

    @pytest.mark.parametrize("budget,expected", [
        (1_000, RUN_BUDGET_FLOOR_MS),
        (300_000, 300_000),
        (5_000_000, RUN_BUDGET_CEILING_MS),
    ])
    def test_effective_run_budget_is_clamped(self, budget, expected):
        config = Config(env="testing", overrides={"run_hard_budget_ms": budget})
        assert config.effective_run_budget_ms == expected

    def test_api_key_is_masked_on_export(self, tmp_path):
        config = Config(env="development", overrides={"openai_api_key": "sk-test-123456789012"})
        assert config.to_dict()["openai_api_key"] == "***"

        path = tmp_path / "config.json"
        config.save_to_file(str(path))
        assert json.loads(path.read_text())["openai_api_key"] == "***"

        reloaded = Config.from_file(str(path), env="testing")
        assert reloaded.openai_api_key is None

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            Config.from_file(str(tmp_path / "missing.json"))


@pytest.mark.unit
class TestCacheKey:

    def test_source_call_key_ignores_param_order(self):
        a = CacheKey.source_call("opentargets", "search", {"query": "asthma", "size": 8})
        b = CacheKey.source_call("opentargets", "search", {"size": 8, "query": "asthma"})
        assert a == b
        assert a.startswith("targetgraph:")

    def test_literature_key_normalises_case(self):
        assert CacheKey.literature("Asthma", "il6", None) == CacheKey.literature("asthma", "IL6", "")


@pytest.mark.unit
class TestMemoryCache:

    async def test_set_get_and_expiry(self):
        cache = MemoryCache(max_size=4, default_ttl=60)
        await cache.set("a", 1)
        assert await cache.get("a") == 1

        await cache.set("b", 2, ttl=-1)
        assert await cache.get("b") is None

    async def test_lru_eviction(self):
        cache = MemoryCache(max_size=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("a")
        await cache.set("c", 3)
        assert await cache.get("b") is None
        assert await cache.get("a") == 1
        assert await cache.get("c") == 3

    async def test_get_or_load_respects_cache_if(self):
        cache = MemoryCache()
        calls = []

        async def loader():
            calls.append(1)
            return []

        await cache.get_or_load("empty", loader, cache_if=bool)
        await cache.get_or_load("empty", loader, cache_if=bool)
        assert len(calls) == 2

    async def test_stats_hit_rate(self):
        cache = MemoryCache()
        await cache.set("a", 1)
        await cache.get("a")
        await cache.get("missing")
        stats = await cache.stats()
        assert stats["size"] == 1
        assert stats["hit_rate"] == 0.5

    async def test_null_cache_never_stores(self):
        cache = build_cache(Config(env="testing"))
        assert isinstance(cache, NullCache)
        await cache.set("a", 1)
        assert await cache.get("a") is None
