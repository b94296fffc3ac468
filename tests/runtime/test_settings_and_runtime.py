from __future__ import annotations

import asyncio

from ghpulse import GhPulseSettings, build_runtime
from ghpulse.settings import env_first
from ghpulse.store import InMemoryDocumentStore
from ghpulse.upstream import GitHubClient


def run_async(coro):
    return asyncio.run(coro)


def test_settings_defaults():
    settings = GhPulseSettings()
    assert settings.store_backend == "inmemory"
    assert settings.fresh_for_s == 3600.0
    assert settings.expires_after_s == 86400.0
    assert settings.rate_limit_budget == 5000
    assert settings.rate_limit_window_s == 3600.0
    assert settings.max_attempts == 3
    assert settings.batch_size == 20
    assert settings.poll_interval_s == 600.0
    assert settings.processing_timeout_s == 300.0
    assert settings.upstream_timeout_s == 60.0
    assert settings.completed_retention_s == 86400.0
    assert settings.failed_retention_s == 7 * 86400.0


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("GHPULSE_STORE_BACKEND", "REDIS")
    monkeypatch.setenv("GHPULSE_REDIS_HOST", "cache.internal")
    monkeypatch.setenv("GHPULSE_REDIS_PASSWORD", "pw")
    monkeypatch.delenv("GHPULSE_REDIS_URL", raising=False)
    monkeypatch.delenv("GHPULSE_GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_fallback")
    monkeypatch.setenv("GHPULSE_RATE_LIMIT_BUDGET", "100")
    monkeypatch.setenv("GHPULSE_REFRESH_BATCH_SIZE", "5")
    monkeypatch.delenv("GHPULSE_REFRESH_API_SECRET", raising=False)
    monkeypatch.setenv("BACKGROUND_REFRESH_API_SECRET", "legacy-secret")

    settings = GhPulseSettings.from_env()

    assert settings.store_backend == "redis"
    assert settings.redis_url == "redis://:pw@cache.internal:6379/0"
    assert settings.github_token == "ghp_fallback"
    assert settings.rate_limit_budget == 100
    assert settings.batch_size == 5
    assert settings.refresh_api_secret == "legacy-secret"


def test_retention_settings_from_env(monkeypatch):
    monkeypatch.setenv("GHPULSE_REFRESH_COMPLETED_RETENTION_S", "600")
    monkeypatch.setenv("GHPULSE_REFRESH_FAILED_RETENTION_S", "off")

    settings = GhPulseSettings.from_env()

    assert settings.completed_retention_s == 600.0
    assert settings.failed_retention_s is None


def test_env_first_skips_blank_values(monkeypatch):
    monkeypatch.setenv("GHPULSE_A", "   ")
    monkeypatch.setenv("GHPULSE_B", " value ")
    assert env_first("GHPULSE_A", "GHPULSE_B") == "value"
    assert env_first("GHPULSE_MISSING", default="fallback") == "fallback"


def test_build_runtime_wires_shared_store_and_settings():
    settings = GhPulseSettings(rate_limit_budget=7, github_token="t", upstream_timeout_s=5)
    runtime = build_runtime(settings, store=InMemoryDocumentStore())

    assert isinstance(runtime.upstream, GitHubClient)
    assert runtime.limiter.budget == 7
    assert runtime.queue.max_attempts == 3
    assert runtime.store.backend_id == "inmemory"
    run_async(runtime.aclose())


def test_runtime_components_share_one_store():
    class _Upstream:
        async def fetch(self, subject_key, refresh_type):
            return {"login": subject_key}

    async def scenario() -> None:
        runtime = build_runtime(
            GhPulseSettings(), store=InMemoryDocumentStore(), upstream=_Upstream()
        )
        await runtime.cache.get_or_refresh("octocat")
        snapshot = await runtime.limiter.snapshot()
        assert snapshot.remaining == 4999
        assert await runtime.store.get("github-users", "octocat") is not None
        await runtime.aclose()

    run_async(scenario())
