"""
Tests for application configuration.
"""

import pytest

from gateway.config import ConfigurationError, Settings, TierLimits
from tests.fakes import TEST_DATABASE_URL, make_settings


class TestCriticalConfig:
    """Fail-fast validation."""

    def test_missing_database_url_fails(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ConfigurationError, match="DATABASE_URL is required"):
            Settings(database_url="", _env_file=None)

    def test_non_postgres_database_url_fails(self):
        with pytest.raises(ConfigurationError, match="PostgreSQL"):
            Settings(database_url="sqlite:///gateway.db")

    def test_negative_constraints_fail(self):
        with pytest.raises(ConfigurationError, match="non-negative"):
            Settings(database_url=TEST_DATABASE_URL, max_images=-1)


class TestTierLimits:
    """Tier tables."""

    @pytest.mark.parametrize(
        "tier,expected",
        [
            ("free", TierLimits(10, 50, 100_000)),
            ("pro", TierLimits(30, 300, 2_000_000)),
            ("enterprise", TierLimits(60, 9999, 10_000_000)),
        ],
    )
    def test_default_tables(self, tier: str, expected: TierLimits):
        assert make_settings().tier_limits(tier) == expected

    def test_unknown_tier_gets_free_limits(self):
        settings = make_settings()
        assert settings.tier_limits("trial") == settings.tier_limits("free")

    def test_limits_are_configurable(self):
        settings = make_settings(pro_rate_per_minute=45)
        assert settings.tier_limits("pro").per_minute == 45


class TestDerivedSettings:
    """Properties computed from raw settings."""

    def test_allowed_image_types(self):
        assert make_settings().allowed_image_types == frozenset(
            {"image/png", "image/jpeg", "image/webp"}
        )

    def test_cors_origin_list(self):
        settings = make_settings(cors_origins="http://localhost:5173, tauri://localhost")
        assert settings.cors_origin_list == ["http://localhost:5173", "tauri://localhost"]

    def test_read_database_url_falls_back_to_primary(self):
        assert make_settings().read_database_url == TEST_DATABASE_URL

        replica = "postgresql+asyncpg://ro:ro@replica:5432/gateway"
        assert make_settings(database_read_url=replica).read_database_url == replica
