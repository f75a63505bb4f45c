"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from adaptive_router.config import BudgetPolicy, Environment, Settings, get_settings


class TestSettings:
    """Test Settings model and validation."""

    def test_default_settings_load_correctly(self):
        """Defaults cover the routing thresholds and policies."""
        settings = Settings()

        assert settings.environment == Environment.DEV
        assert settings.debug is True  # Auto-set from DEV environment
        assert settings.response_similarity_threshold == 0.7
        assert settings.semantic_similarity_threshold == 0.85
        assert settings.prefetch_similarity_threshold == 0.8
        assert settings.model_max_attempts == 3
        assert settings.budget_policy is BudgetPolicy.SOFT
        assert settings.embedding_dimensions == 384

    def test_production_rejects_default_litellm_key(self):
        """Production refuses the development LiteLLM key."""
        with pytest.raises(RuntimeError) as exc_info:
            Settings(environment=Environment.PROD)

        assert "LITELLM_API_KEY" in str(exc_info.value)

    def test_production_accepts_real_key(self):
        settings = Settings(environment=Environment.PROD, litellm_api_key="sk-live-4f9a2c")
        assert settings.is_prod is True
        assert settings.is_dev is False

    def test_is_dev_property_includes_test(self):
        settings = Settings(environment=Environment.TEST)
        assert settings.is_dev is True
        assert settings.is_prod is False

    def test_rag_weights_cannot_both_be_zero(self):
        with pytest.raises(ValidationError):
            Settings(rag_vector_weight=0.0, rag_keyword_weight=0.0)

    def test_threshold_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            Settings(semantic_similarity_threshold=1.5)

    def test_budget_policy_from_env(self, monkeypatch):
        """BUDGET_POLICY is read case-insensitively from the environment."""
        monkeypatch.setenv("BUDGET_POLICY", "hard")
        assert Settings().budget_policy is BudgetPolicy.HARD

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()
