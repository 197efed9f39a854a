"""Tests for omniaudit.core.config: settings loading and validation."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from omniaudit.core.config import Settings, get_settings


class TestSettings:
    """Verify settings defaults and environment overrides."""

    def test_default_app_env(self):
        s = Settings()
        assert s.app_env == "development"

    def test_detection_thresholds(self):
        s = Settings()
        assert s.detection_confidence_threshold == 0.3
        assert s.detection_high_confidence_threshold == 0.7

    def test_scheduler_defaults(self):
        s = Settings()
        assert s.scheduler_backend == "local"
        assert s.max_concurrent_jobs == 2
        assert s.max_concurrent_platforms == 3

    def test_default_redis_url(self):
        s = Settings()
        assert s.redis_url.startswith("redis://")
        assert s.celery_broker_url.startswith("redis://")
        assert s.progress_channel_prefix == "omniaudit:progress"

    def test_tool_defaults(self):
        s = Settings()
        assert s.slither_bin == "slither"
        assert s.cargo_bin == "cargo"
        assert s.static_tool_timeout_seconds == 120
        assert s.max_file_size_bytes == 10 * 1024 * 1024

    def test_ai_defaults(self):
        s = Settings()
        assert len(s.ai_models) >= 1
        assert s.ai_temperature == 0.1
        assert s.ensemble_line_tolerance == 2

    @patch.dict(os.environ, {"OMNIAUDIT_APP_ENV": "production", "OMNIAUDIT_MAX_CONCURRENT_JOBS": "8"})
    def test_env_override(self):
        """Environment variables with OMNIAUDIT_ prefix override defaults."""
        s = Settings()
        assert s.app_env == "production"
        assert s.max_concurrent_jobs == 8

    @patch.dict(os.environ, {"OMNIAUDIT_AI_MODELS": '["anthropic/claude-sonnet-4", "gpt-4o"]'})
    def test_model_list_from_json_env(self):
        s = Settings()
        assert s.ai_models == ["anthropic/claude-sonnet-4", "gpt-4o"]

    @patch.dict(os.environ, {"OMNIAUDIT_DETECTION_CONFIDENCE_THRESHOLD": "1.5"})
    def test_threshold_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            Settings()

    def test_get_settings_returns_same_instance(self):
        """get_settings is cached; same object each call."""
        get_settings.cache_clear()
        s1 = get_settings()
        s2 = get_settings()
        assert s1 is s2
