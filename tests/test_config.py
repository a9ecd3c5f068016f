"""Tests for configuration loading and validation."""

import json
import tempfile

import pytest
import yaml

from session_engine.config import load_config, validate_config
from session_engine.engine import SessionEngine
from session_engine.errors import ConfigError


class TestLoadConfig:
    def test_load_defaults(self):
        config = load_config(config_dict={})
        assert config.version == "1.0"
        assert config.context_budget == 30_000
        assert config.backend.provider == "gemini"
        assert config.retry.max_attempts == 3
        assert config.retry.base_delay == 0.5
        assert config.cache.ttl_seconds == 1800.0
        assert config.conversation.exchange_ceiling == 10
        assert config.conversation.max_message_length == 4000
        assert config.uploads.max_file_size == 10 * 1024 * 1024
        assert config.uploads.max_files_per_turn == 5
        assert config.storage.backend == "sqlite"
        assert config.features.persistence is True
        assert config.rate_limit.enabled is True
        assert config.rate_limit.max_requests == 10
        assert config.rate_limit.window_seconds == 60.0

    def test_load_from_dict(self):
        config = load_config(config_dict={
            "context_budget": 8000,
            "backend": {"provider": "openai", "model": "gpt-4o-mini"},
            "conversation": {"exchange_ceiling": 3},
        })
        assert config.context_budget == 8000
        assert config.backend.provider == "openai"
        assert config.backend.model == "gpt-4o-mini"
        assert config.conversation.exchange_ceiling == 3
        # Untouched fields keep their defaults.
        assert config.conversation.max_message_length == 4000

    def test_load_from_yaml_file(self):
        raw = {
            "version": "1.0",
            "context_budget": 12_000,
            "cache": {"ttl_seconds": 60},
        }
        with tempfile.NamedTemporaryFile(suffix=".yaml", mode="w", delete=False) as f:
            yaml.dump(raw, f)
            f.flush()
            config = load_config(config_path=f.name)
        assert config.context_budget == 12_000
        assert config.cache.ttl_seconds == 60

    def test_load_from_json_file(self):
        with tempfile.NamedTemporaryFile(suffix=".json", mode="w", delete=False) as f:
            json.dump({"retry": {"max_attempts": 5}}, f)
            f.flush()
            config = load_config(config_path=f.name)
        assert config.retry.max_attempts == 5

    def test_storage_paths_follow_root(self):
        config = load_config(config_dict={"storage_root": "/tmp/se"})
        assert config.storage.sqlite_path == "/tmp/se/conversations.db"
        assert config.storage.root == "/tmp/se/store"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "nope.yaml")

    def test_discovers_config_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "session-engine.yaml").write_text("context_budget: 4242\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().context_budget == 4242


class TestValidateConfig:
    def test_defaults_are_valid(self):
        assert validate_config(load_config(config_dict={})) == []

    def test_unknown_provider(self):
        errors = validate_config(load_config(config_dict={"backend": {"provider": "nope"}}))
        assert any("Unknown backend provider" in e for e in errors)

    def test_bad_retry_delays(self):
        errors = validate_config(load_config(config_dict={
            "retry": {"base_delay": 10, "max_delay": 1},
        }))
        assert any("base_delay" in e for e in errors)

    def test_zero_attempts(self):
        errors = validate_config(load_config(config_dict={"retry": {"max_attempts": 0}}))
        assert any("max_attempts" in e for e in errors)

    def test_bad_threshold(self):
        errors = validate_config(load_config(config_dict={"optimizer": {"soft_threshold": 1.5}}))
        assert any("soft_threshold" in e for e in errors)

    def test_bad_ceiling_and_ttl(self):
        errors = validate_config(load_config(config_dict={
            "conversation": {"exchange_ceiling": 0},
            "cache": {"ttl_seconds": 0},
        }))
        assert len(errors) == 2

    def test_bad_rate_limit(self):
        errors = validate_config(load_config(config_dict={
            "rate_limit": {"max_requests": 0, "window_seconds": -1},
        }))
        assert any("rate_limit.max_requests" in e for e in errors)
        assert any("rate_limit.window_seconds" in e for e in errors)

    def test_unknown_storage_backend(self):
        errors = validate_config(load_config(config_dict={"storage": {"backend": "redis"}}))
        assert any("storage backend" in e for e in errors)

    def test_provider_missing_from_providers_section(self):
        errors = validate_config(load_config(config_dict={
            "backend": {"provider": "gemini"},
            "providers": {"openai": {"api_key": "x"}},
        }))
        assert any("not found in providers" in e for e in errors)

    def test_engine_rejects_invalid_config(self, fake_backend):
        config = load_config(config_dict={"context_budget": 0, "features": {"persistence": False}})
        with pytest.raises(ConfigError) as exc_info:
            SessionEngine(config, backend=fake_backend)
        assert any("context_budget" in e for e in exc_info.value.errors)
