"""Configuration schema and loading."""

import json

import pytest
from pydantic import ValidationError

from chatgate.config import Config, load_config, save_config
from chatgate.config.schema import RetryConfig, ValidationRules


class TestSchema:
    def test_defaults(self, tmp_path):
        config = Config(workspace=tmp_path)

        assert config.engine.kind == "claude"
        assert config.admission.rate_limits["telegram"].max_requests == 10
        assert config.admission.rate_limits["http"].max_requests == 20
        assert config.admission.rate_limits["cli"].max_requests == 30
        assert config.admission.auth.enabled is False
        assert config.router.retry.max_attempts == 3
        assert config.router.breaker_scope == "platform"
        assert config.router.circuit_breaker_preset is None
        assert config.sessions.max_sessions_per_user == 5
        assert config.sessions.default_expiration_minutes == 30

    def test_workspace_is_expanded(self):
        config = Config(workspace="~/somewhere")
        assert "~" not in str(config.workspace)
        assert config.workspace.is_absolute()

    def test_invalid_pattern_is_rejected(self):
        with pytest.raises(ValidationError):
            ValidationRules(blocked_patterns=["(unclosed"])
        with pytest.raises(ValidationError):
            ValidationRules(user_id_pattern="[a-")

    def test_min_cannot_exceed_max(self):
        with pytest.raises(ValidationError):
            ValidationRules(min_length=10, max_length=5)

    def test_unknown_engine_kind(self):
        with pytest.raises(ValidationError):
            Config(engine={"kind": "gpt"})

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CHATGATE_MODEL", "opus")
        monkeypatch.setenv("CHATGATE_SESSIONS__MAX_SESSIONS_PER_USER", "2")

        config = Config()

        assert config.model == "opus"
        assert config.sessions.max_sessions_per_user == 2


class TestRetryDelays:
    def test_exponential(self):
        policy = RetryConfig()
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_never_below_initial(self):
        policy = RetryConfig(initial_delay_ms=500, max_delay_ms=100)
        assert policy.delay_for(5) == 0.5


class TestLoader:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.json")
        assert config.model == "sonnet"

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        original = Config(workspace=tmp_path, engine={"kind": "echo"}, model="haiku")

        save_config(original, path)
        loaded = load_config(path)

        assert json.loads(path.read_text())["engine"]["kind"] == "echo"
        assert loaded.engine.kind == "echo"
        assert loaded.model == "haiku"
        assert loaded.workspace == original.workspace

    def test_file_overrides(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"router": {"retry": {"max_attempts": 5}}}))

        assert load_config(path).router.retry.max_attempts == 5
