from pathlib import Path

from chorus_core.config import RuntimeConfig


def test_from_env_overrides_and_tolerates_garbage(monkeypatch):
    monkeypatch.setenv("CHORUS_BOT_COOLDOWN", "120")
    monkeypatch.setenv("CHORUS_MAX_CHANNELS_PER_AGENT", "five")
    monkeypatch.setenv("CHORUS_PERSIST_STATE", "off")
    monkeypatch.setenv("CHORUS_STATE_PATH", "/tmp/chorus-test.db")
    monkeypatch.setenv("CHORUS_DECISION_MODEL", "tiny-model")

    config = RuntimeConfig.from_env()

    assert config.bot_cooldown_seconds == 120.0
    assert config.max_channels_per_agent == 3
    assert config.persist_state is False
    assert config.state_path == Path("/tmp/chorus-test.db")
    assert config.decision_model == "tiny-model"


def test_defaults_match_documented_constants():
    config = RuntimeConfig()
    assert config.attention_decay_step == 0.1
    assert config.post_mention_messages == 3
    assert config.max_channels_per_agent == 3
    assert config.human_cooldown_seconds == 5.0
    assert config.bot_cooldown_seconds == 300.0
    assert config.decision_cache_seconds == 300.0
    assert config.decision_error_backoff_seconds == 30.0
    assert config.cooldown_retention_seconds() == 300.0


def test_ensure_paths_creates_parents(tmp_path: Path):
    config = RuntimeConfig(state_path=tmp_path / "a" / "state.db", audit_log_path=tmp_path / "b" / "audit.log")
    config.ensure_paths()
    assert (tmp_path / "a").is_dir()
    assert (tmp_path / "b").is_dir()
