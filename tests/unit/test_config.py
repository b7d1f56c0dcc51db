"""
Unit tests for configuration loading.
"""

from pathlib import Path

import pytest

from onelaunch.core.config import LaunchConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os
    for key in list(os.environ):
        if key.startswith("ONELAUNCH_"):
            monkeypatch.delenv(key)


class TestDefaults:

    def test_values(self):
        cfg = LaunchConfig()
        assert cfg.chain_id == 42161
        assert cfg.intent_ttl_seconds == 604800
        assert cfg.permit_buffer_bps == 1000
        assert cfg.clearing_max_retries == 3
        assert cfg.db_path == Path("data") / "onelaunch.db"

    def test_domains(self):
        cfg = LaunchConfig()
        assert cfg.intent_domain.name == "1Launch Intent System"
        assert cfg.usdc_domain.verifying_contract == cfg.usdc_address
        assert cfg.executor_domain.version == "4"
        assert {cfg.intent_domain.chain_id, cfg.usdc_domain.chain_id, cfg.executor_domain.chain_id} == {42161}

    def test_domains_follow_chain(self):
        assert LaunchConfig(chain_id=1).intent_domain.chain_id == 1


class TestLoadConfig:

    def test_no_sources(self):
        assert load_config() == LaunchConfig()

    def test_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text(
            "ONELAUNCH_CHAIN_ID=1\n"
            "ONELAUNCH_EXECUTOR_POLL_INTERVAL=0.5\n"
            "ONELAUNCH_DATA_DIR=/tmp/onelaunch\n"
            "ONELAUNCH_INTENT_DOMAIN_NAME=Staging Intents\n"
        )
        cfg = load_config(str(env))

        assert cfg.chain_id == 1
        assert cfg.executor_poll_interval == 0.5
        assert cfg.data_dir == Path("/tmp/onelaunch")
        assert cfg.intent_domain.name == "Staging Intents"

    def test_environment_wins_over_file(self, tmp_path, monkeypatch):
        env = tmp_path / ".env"
        env.write_text("ONELAUNCH_CLEARING_MAX_RETRIES=5\n")
        monkeypatch.setenv("ONELAUNCH_CLEARING_MAX_RETRIES", "7")

        assert load_config(str(env)).clearing_max_retries == 7

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("ONELAUNCH_CHAIN_ID", "10")
        assert load_config(chain_id=8453).chain_id == 8453

    def test_unknown_override(self):
        with pytest.raises(AttributeError):
            load_config(no_such_field=1)

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("ONELAUNCH_CHAIN_ID", "mainnet")
        with pytest.raises(ValueError):
            load_config()

    def test_unprefixed_ignored(self, monkeypatch):
        monkeypatch.setenv("CHAIN_ID", "1")
        assert load_config().chain_id == 42161

    def test_log_levels(self, monkeypatch):
        monkeypatch.setenv("ONELAUNCH_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("ONELAUNCH_LOG_LEVELS", "settlement=DEBUG")
        cfg = load_config()
        assert cfg.log_level == "WARNING"
        assert cfg.log_levels == "settlement=DEBUG"
