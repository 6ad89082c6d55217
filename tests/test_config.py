from __future__ import annotations

import pytest

from warden.config import ConfigError, load_config

ENV_VARS = ["MONITORED_CHANNEL_ID", "FIXED_DELAY_SECONDS", "LOG_LEVEL", "DATA_DIR"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # no configs/config.yaml in cwd
    monkeypatch.chdir(tmp_path)


def test_env_only_config(monkeypatch) -> None:
    monkeypatch.setenv("MONITORED_CHANNEL_ID", "123456789012345678")
    monkeypatch.setenv("FIXED_DELAY_SECONDS", "90")

    config = load_config()

    assert config.channel_id == 123456789012345678
    assert config.fleeting.delay_seconds == 90.0
    assert config.discord.token_env == "AUTH_TOKEN"
    assert config.admin.enabled is False


def test_missing_channel_is_fatal() -> None:
    with pytest.raises(ConfigError):
        load_config()


@pytest.mark.parametrize("value", ["abc", "12.5", "-3", "0"])
def test_invalid_channel_is_fatal(monkeypatch, value) -> None:
    monkeypatch.setenv("MONITORED_CHANNEL_ID", value)
    with pytest.raises(ConfigError):
        load_config()


def test_yaml_file_with_env_override(monkeypatch, tmp_path) -> None:
    path = tmp_path / "warden.yaml"
    path.write_text(
        "discord:\n"
        "  channel_id: 111\n"
        "fleeting:\n"
        "  delay_seconds: 600\n"
        "  max_attempts: 5\n"
        "dedup:\n"
        "  dedupe_empty: false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MONITORED_CHANNEL_ID", "222")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    config = load_config(path)

    assert config.channel_id == 222
    assert config.fleeting.delay_seconds == 600
    assert config.fleeting.max_attempts == 5
    assert config.dedup.dedupe_empty is False
    assert config.app.logging_level == "DEBUG"


def test_explicit_missing_file_is_fatal(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")


def test_invalid_values_are_rejected(monkeypatch, tmp_path) -> None:
    path = tmp_path / "warden.yaml"
    path.write_text("fleeting:\n  delay_seconds: -1\n", encoding="utf-8")
    monkeypatch.setenv("MONITORED_CHANNEL_ID", "1")

    with pytest.raises(ConfigError):
        load_config(path)


def test_non_mapping_yaml_is_rejected(monkeypatch, tmp_path) -> None:
    path = tmp_path / "warden.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.setenv("MONITORED_CHANNEL_ID", "1")

    with pytest.raises(ConfigError):
        load_config(path)


def test_persist_every_must_be_positive(monkeypatch, tmp_path) -> None:
    path = tmp_path / "warden.yaml"
    path.write_text("dedup:\n  persist_every: 0\n", encoding="utf-8")
    monkeypatch.setenv("MONITORED_CHANNEL_ID", "1")

    with pytest.raises(ConfigError):
        load_config(path)


def test_persist_every_defaults_to_every_message(monkeypatch) -> None:
    monkeypatch.setenv("MONITORED_CHANNEL_ID", "1")

    assert load_config().dedup.persist_every == 1
