"""Tests for environment-driven settings."""

import pytest

from topic_sync.config import (
    DEFAULT_DATABASE_URL,
    INTERCOM_MAX_PER_PAGE,
    ConfigError,
    SyncSettings,
    load_env_file,
)

ENV_VARS = (
    "ENRICH_BATCH_SIZE",
    "ENRICH_BASE_DELAY",
    "ENRICH_MAX_DELAY",
    "ENRICH_BATCH_PAUSE",
    "INTERCOM_PER_PAGE",
    "DATABASE_URL",
    "OPENAI_MODEL",
    "LOG_LEVEL",
    "TOPIC_TAXONOMY_FILE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:
    def test_defaults(self):
        settings = SyncSettings.from_env()

        assert settings.batch_size == 5
        assert settings.base_delay == 2.0
        assert settings.max_delay == 60.0
        assert settings.per_page == INTERCOM_MAX_PER_PAGE
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.taxonomy_file is None

    def test_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("ENRICH_BATCH_SIZE", "10")
        monkeypatch.setenv("ENRICH_BASE_DELAY", "1.5")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("OPENAI_MODEL", "gpt-4o-mini")

        settings = SyncSettings.from_env()

        assert settings.batch_size == 10
        assert settings.base_delay == 1.5
        assert settings.log_level == "DEBUG"
        assert settings.openai_model == "gpt-4o-mini"

    @pytest.mark.parametrize("name,value", [
        ("ENRICH_BATCH_SIZE", "abc"),
        ("ENRICH_BATCH_SIZE", "0"),
        ("ENRICH_BATCH_SIZE", "500"),
        ("INTERCOM_PER_PAGE", "151"),
    ])
    def test_invalid_values_fall_back(self, monkeypatch, caplog, name, value):
        monkeypatch.setenv(name, value)

        settings = SyncSettings.from_env()

        assert settings.batch_size == 5
        assert settings.per_page == INTERCOM_MAX_PER_PAGE
        assert name in caplog.text

    def test_max_delay_below_base_is_raised(self, monkeypatch):
        monkeypatch.setenv("ENRICH_BASE_DELAY", "10")
        monkeypatch.setenv("ENRICH_MAX_DELAY", "5")

        settings = SyncSettings.from_env()

        assert settings.max_delay == 10.0


class TestRequire:
    def test_all_present(self):
        SyncSettings(intercom_token="t", openai_api_key="k").require()

    def test_names_every_missing_variable(self):
        with pytest.raises(ConfigError) as exc_info:
            SyncSettings().require()

        message = str(exc_info.value)
        assert "INTERCOM_ACCESS_TOKEN" in message
        assert "OPENAI_API_KEY" in message

    def test_mode_specific_requirements(self):
        SyncSettings(openai_api_key="k").require(intercom=False)
        SyncSettings().require(intercom=False, openai=False)


class TestLoadEnvFile:
    def test_missing_file(self, tmp_path):
        assert load_env_file(tmp_path / ".env") is False

    def test_existing_environment_wins(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("OPENAI_MODEL=from-file\nTOPIC_TAXONOMY_FILE=custom.json\n")
        monkeypatch.setenv("OPENAI_MODEL", "from-env")

        assert load_env_file(env_file) is True

        settings = SyncSettings.from_env()
        assert settings.openai_model == "from-env"
        assert settings.taxonomy_file == "custom.json"
