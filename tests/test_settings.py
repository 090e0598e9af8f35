"""Tests for YAML configuration loading."""
import pytest

from config.settings import (
    MESSAGE_RETRY_SCHEDULE, WEBHOOK_RETRY_SCHEDULE, Settings, load_settings,
)
from job_queue.retry import RetrySchedule


class TestSettings:
    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(str(tmp_path / "missing.yaml"))

        assert settings.database.url == "sqlite:///./webhook_relay.db"
        assert settings.database.store_backend == "sql"
        assert settings.webhook_queue.retry_schedule_seconds == WEBHOOK_RETRY_SCHEDULE
        assert settings.message_queue.retry_schedule_seconds == MESSAGE_RETRY_SCHEDULE
        assert settings.forwarder.directory_refresh_seconds == 60
        assert settings.chatwoot.default_contact_name == "Desconhecido"

    def test_default_schedules_are_valid(self):
        settings = Settings()
        assert RetrySchedule.from_seconds(settings.webhook_queue.retry_schedule_seconds).max_attempts == 8
        assert RetrySchedule.from_seconds(settings.message_queue.retry_schedule_seconds).max_attempts == 8

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "database:\n"
            "  url: postgresql://relay:pw@db:5432/relay\n"
            "  store_backend: memory\n"
            "webhook_queue:\n"
            "  retry_schedule_seconds: [0, 60, 300]\n"
            "  batch_size: 25\n"
            "message_queue:\n"
            "  enabled: false\n"
            "forwarder:\n"
            "  forwarded_by: Edge-Relay\n"
            "chatwoot:\n"
            "  base_url: https://chat.example.com\n"
            "  account_id: 4\n"
        )

        settings = load_settings(str(path))

        assert settings.database.url == "postgresql://relay:pw@db:5432/relay"
        assert settings.database.store_backend == "memory"
        assert settings.webhook_queue.retry_schedule_seconds == [0.0, 60.0, 300.0]
        assert settings.webhook_queue.batch_size == 25
        assert settings.webhook_queue.poll_interval_seconds == 5.0
        assert settings.message_queue.enabled is False
        assert settings.message_queue.retry_schedule_seconds == MESSAGE_RETRY_SCHEDULE
        assert settings.forwarder.forwarded_by == "Edge-Relay"
        assert settings.chatwoot.account_id == 4
        assert settings.chatwoot.inbox_id == 1

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_TOKEN", "from-env")
        monkeypatch.delenv("RELAY_TEST_DB", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            "database:\n"
            "  url: \"${RELAY_TEST_DB}\"\n"
            "security:\n"
            "  verify_token: \"${RELAY_TEST_TOKEN}\"\n"
        )

        settings = load_settings(str(path))

        assert settings.security.verify_token == "from-env"
        assert settings.database.url == "sqlite:///./webhook_relay.db"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "relay.yaml"
        path.write_text("app_name: EdgeRelay\n")
        monkeypatch.setenv("RELAY_CONFIG", str(path))

        assert load_settings().app_name == "EdgeRelay"

    def test_shipped_config_loads(self, monkeypatch):
        monkeypatch.delenv("RELAY_CONFIG", raising=False)
        settings = load_settings()
        assert settings.webhook_queue.retry_schedule_seconds == WEBHOOK_RETRY_SCHEDULE
        assert settings.message_queue.retry_schedule_seconds == MESSAGE_RETRY_SCHEDULE


@pytest.fixture(autouse=True)
def _restore_settings():
    yield
    import config.settings as cfg
    cfg._settings = None
