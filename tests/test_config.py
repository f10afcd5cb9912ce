"""
Tests for application settings - app/core/config.py
"""
import pytest
from pydantic import ValidationError

from app.core.config import Settings
from app.workers.queue import QueueOptions


def _settings(**overrides) -> Settings:
    values = {
        "FINIX_WEBHOOK_SECRET": "s",
        "GETSTREAM_API_SECRET": "s",
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


class TestSettings:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
            ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
            ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
        ],
    )
    def test_database_url_uses_async_driver(self, url, expected):
        assert _settings(DATABASE_URL=url).DATABASE_URL == expected

    @pytest.mark.unit
    def test_getstream_url_normalized(self):
        assert _settings(GETSTREAM_BASE_URL="chat.stream-io-api.com/").GETSTREAM_BASE_URL == (
            "https://chat.stream-io-api.com"
        )

    @pytest.mark.unit
    def test_max_attempts_at_least_one(self):
        with pytest.raises(ValidationError):
            _settings(WEBHOOK_MAX_ATTEMPTS=0)

    @pytest.mark.unit
    def test_lock_renewal_before_expiry(self):
        with pytest.raises(ValidationError):
            _settings(WEBHOOK_LOCK_RENEW_SECONDS=30, WEBHOOK_LOCK_DURATION_SECONDS=30)

    @pytest.mark.unit
    def test_missing_secrets_warn_outside_debug(self):
        with pytest.warns(UserWarning, match="FINIX_WEBHOOK_SECRET"):
            _settings(FINIX_WEBHOOK_SECRET="", DEBUG=False)

    @pytest.mark.unit
    def test_queue_options_from_settings(self):
        options = QueueOptions.from_settings(
            _settings(WEBHOOK_MAX_ATTEMPTS=4, WEBHOOK_BACKOFF_BASE_SECONDS=1.5)
        )

        assert options.max_attempts == 4
        assert options.backoff_base_seconds == 1.5
        assert options.paused_key == "webhooks:queue:paused"
