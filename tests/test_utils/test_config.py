"""
Tests para la configuración (Pydantic Settings).
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from whatsapp_gateway.utils.config import Settings, get_settings, reload_settings


class TestSettings:

    def test_defaults(self, monkeypatch):
        """Test valores por defecto de recuperación y watchdog."""

        # Arrange
        monkeypatch.delenv("ENVIRONMENT", raising=False)

        # Act
        settings = Settings(_env_file=None)

        # Assert
        assert settings.PORT == 3000
        assert settings.RESTART_SETTLE_DELAY == 5.0
        assert settings.WATCHDOG_INTERVAL == 60.0
        assert settings.WATCHDOG_STALENESS_THRESHOLD == 900.0
        assert settings.WHATSAPP_CLIENT_ID == "main-session"

    def test_credential_paths_are_absolute(self):
        settings = Settings(_env_file=None, WHATSAPP_AUTH_PATH="./.wwebjs_auth")

        assert all(Path(p).is_absolute() for p in settings.credential_paths)
        assert settings.credential_paths[0].endswith(".wwebjs_auth")
        assert settings.credential_paths[1].endswith(".wwebjs_cache")

    def test_list_properties(self):
        """Test parseo de CORS y argumentos del browser."""

        # Act
        settings = Settings(
            _env_file=None,
            CORS_ORIGINS="https://a.example.com, https://b.example.com",
            WHATSAPP_BROWSER_ARGS="--no-sandbox, ,--disable-gpu",
        )

        # Assert
        assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]
        assert settings.browser_args == ["--no-sandbox", "--disable-gpu"]

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    @pytest.mark.parametrize("overrides", [
        {"ENVIRONMENT": "qa"},
        {"LOG_LEVEL": "VERBOSE"},
        {"WEBHOOK_MAX_CONCURRENCY": 0},
    ])
    def test_invalid_values(self, overrides):
        """Test que valores inválidos fallan la validación."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_reload_settings_reads_environment(self, monkeypatch, test_settings):
        """Test que reload_settings reemplaza el singleton."""

        # Arrange
        monkeypatch.setenv("WATCHDOG_STALENESS_THRESHOLD", "120")

        # Act
        reloaded = reload_settings()

        # Assert
        assert reloaded is get_settings()
        assert reloaded is not test_settings
        assert reloaded.WATCHDOG_STALENESS_THRESHOLD == 120.0
