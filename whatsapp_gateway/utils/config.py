"""
Configuración centralizada del gateway usando Pydantic Settings.

Maneja variables de entorno, validación y valores por defecto para
la sesión WhatsApp, el watchdog, el relay de webhooks y el servidor HTTP.
"""

from typing import List, Optional
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BROWSER_ARGS = ",".join([
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
])

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_WEB_VERSION_URL = (
    "https://raw.githubusercontent.com/wppconnect-team/wa-version/main/html/2.2412.54.html"
)


class Settings(BaseSettings):
    """
    Configuración centralizada del sistema.

    Carga automáticamente desde variables de entorno y .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ================================
    # FastAPI Configuration
    # ================================
    PORT: int = Field(default=3000, description="Puerto del servidor")
    HOST: str = Field(default="0.0.0.0", description="Host del servidor")
    CORS_ORIGINS: str = Field(default="*", description="Orígenes CORS permitidos")

    # ================================
    # Environment Configuration
    # ================================
    ENVIRONMENT: str = Field(default="development", description="Entorno: development/staging/production/testing")
    LOG_LEVEL: str = Field(default="INFO", description="Nivel de logging")
    DEBUG: bool = Field(default=False, description="Modo debug")

    # ================================
    # WhatsApp Configuration
    # ================================
    WHATSAPP_CLIENT_ID: str = Field(default="main-session", description="clientId de LocalAuth")
    WHATSAPP_AUTH_PATH: str = Field(default="./.wwebjs_auth", description="Cache de autenticación")
    WHATSAPP_CACHE_PATH: str = Field(default="./.wwebjs_cache", description="Cache del perfil del browser")
    WHATSAPP_BRIDGE_PATH: str = Field(default="./session", description="Directorio del bridge Node.js")
    WHATSAPP_WEB_VERSION_URL: str = Field(
        default=DEFAULT_WEB_VERSION_URL,
        description="Versión fija de WhatsApp Web"
    )
    WHATSAPP_HEADLESS: bool = Field(default=True, description="Modo headless para WhatsApp")
    WHATSAPP_BROWSER_ARGS: str = Field(default=DEFAULT_BROWSER_ARGS, description="Argumentos del browser")
    WHATSAPP_USER_AGENT: str = Field(default=DEFAULT_USER_AGENT, description="User agent del browser")
    WHATSAPP_NODE_BINARY: str = Field(default="node", description="Ejecutable de Node.js")
    WHATSAPP_COMMAND_TIMEOUT: float = Field(default=60.0, description="Timeout de comandos al bridge")

    # ================================
    # Recovery & Watchdog
    # ================================
    RESTART_SETTLE_DELAY: float = Field(default=5.0, description="Pausa antes de reinicializar")
    RESTART_BACKOFF_MULTIPLIER: float = Field(default=2.0, description="Multiplicador entre reinicios seguidos")
    RESTART_MAX_DELAY: float = Field(default=300.0, description="Pausa máxima entre reinicios")
    WATCHDOG_INTERVAL: float = Field(default=60.0, description="Intervalo del watchdog")
    WATCHDOG_STALENESS_THRESHOLD: float = Field(default=900.0, description="Segundos sin liveness antes de reiniciar")

    # ================================
    # Webhook Relay
    # ================================
    WEBHOOK_TIMEOUT: float = Field(default=10.0, description="Timeout de entrega de webhooks")
    WEBHOOK_MAX_CONCURRENCY: int = Field(default=20, description="Entregas de webhook simultáneas")

    # ================================
    # Testing
    # ================================
    MOCK_EXTERNAL_SERVICES: bool = Field(default=False, description="Mock servicios externos")

    @field_validator('WHATSAPP_AUTH_PATH', 'WHATSAPP_CACHE_PATH', 'WHATSAPP_BRIDGE_PATH')
    @classmethod
    def validate_paths(cls, v):
        """Normaliza paths a absolutos (sin crearlos: el recovery puede borrarlos)."""
        return str(Path(v).expanduser().absolute())

    @field_validator('ENVIRONMENT')
    @classmethod
    def validate_environment(cls, v):
        """Valida que el environment sea válido."""
        valid_envs = ['development', 'staging', 'production', 'testing']
        if v not in valid_envs:
            raise ValueError(f'Environment debe ser uno de: {valid_envs}')
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Valida nivel de logging."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level debe ser uno de: {valid_levels}')
        return v.upper()

    @field_validator('WEBHOOK_MAX_CONCURRENCY')
    @classmethod
    def validate_webhook_concurrency(cls, v):
        if v < 1:
            raise ValueError('WEBHOOK_MAX_CONCURRENCY debe ser >= 1')
        return v

    # ================================
    # Computed Properties
    # ================================

    @property
    def is_production(self) -> bool:
        """Verifica si está en producción."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Convierte CORS origins de string a lista."""
        if self.CORS_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def browser_args(self) -> List[str]:
        """Convierte argumentos del browser a lista."""
        return [arg.strip() for arg in self.WHATSAPP_BROWSER_ARGS.split(",") if arg.strip()]

    @property
    def credential_paths(self) -> List[str]:
        """Directorios que se borran en un reinicio con wipe de credenciales."""
        return [self.WHATSAPP_AUTH_PATH, self.WHATSAPP_CACHE_PATH]


# Instancia global de configuración
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Obtiene instancia singleton de configuración.

    Returns:
        Settings: Configuración del sistema
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """
    Recarga configuración desde archivos de entorno.

    Returns:
        Settings: Nueva configuración
    """
    global _settings
    _settings = Settings()
    return _settings


# Para testing - permite inyectar configuración mock
def set_settings_for_testing(test_settings: Settings):
    """
    Establece configuración para testing.

    Args:
        test_settings: Configuración de prueba
    """
    global _settings
    _settings = test_settings
