"""
Sistema de logging centralizado y estructurado.

Configura logging con formato JSON en producción, formato legible en
desarrollo y rotación de archivos para el gateway WhatsApp.
"""

import logging
import logging.handlers
import sys
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware

from .config import get_settings

# Configuración global
_loggers: Dict[str, logging.Logger] = {}
_log_initialized = False

# Campos extra que se copian al output si el record los trae
_EXTRA_FIELDS = (
    "event_type",
    "phase",
    "previous_phase",
    "reason",
    "wipe_auth",
    "chat_id",
    "webhook_url",
    "http_method",
    "http_path",
    "http_status",
    "response_time_ms",
    "service",
    "endpoint",
    "duration_ms",
    "error_message",
)


class StructuredFormatter(logging.Formatter):
    """
    Formatter que produce logs estructurados en JSON.

    Útil para parsing automático y agregación de logs en producción.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Formatter legible para desarrollo local."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        extras = []
        if hasattr(record, 'phase'):
            extras.append(f"phase:{record.phase}")
        if hasattr(record, 'event_type'):
            extras.append(f"event:{record.event_type}")
        if hasattr(record, 'duration_ms'):
            extras.append(f"{record.duration_ms:.0f}ms")

        if extras:
            formatted += f" [{', '.join(extras)}]"

        return formatted


def setup_logging():
    """
    Configura sistema de logging global.

    Establece handlers, formatters y niveles apropiados según el entorno.
    """
    global _log_initialized

    if _log_initialized:
        return

    settings = get_settings()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.is_production:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(console_handler)

    # Handlers de archivo (no en testing)
    if not settings.MOCK_EXTERNAL_SERVICES:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "whatsapp_gateway.log",
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / "errors.log",
            maxBytes=10*1024*1024,  # 10MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(error_handler)

    _configure_external_loggers()

    _log_initialized = True

    logger = logging.getLogger(__name__)
    logger.info(f"📋 Logging configurado - Nivel: {settings.LOG_LEVEL}, Entorno: {settings.ENVIRONMENT}")


def _configure_external_loggers():
    """Configura loggers de bibliotecas externas para reducir ruido."""
    external_loggers = [
        'httpx',
        'httpcore',
        'asyncio',
        'PIL',
        'uvicorn.access',
    ]

    for logger_name in external_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Obtiene logger configurado para un módulo.

    Args:
        name: Nombre del módulo (típicamente __name__)

    Returns:
        Logger configurado
    """
    if not _log_initialized:
        setup_logging()

    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)

    return _loggers[name]


def log_whatsapp_event(logger: logging.Logger, event_type: str, data: Dict[str, Any]):
    """
    Log especializado para eventos emitidos por el cliente WhatsApp.

    Args:
        logger: Logger a usar
        event_type: Tipo de evento WhatsApp
        data: Datos del evento
    """
    logger.debug(
        f"WhatsApp event: {event_type}",
        extra={
            'event_type': event_type,
            'reason': data.get('reason') or data.get('message')
        }
    )


def log_session_transition(
    logger: logging.Logger,
    previous_phase: str,
    phase: str,
    reason: Optional[str] = None
):
    """
    Log especializado para transiciones de la máquina de estados.

    Args:
        logger: Logger a usar
        previous_phase: Fase anterior
        phase: Fase nueva
        reason: Trigger que causó la transición
    """
    logger.info(
        f"Session phase {previous_phase} -> {phase}",
        extra={
            'previous_phase': previous_phase,
            'phase': phase,
            'reason': reason
        }
    )


def log_api_call(
    logger: logging.Logger,
    service: str,
    endpoint: str,
    duration_ms: float,
    success: bool,
    error: Optional[str] = None
):
    """
    Log especializado para llamadas HTTP externas (webhooks).

    Args:
        logger: Logger a usar
        service: Nombre del servicio
        endpoint: URL llamada
        duration_ms: Duración en milisegundos
        success: Si fue exitosa
        error: Mensaje de error si falló
    """
    level = logging.INFO if success else logging.ERROR
    message = f"{service} call {'succeeded' if success else 'failed'}: {endpoint}"

    extra_data = {
        'service': service,
        'endpoint': endpoint,
        'duration_ms': duration_ms,
    }

    if error:
        extra_data['error_message'] = error

    logger.log(level, message, extra=extra_data)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware para logging de requests HTTP en FastAPI.

    Registra método, path, status y tiempo de respuesta.
    """

    def __init__(self, app, logger: logging.Logger):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request, call_next):
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = (time.perf_counter() - start_time) * 1000
            self.logger.error(
                f"HTTP {request.method} {request.url.path} failed - {duration:.2f}ms",
                extra={
                    'http_method': request.method,
                    'http_path': request.url.path,
                    'error_message': str(e),
                    'response_time_ms': duration
                },
                exc_info=True
            )
            raise

        duration = (time.perf_counter() - start_time) * 1000
        self.logger.info(
            f"HTTP {request.method} {request.url.path} {response.status_code} - {duration:.2f}ms",
            extra={
                'http_method': request.method,
                'http_path': request.url.path,
                'http_status': response.status_code,
                'response_time_ms': duration
            }
        )

        return response


# Auto-inicializar logging cuando se importa el módulo
setup_logging()
