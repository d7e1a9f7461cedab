"""
FastAPI Main Application - WhatsApp Session Gateway

API HTTP sobre una única sesión de WhatsApp Web. Expone health, QR de
emparejamiento, envío/respuesta de mensajes, listado de grupos y la
configuración del relay de mensajes entrantes. La sesión se mantiene
viva sola: SessionController y Watchdog manejan la recuperación.
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Add the project root to Python path for imports
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import uvicorn
from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from whatsapp_gateway import __version__
from whatsapp_gateway.models.messages import (
    GroupsResponse, HealthResponse, ReplyRequest, SendMessageRequest, WebhookConfigRequest
)
from whatsapp_gateway.services.session_controller import SessionController, SessionNotReadyError
from whatsapp_gateway.services.watchdog import Watchdog
from whatsapp_gateway.services.webhook_relay import WebhookRelay
from whatsapp_gateway.services.whatsapp_client import WhatsAppClientError
from whatsapp_gateway.utils.config import get_settings
from whatsapp_gateway.utils.logger import get_logger, LoggingMiddleware

# Configuración
settings = get_settings()
logger = get_logger(__name__)

PROCESS_STARTED_AT = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager para la aplicación.

    Crea el controlador de sesión, arranca la inicialización en background
    y el watchdog; en shutdown destruye la sesión y drena los webhooks.
    """
    logger.info("🚀 Iniciando WhatsApp Gateway...")

    webhook_relay = WebhookRelay()
    controller = SessionController(webhook_relay=webhook_relay)
    watchdog = Watchdog(controller)

    app.state.webhook_relay = webhook_relay
    app.state.session_controller = controller
    app.state.watchdog = watchdog

    if settings.MOCK_EXTERNAL_SERVICES:
        logger.warning("⚠️ MOCK_EXTERNAL_SERVICES activo: la sesión WhatsApp no se inicia")
    else:
        # No bloquear el arranque del servidor: npm install / Chromium pueden tardar
        app.state.init_task = asyncio.create_task(controller.initialize())
        watchdog.start()

    try:
        yield
    finally:
        logger.info("🛑 Cerrando aplicación...")
        await watchdog.stop()
        await controller.shutdown()
        await webhook_relay.close()
        logger.info("✅ Aplicación cerrada correctamente")


# Crear aplicación FastAPI
app = FastAPI(
    title="WhatsApp Session Gateway",
    description="API HTTP sobre una sesión WhatsApp Web con recuperación automática",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Añadir logging middleware
app.add_middleware(LoggingMiddleware, logger=logger)


# ================================
# Dependencias
# ================================

async def get_session_controller(request: Request) -> SessionController:
    controller = getattr(request.app.state, "session_controller", None)
    if controller is None:
        raise SessionNotReadyError("Session controller not initialized")
    return controller


async def require_ready_session(
    controller: SessionController = Depends(get_session_controller)
) -> SessionController:
    """
    Rechaza con 503 si la sesión no está READY.

    Las dependencias se resuelven antes que el body, así que el 503
    tiene prioridad sobre errores de validación del payload.
    """
    if not controller.is_ready:
        raise SessionNotReadyError("Client not ready")
    return controller


# ================================
# Endpoints
# ================================

@app.get("/health", response_model=HealthResponse)
async def health_check(controller: SessionController = Depends(get_session_controller)):
    """
    Health check para monitoreo.

    Auth failure y desconexión se reportan igual: 'disconnected'.
    """
    state = controller.state
    return HealthResponse(
        status="connected" if state.ready else "disconnected",
        authenticated=state.authenticated,
        uptime=time.time() - PROCESS_STARTED_AT,
        timestamp=datetime.now(timezone.utc).isoformat()
    )


@app.get("/status")
async def session_status(controller: SessionController = Depends(get_session_controller)):
    """Snapshot completo del estado de la sesión para operadores."""
    return controller.snapshot()


@app.get("/auth/qr")
async def get_qr(controller: SessionController = Depends(get_session_controller)):
    """
    QR de emparejamiento como data URL.

    Returns el QR pendiente, un mensaje si ya hay sesión autenticada,
    o 503 si todavía no llegó ningún QR.
    """
    state = controller.state
    if state.authenticated:
        return {"message": "Client already authenticated"}
    if not state.qr_payload:
        return JSONResponse(status_code=503, content={"message": "QR not ready yet"})
    return {"qr": state.qr_payload}


@app.post("/send")
async def send_message(
    request: SendMessageRequest,
    controller: SessionController = Depends(require_ready_session)
):
    """Envía un mensaje de texto a un número, grupo o JID."""
    try:
        response = await controller.send_message(request.to, request.message)
    except WhatsAppClientError as e:
        logger.error(f"❌ Error enviando mensaje a {request.to}: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return {"success": True, "response": response}


@app.post("/reply")
async def reply_message(
    request: ReplyRequest,
    controller: SessionController = Depends(require_ready_session)
):
    """Responde en un chat citando un mensaje existente."""
    try:
        response = await controller.reply(request.chat_id, request.message_id, request.reply_text)
    except WhatsAppClientError as e:
        logger.error(f"❌ Error respondiendo en {request.chat_id}: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return {"success": True, "response": response}


@app.get("/groups", response_model=GroupsResponse)
async def list_groups(controller: SessionController = Depends(require_ready_session)):
    """Lista los chats de grupo (id y nombre)."""
    try:
        groups = await controller.list_groups()
    except WhatsAppClientError as e:
        logger.error(f"❌ Error listando grupos: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    return {"groups": groups}


@app.get("/listen")
async def enable_listening(controller: SessionController = Depends(get_session_controller)):
    """Activa el reenvío de mensajes entrantes al webhook."""
    controller.enable_listening()
    return {"message": "Listening enabled"}


@app.post("/webhook/set")
async def set_webhook(
    request: Optional[WebhookConfigRequest] = None,
    controller: SessionController = Depends(get_session_controller)
):
    """Guarda la URL del webhook tal cual llega."""
    url = request.url if request else None
    controller.set_webhook(url)
    return {"success": True, "url": url}


@app.get("/")
async def root():
    """Endpoint raíz con información básica."""
    return {
        "service": "WhatsApp Session Gateway",
        "version": __version__,
        "status": "running",
        "uptime_seconds": time.time() - PROCESS_STARTED_AT,
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "qr": "GET /auth/qr",
            "send": "POST /send",
            "reply": "POST /reply",
            "groups": "GET /groups",
            "listen": "GET /listen",
            "webhook": "POST /webhook/set"
        }
    }


# Error handlers
@app.exception_handler(SessionNotReadyError)
async def session_not_ready_handler(request: Request, exc: SessionNotReadyError):
    return JSONResponse(status_code=503, content={"error": str(exc) or "Client not ready"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handler global para excepciones no manejadas."""
    logger.error(f"❌ Excepción global no manejada: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc) if settings.DEBUG else "An error occurred",
            "timestamp": time.time()
        }
    )


def run():
    """Arranca uvicorn con la configuración del entorno."""
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=False
    )


if __name__ == "__main__":
    run()
