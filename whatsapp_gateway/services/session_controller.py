"""
Session Controller - Máquina de estados de la sesión WhatsApp

Dueño único del handle de sesión y de SessionState. Consume los eventos
del adapter en orden, maneja la inicialización y la recuperación
automática (destroy, wipe opcional de credenciales, pausa y reinicio).

Garantía principal: nunca hay dos recuperaciones en vuelo. El guard
`restarting` se verifica y se activa antes del primer await, así que
cualquier trigger que llegue mientras está activo es un no-op. Un trigger
que llega mientras connect() está en curso se difiere hasta que termina.
"""

import asyncio
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..models.messages import InboundMessage, WebhookPayload
from ..models.session import LIVE_PHASES, SessionPhase, SessionState
from ..utils.config import get_settings
from ..utils.formatters import format_jid
from ..utils.logger import get_logger, log_session_transition
from ..utils.qr import encode_qr_data_url
from .webhook_relay import WebhookRelay
from .whatsapp_client import (
    SessionAdapter,
    SessionEvent,
    SessionEventType,
    WhatsAppClientError,
    WhatsAppWebClient,
)

logger = get_logger(__name__)


class SessionNotReadyError(Exception):
    """La sesión no está en fase READY."""
    pass


class SessionController:
    """
    Controlador del lifecycle de la sesión.

    Transiciones:
    - initialize(): * -> INITIALIZING
    - qr: INITIALIZING/AWAITING_QR -> AWAITING_QR
    - authenticated: INITIALIZING/AWAITING_QR -> AUTHENTICATED
    - ready: cualquier fase viva -> READY
    - auth_failure / disconnected / watchdog: -> RESTARTING -> INITIALIZING
    """

    def __init__(
        self,
        adapter_factory: Callable[[], SessionAdapter] = None,
        webhook_relay: Optional[WebhookRelay] = None,
        qr_encoder: Callable[[str], str] = None,
        settle_delay: float = None,
        backoff_multiplier: float = None,
        max_restart_delay: float = None,
        credential_paths: List[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = None,
        clock: Callable[[], datetime] = None
    ):
        settings = get_settings()

        self.adapter_factory = adapter_factory or WhatsAppWebClient
        self.webhook_relay = webhook_relay
        self.qr_encoder = qr_encoder or encode_qr_data_url
        self.settle_delay = settle_delay if settle_delay is not None else settings.RESTART_SETTLE_DELAY
        self.backoff_multiplier = backoff_multiplier if backoff_multiplier is not None else settings.RESTART_BACKOFF_MULTIPLIER
        self.max_restart_delay = max_restart_delay if max_restart_delay is not None else settings.RESTART_MAX_DELAY
        self.credential_paths = [
            Path(p) for p in (credential_paths if credential_paths is not None else settings.credential_paths)
        ]
        self.clock = clock or datetime.now
        self._sleep = sleep or asyncio.sleep

        self._state = SessionState(started_at=self.clock())
        self.adapter: Optional[SessionAdapter] = None
        self._event_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._connecting = False
        self._deferred_recovery: Optional[Tuple[bool, str]] = None

        self._handlers = {
            SessionEventType.QR: self._on_qr,
            SessionEventType.AUTHENTICATED: self._on_authenticated,
            SessionEventType.READY: self._on_ready,
            SessionEventType.MESSAGE: self._on_message,
            SessionEventType.AUTH_FAILURE: self._on_auth_failure,
            SessionEventType.DISCONNECTED: self._on_disconnected,
        }

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state.ready

    @property
    def recovery_task(self) -> Optional[asyncio.Task]:
        return self._recovery_task

    def _transition(self, phase: SessionPhase, reason: Optional[str] = None):
        previous = self._state.set_phase(phase)
        if previous != phase:
            log_session_transition(logger, previous.value, phase.value, reason)

    # ================================
    # Inicialización
    # ================================

    async def initialize(self) -> bool:
        """
        Crea un adapter nuevo y lo conecta.

        Mientras se espera connect() los triggers de recuperación se
        difieren y se disparan al terminar. Un fallo al conectar programa
        una recuperación sin wipe.

        Returns:
            True si connect() terminó sin error
        """
        if self._state.restarting or self._connecting or self._shutting_down:
            logger.debug("initialize() ignorado: reinicio/conexión en curso o shutdown")
            return False

        self._connecting = True
        logger.info("🚀 Inicializando cliente WhatsApp...")

        self._state.reset_runtime()
        self._transition(SessionPhase.INITIALIZING, "initialize")

        error: Optional[Exception] = None
        try:
            adapter = self.adapter_factory()
            self.adapter = adapter
            self._event_task = asyncio.create_task(self._drain_events(adapter))
            await adapter.connect()
        except Exception as e:
            error = e
        finally:
            self._connecting = False

        deferred, self._deferred_recovery = self._deferred_recovery, None

        if error is not None:
            self._state.last_error = str(error)
            logger.error(f"❌ Error conectando cliente WhatsApp: {error}")
            if deferred is None:
                deferred = (False, f"connect_failed: {error}")

        if deferred is not None:
            wipe_auth, reason = deferred
            self.request_recovery(wipe_auth=wipe_auth, reason=reason)

        return error is None

    # ================================
    # Eventos del adapter
    # ================================

    async def _drain_events(self, adapter: SessionAdapter):
        """Consume el canal de eventos de un adapter en orden de emisión."""
        async for event in adapter.events():
            if adapter is not self.adapter:
                logger.debug(f"Evento {event.type.value} de un adapter reemplazado, ignorado")
                continue
            try:
                self.handle_event(event)
            except Exception as e:
                logger.error(f"❌ Error manejando evento {event.type.value}: {e}", exc_info=True)

    def handle_event(self, event: SessionEvent):
        """
        Despacha un evento del adapter. Síncrono: no reordena eventos.

        last_event_at registra todo evento recibido del adapter vivo,
        también los que la máquina de estados ignora en la fase actual.
        """
        self._state.last_event_at = self.clock()
        handler = self._handlers.get(event.type)
        if handler:
            handler(event.data)

    def _on_qr(self, data: Dict[str, Any]):
        if self._state.phase not in (SessionPhase.INITIALIZING, SessionPhase.AWAITING_QR):
            logger.debug(f"qr ignorado en fase {self._state.phase.value}")
            return

        raw = data.get('qr')
        if not raw:
            logger.warning("⚠️ Evento qr sin payload")
            return

        logger.info("📸 QR recibido - escanea con tu WhatsApp")
        qr_payload = self.qr_encoder(raw)

        self._transition(SessionPhase.AWAITING_QR, "qr")
        self._state.qr_payload = qr_payload
        self._state.authenticated = False

    def _on_authenticated(self, data: Dict[str, Any]):
        if self._state.phase not in (SessionPhase.INITIALIZING, SessionPhase.AWAITING_QR):
            logger.debug(f"authenticated ignorado en fase {self._state.phase.value}")
            return

        logger.info("🔐 WhatsApp autenticado")
        self._transition(SessionPhase.AUTHENTICATED, "authenticated")
        self._state.authenticated = True

    def _on_ready(self, data: Dict[str, Any]):
        if self._state.phase not in LIVE_PHASES:
            logger.debug(f"ready ignorado en fase {self._state.phase.value}")
            return

        logger.info("✅ Cliente WhatsApp listo")
        self._transition(SessionPhase.READY, "ready")
        self._state.authenticated = True
        self._state.last_ready_at = self.clock()
        self._state.restarting = False
        self._state.consecutive_restarts = 0
        self._state.last_error = None

    def _on_message(self, data: Dict[str, Any]):
        if not self._state.listening or not self._state.webhook_url:
            return
        if self.webhook_relay is None:
            return

        try:
            message = InboundMessage.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️ Mensaje entrante inválido, no se reenvía: {e}")
            return

        self.webhook_relay.relay(self._state.webhook_url, WebhookPayload.from_message(message))

    def _on_auth_failure(self, data: Dict[str, Any]):
        reason = data.get('message') or 'unknown'
        logger.error(f"❌ AUTH FAILURE: {reason}")
        self._state.last_error = f"auth_failure: {reason}"
        self.request_recovery(wipe_auth=True, reason=f"auth_failure: {reason}")

    def _on_disconnected(self, data: Dict[str, Any]):
        reason = data.get('reason') or 'unknown'
        logger.warning(f"🔌 DISCONNECTED: {reason}")
        self._state.last_error = f"disconnected: {reason}"
        self.request_recovery(wipe_auth=False, reason=f"disconnected: {reason}")

    # ================================
    # Recuperación
    # ================================

    def _next_restart_delay(self) -> float:
        """Settle delay con backoff exponencial entre reinicios sin llegar a READY."""
        delay = self.settle_delay * (self.backoff_multiplier ** self._state.consecutive_restarts)
        return min(delay, max(self.max_restart_delay, self.settle_delay))

    def request_recovery(self, wipe_auth: bool = False, reason: str = "manual") -> Optional[asyncio.Task]:
        """
        Dispara la recuperación si no hay otra en vuelo.

        Síncrono a propósito: el guard se verifica y se activa sin ceder
        el event loop.

        Args:
            wipe_auth: Borrar cache de autenticación y del browser
            reason: Trigger (para logs y /status)

        Returns:
            La task de recuperación, o None si el trigger se descartó
            o quedó diferido hasta el fin de connect()
        """
        if self._state.restarting or self._shutting_down:
            logger.debug(f"Recovery descartado ({reason}): ya hay uno en curso")
            return None

        if self._connecting:
            # Se conserva el primer trigger; el wipe se acumula
            if self._deferred_recovery is None:
                self._deferred_recovery = (wipe_auth, reason)
            else:
                previous_wipe, previous_reason = self._deferred_recovery
                self._deferred_recovery = (previous_wipe or wipe_auth, previous_reason)
            logger.info(f"⏳ Recovery diferido hasta que termine connect() ({reason})")
            return None

        self._state.restarting = True
        delay = self._next_restart_delay()
        self._state.restart_count += 1
        self._state.consecutive_restarts += 1
        self._state.last_restart_reason = reason
        self._transition(SessionPhase.RESTARTING, reason)

        self._recovery_task = asyncio.create_task(self._recover(wipe_auth, delay, reason))
        return self._recovery_task

    async def _recover(self, wipe_auth: bool, delay: float, reason: str):
        logger.info(
            f"♻️ Reiniciando cliente WhatsApp (wipe={wipe_auth}, espera={delay:.1f}s)",
            extra={'reason': reason, 'wipe_auth': wipe_auth}
        )

        adapter, self.adapter = self.adapter, None
        event_task, self._event_task = self._event_task, None

        if adapter is not None:
            try:
                await adapter.destroy()
            except Exception as e:
                # La sesión puede estar ya muerta
                logger.warning(f"⚠️ destroy() falló, se continúa: {e}")

        if event_task is not None and event_task is not asyncio.current_task():
            event_task.cancel()

        if wipe_auth:
            self._wipe_credentials()

        await self._sleep(delay)

        self._state.restarting = False
        await self.initialize()

    def _wipe_credentials(self):
        """Borra los directorios de credenciales. Ninguno es obligatorio."""
        logger.info("🧹 Limpiando cache de autenticación...")
        for path in self.credential_paths:
            try:
                shutil.rmtree(path)
                logger.info(f"🧹 Borrado {path}")
            except FileNotFoundError:
                logger.debug(f"{path} no existe, nada que borrar")
            except OSError as e:
                logger.warning(f"⚠️ No se pudo borrar {path}: {e}")

    # ================================
    # Operaciones para la API
    # ================================

    def _require_ready(self) -> SessionAdapter:
        adapter = self.adapter
        if not self._state.ready or adapter is None:
            raise SessionNotReadyError("Client not ready")
        return adapter

    async def send_message(self, to: str, body: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Envía un mensaje a un número, grupo o JID.

        Raises:
            SessionNotReadyError: La sesión no está READY
            WhatsAppClientError: Destino vacío o fallo del proveedor
        """
        adapter = self._require_ready()
        jid = format_jid(to)
        if jid is None:
            raise WhatsAppClientError("Destino vacío")

        response = await adapter.send_message(jid, body, options)
        logger.info(f"📤 Mensaje enviado a {jid}", extra={'chat_id': jid})
        return response

    async def reply(self, chat_id: str, message_id: str, text: str) -> Dict[str, Any]:
        """Responde citando un mensaje existente."""
        return await self.send_message(chat_id, text, {"quotedMessageId": message_id})

    async def list_groups(self) -> List[Dict[str, Any]]:
        adapter = self._require_ready()
        chats = await adapter.get_chats()
        return [
            {"id": chat.get("id"), "name": chat.get("name")}
            for chat in chats
            if chat.get("isGroup")
        ]

    def enable_listening(self):
        self._state.listening = True
        logger.info("👂 Listening enabled")

    def set_webhook(self, url: Optional[str]):
        self._state.webhook_url = url
        logger.info(f"🔗 Webhook configurado: {url}", extra={'webhook_url': url})

    def snapshot(self) -> Dict[str, Any]:
        data = self._state.to_dict()
        data["uptime"] = (self.clock() - self._state.started_at).total_seconds()
        if self.webhook_relay is not None:
            data["webhook"] = self.webhook_relay.get_stats()
        return data

    async def shutdown(self):
        """Cancela tareas pendientes y destruye el adapter actual."""
        self._shutting_down = True
        self._deferred_recovery = None
        logger.info("🛑 Cerrando sesión WhatsApp...")

        current = asyncio.current_task()
        tasks = [
            task for task in (self._recovery_task, self._event_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()

        adapter, self.adapter = self.adapter, None
        if adapter is not None:
            try:
                await adapter.destroy()
            except Exception as e:
                logger.warning(f"⚠️ destroy() falló en shutdown: {e}")

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._state.restarting = False
        self._transition(SessionPhase.UNINITIALIZED, "shutdown")
