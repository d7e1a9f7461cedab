"""
Estado de runtime de la sesión WhatsApp.

SessionState es la única fuente de verdad del proceso: fase de la
máquina de estados, QR pendiente, flags de autenticación, configuración
del relay y el guard de reinicio. Solo SessionController la modifica.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class SessionPhase(str, Enum):
    """Fases de la máquina de estados de la sesión."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_QR = "awaiting_qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    RESTARTING = "restarting"


# Fases en las que hay un adapter vivo emitiendo eventos
LIVE_PHASES = frozenset({
    SessionPhase.INITIALIZING,
    SessionPhase.AWAITING_QR,
    SessionPhase.AUTHENTICATED,
    SessionPhase.READY,
})


@dataclass
class SessionState:
    """Estado de la sesión WhatsApp."""
    phase: SessionPhase = SessionPhase.UNINITIALIZED
    qr_payload: Optional[str] = None
    authenticated: bool = False
    last_ready_at: Optional[datetime] = None
    webhook_url: Optional[str] = None
    listening: bool = False
    restarting: bool = False

    # Diagnóstico
    restart_count: int = 0
    consecutive_restarts: int = 0
    last_restart_reason: Optional[str] = None
    last_error: Optional[str] = None
    last_event_at: Optional[datetime] = None  # cualquier evento recibido, aceptado o ignorado
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def ready(self) -> bool:
        return self.phase == SessionPhase.READY

    def set_phase(self, phase: SessionPhase) -> SessionPhase:
        """
        Cambia de fase manteniendo el invariante del QR.

        El payload del QR solo existe mientras se espera el escaneo.

        Returns:
            La fase anterior
        """
        previous = self.phase
        self.phase = phase
        if phase != SessionPhase.AWAITING_QR:
            self.qr_payload = None
        return previous

    def reset_runtime(self):
        """Limpia QR y flags de autenticación al (re)inicializar."""
        self.qr_payload = None
        self.authenticated = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "ready": self.ready,
            "authenticated": self.authenticated,
            "qr_available": self.qr_payload is not None,
            "last_ready_at": self.last_ready_at.isoformat() if self.last_ready_at else None,
            "listening": self.listening,
            "webhook_url": self.webhook_url,
            "restarting": self.restarting,
            "restart_count": self.restart_count,
            "consecutive_restarts": self.consecutive_restarts,
            "last_restart_reason": self.last_restart_reason,
            "last_error": self.last_error,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }
