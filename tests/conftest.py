"""
Configuración global para tests pytest.

Define fixtures y dobles de prueba comunes: un adapter de sesión falso,
reloj y sleep controlables, y un SessionController listo para usar.
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

# Antes de importar el paquete: sin archivos de log ni sesión real
os.environ.setdefault("MOCK_EXTERNAL_SERVICES", "true")
os.environ.setdefault("ENVIRONMENT", "testing")

import pytest

from whatsapp_gateway.services.session_controller import SessionController
from whatsapp_gateway.services.whatsapp_client import (
    SessionAdapter,
    SessionEvent,
    SessionEventType,
)
from whatsapp_gateway.utils.config import Settings, set_settings_for_testing


@pytest.fixture(scope="session")
def test_settings(tmp_path_factory):
    """Configuración de testing."""
    base = tmp_path_factory.mktemp("wa")
    return Settings(
        ENVIRONMENT="testing",
        LOG_LEVEL="DEBUG",
        DEBUG=True,
        MOCK_EXTERNAL_SERVICES=True,

        WHATSAPP_AUTH_PATH=str(base / ".wwebjs_auth"),
        WHATSAPP_CACHE_PATH=str(base / ".wwebjs_cache"),
        WHATSAPP_BRIDGE_PATH=str(base / "session"),

        # Más rápido para tests
        RESTART_SETTLE_DELAY=5.0,
        WATCHDOG_INTERVAL=60.0,
        WATCHDOG_STALENESS_THRESHOLD=900.0,
        WEBHOOK_TIMEOUT=1.0,
    )


@pytest.fixture(autouse=True)
def setup_test_settings(test_settings):
    """Auto-setup settings de testing para todos los tests."""
    set_settings_for_testing(test_settings)


class FakeSessionAdapter(SessionAdapter):
    """Adapter en memoria que registra llamadas y permite emitir eventos."""

    def __init__(
        self,
        connect_error: Optional[Exception] = None,
        connect_events: Optional[List[tuple]] = None
    ):
        super().__init__()
        self.connect_error = connect_error
        self.connect_events = list(connect_events or [])
        self.destroy_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.connect_calls = 0
        self.destroy_calls = 0
        self.sent: List[tuple] = []
        self.chats: List[Dict[str, Any]] = []

    async def connect(self):
        self.connect_calls += 1
        # Eventos emitidos antes de que connect() retorne
        for event_type, data in self.connect_events:
            self._emit(event_type, data)
        if self.connect_events:
            for _ in range(5):
                await asyncio.sleep(0)
        if self.connect_error:
            raise self.connect_error

    async def destroy(self):
        self.destroy_calls += 1
        self._close_events()
        if self.destroy_error:
            raise self.destroy_error

    async def send_message(self, jid, body, options=None):
        if self.send_error:
            raise self.send_error
        self.sent.append((jid, body, options))
        return {"id": f"true_{jid}_3EB0", "to": jid}

    async def get_chats(self):
        return self.chats

    def emit(self, event_type: SessionEventType, data: Optional[Dict[str, Any]] = None):
        self._emit(event_type, data)


class AdapterFactory:
    """Factory que crea FakeSessionAdapter y guarda cada instancia."""

    def __init__(
        self,
        connect_errors: Optional[List[Exception]] = None,
        connect_events: Optional[List[List[tuple]]] = None
    ):
        self.created: List[FakeSessionAdapter] = []
        self._connect_errors = list(connect_errors or [])
        self._connect_events = list(connect_events or [])

    def __call__(self) -> FakeSessionAdapter:
        error = self._connect_errors.pop(0) if self._connect_errors else None
        events = self._connect_events.pop(0) if self._connect_events else None
        adapter = FakeSessionAdapter(connect_error=error, connect_events=events)
        self.created.append(adapter)
        return adapter

    @property
    def last(self) -> FakeSessionAdapter:
        return self.created[-1]


class RecordingSleep:
    """Sleep que no espera: solo registra los delays pedidos."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def adapter_factory():
    return AdapterFactory()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def credential_dirs(tmp_path):
    """Directorios de auth y cache del browser (no creados)."""
    return [tmp_path / ".wwebjs_auth", tmp_path / ".wwebjs_cache"]


@pytest.fixture
def controller(adapter_factory, recording_sleep, fake_clock, credential_dirs):
    """SessionController con adapter falso, sleep y reloj controlables."""
    return SessionController(
        adapter_factory=adapter_factory,
        qr_encoder=lambda raw: f"data:image/png;base64,{raw}",
        settle_delay=5.0,
        backoff_multiplier=2.0,
        max_restart_delay=300.0,
        credential_paths=[str(p) for p in credential_dirs],
        sleep=recording_sleep,
        clock=fake_clock,
    )


# Helpers para tests

def event(event_type: SessionEventType, **data) -> SessionEvent:
    """Helper para crear eventos de sesión."""
    return SessionEvent(type=event_type, data=data)


async def let_events_flow(iterations: int = 10):
    """Cede el loop para que las tasks de drenado procesen eventos."""
    for _ in range(iterations):
        await asyncio.sleep(0)
