"""
Tests de integración para la API HTTP del gateway.

Usa la app real con un SessionController sobre un adapter falso,
inyectado vía dependency_overrides.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from whatsapp_gateway.models.session import SessionPhase
from whatsapp_gateway.services.whatsapp_client import SessionEventType, WhatsAppClientError

from tests.conftest import event


@pytest.fixture
def session(controller):
    """Controller inicializado (fase INITIALIZING)."""
    asyncio.run(controller.initialize())
    return controller


@pytest.fixture
def ready_session(session):
    session.handle_event(event(SessionEventType.READY))
    return session


@pytest.fixture
def app(session):
    # Import aquí para que conftest configure el entorno antes
    from main import app, get_session_controller

    app.dependency_overrides[get_session_controller] = lambda: session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Test client para FastAPI (sin lifespan: no arranca la sesión real)."""
    return TestClient(app)


@pytest.mark.integration
class TestHealthAndStatus:
    """Tests de /health, /status y /."""

    def test_health_disconnected(self, client):
        """Test health mientras la sesión inicializa."""

        # Act
        response = client.get("/health")

        # Assert
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "disconnected"
        assert data["authenticated"] is False
        assert data["uptime"] >= 0
        assert "timestamp" in data

    def test_health_connected(self, client, ready_session):
        """Test health con sesión READY."""

        # Act
        data = client.get("/health").json()

        # Assert
        assert data["status"] == "connected"
        assert data["authenticated"] is True

    def test_health_during_restart(self, client, ready_session):
        """Test que un reinicio se reporta como disconnected."""

        # Arrange
        ready_session.state.restarting = True
        ready_session.state.set_phase(SessionPhase.RESTARTING)

        # Act
        data = client.get("/health").json()

        # Assert
        assert data["status"] == "disconnected"

    def test_status(self, client, ready_session):
        """Test snapshot de diagnóstico."""

        # Act
        data = client.get("/status").json()

        # Assert
        assert data["phase"] == "ready"
        assert data["restart_count"] == 0
        assert "uptime" in data

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "WhatsApp Session Gateway"


@pytest.mark.integration
class TestQrEndpoint:
    """Tests de /auth/qr."""

    def test_qr_not_ready(self, client):
        """Test 503 cuando todavía no hay QR."""

        # Act
        response = client.get("/auth/qr")

        # Assert
        assert response.status_code == 503
        assert response.json() == {"message": "QR not ready yet"}

    def test_qr_available(self, client, session):
        """Test que devuelve el QR pendiente como data URL."""

        # Arrange
        session.handle_event(event(SessionEventType.QR, qr="2@abc"))

        # Act
        response = client.get("/auth/qr")

        # Assert
        assert response.status_code == 200
        assert response.json() == {"qr": "data:image/png;base64,2@abc"}

    def test_qr_already_authenticated(self, client, ready_session):
        """Test mensaje cuando la sesión ya está autenticada."""

        # Act
        response = client.get("/auth/qr")

        # Assert
        assert response.status_code == 200
        assert response.json() == {"message": "Client already authenticated"}


@pytest.mark.integration
class TestMessaging:
    """Tests de /send, /reply y /groups."""

    @pytest.mark.parametrize("payload", [
        {"to": "5491112345678", "message": "hola"},
        {},
        {"to": "5491112345678"},
        {"unexpected": True},
    ])
    def test_send_not_ready(self, client, payload):
        """Test 503 fuera de READY sin importar el payload."""

        # Act
        response = client.post("/send", json=payload)

        # Assert
        assert response.status_code == 503
        assert response.json() == {"error": "Client not ready"}

    @pytest.mark.parametrize("payload", [
        {"chatId": "1@c.us", "messageId": "abc", "replyText": "ok"},
        {},
    ])
    def test_reply_not_ready(self, client, payload):
        """Test 503 en /reply fuera de READY."""

        # Act
        response = client.post("/reply", json=payload)

        # Assert
        assert response.status_code == 503

    def test_groups_not_ready(self, client):
        response = client.get("/groups")

        assert response.status_code == 503

    def test_send_success(self, client, ready_session, adapter_factory):
        """Test envío exitoso a un número."""

        # Act
        response = client.post("/send", json={"to": "5491112345678", "message": "hola"})

        # Assert
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["response"]["to"] == "5491112345678@c.us"
        assert adapter_factory.last.sent == [("5491112345678@c.us", "hola", None)]

    def test_send_provider_error(self, client, ready_session, adapter_factory):
        """Test 500 cuando el proveedor falla."""

        # Arrange
        adapter_factory.last.send_error = WhatsAppClientError("Evaluation failed")

        # Act
        response = client.post("/send", json={"to": "5491112345678", "message": "hola"})

        # Assert
        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Evaluation failed"}

    def test_send_invalid_body_when_ready(self, client, ready_session):
        """Test 422 con sesión READY y body inválido."""

        # Act
        response = client.post("/send", json={"to": "5491112345678"})

        # Assert
        assert response.status_code == 422

    def test_reply_success(self, client, ready_session, adapter_factory):
        """Test respuesta citando un mensaje."""

        # Act
        response = client.post("/reply", json={
            "chatId": "120363-1@g.us",
            "messageId": "false_120363-1@g.us_ABC",
            "replyText": "recibido"
        })

        # Assert
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert adapter_factory.last.sent == [
            ("120363-1@g.us", "recibido", {"quotedMessageId": "false_120363-1@g.us_ABC"})
        ]

    def test_groups(self, client, ready_session, adapter_factory):
        """Test listado de grupos."""

        # Arrange
        adapter_factory.last.chats = [
            {"id": "1@c.us", "name": "Ana", "isGroup": False},
            {"id": "120363-1@g.us", "name": "Equipo", "isGroup": True},
        ]

        # Act
        response = client.get("/groups")

        # Assert
        assert response.status_code == 200
        assert response.json() == {"groups": [{"id": "120363-1@g.us", "name": "Equipo"}]}


@pytest.mark.integration
class TestRelayConfiguration:
    """Tests de /listen y /webhook/set."""

    def test_enable_listening(self, client, session):
        response = client.get("/listen")

        assert response.status_code == 200
        assert response.json() == {"message": "Listening enabled"}
        assert session.state.listening is True

    def test_set_webhook(self, client, session):
        """Test que la URL se guarda tal cual."""

        # Act
        response = client.post("/webhook/set", json={"url": "https://hooks.example.com/wa"})

        # Assert
        assert response.status_code == 200
        assert response.json() == {"success": True, "url": "https://hooks.example.com/wa"}
        assert session.state.webhook_url == "https://hooks.example.com/wa"

    def test_set_webhook_without_body(self, client, session):
        """Test que sin body la URL queda sin configurar."""

        # Arrange
        session.set_webhook("https://old.example.com")

        # Act
        response = client.post("/webhook/set")

        # Assert
        assert response.status_code == 200
        assert response.json() == {"success": True, "url": None}
        assert session.state.webhook_url is None

    def test_set_webhook_stores_string_unvalidated(self, client, session):
        """Test que cualquier string se guarda sin validar como URL."""

        # Act
        response = client.post("/webhook/set", json={"url": "not a url"})

        # Assert
        assert response.status_code == 200
        assert session.state.webhook_url == "not a url"

    def test_set_webhook_rejects_non_string(self, client, session):
        """Test que una URL no string se rechaza con 422 y no se guarda."""

        # Arrange
        session.set_webhook("https://hooks.example.com/wa")

        # Act
        response = client.post("/webhook/set", json={"url": 12345})

        # Assert
        assert response.status_code == 422
        assert session.state.webhook_url == "https://hooks.example.com/wa"
