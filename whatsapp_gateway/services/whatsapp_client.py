"""
WhatsApp Client - Adapter sobre WhatsApp Web.js

Envuelve el cliente whatsapp-web.js corriendo como subprocess Node.js.
Python y Node se comunican por JSON lines: Node emite eventos de
lifecycle y respuestas a comandos por stdout, Python envía comandos
por stdin.

El adapter no toma decisiones de recuperación: solo publica eventos en
un canal que SessionController drena en orden.
"""

import asyncio
import itertools
import json
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from ..utils.config import get_settings
from ..utils.logger import get_logger, log_whatsapp_event

logger = get_logger(__name__)

# Las respuestas de getChats pueden ser grandes
STDOUT_LIMIT = 16 * 1024 * 1024
DESTROY_TIMEOUT = 15.0

NODE_DEPENDENCIES = {
    "whatsapp-web.js": "^1.23.0",
}


class SessionEventType(str, Enum):
    """Eventos de lifecycle emitidos por el cliente WhatsApp."""
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    MESSAGE = "message"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"


@dataclass
class SessionEvent:
    type: SessionEventType
    data: Dict[str, Any] = field(default_factory=dict)


class WhatsAppClientError(Exception):
    """Error del cliente WhatsApp (proceso caído, timeout o fallo del proveedor)."""
    pass


class SessionAdapter(ABC):
    """
    Contrato del handle de sesión externo.

    Las implementaciones publican eventos con _emit() y cierran el canal
    con _close_events() cuando el handle muere.
    """

    def __init__(self):
        self._events: asyncio.Queue = asyncio.Queue()
        self._events_closed = False

    @abstractmethod
    async def connect(self):
        """Arranca la sesión. Los eventos pueden llegar en cualquier momento después."""

    @abstractmethod
    async def destroy(self):
        """Cierra la sesión. Debe ser seguro llamarlo sobre un handle muerto."""

    @abstractmethod
    async def send_message(self, jid: str, body: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Envía un mensaje y devuelve la respuesta del proveedor."""

    @abstractmethod
    async def get_chats(self) -> List[Dict[str, Any]]:
        """Lista chats como dicts {id, name, isGroup}."""

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Itera los eventos en orden de emisión hasta que el canal se cierra."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    def _emit(self, event_type: SessionEventType, data: Optional[Dict[str, Any]] = None):
        if self._events_closed:
            return
        self._events.put_nowait(SessionEvent(type=event_type, data=data or {}))

    def _close_events(self):
        if not self._events_closed:
            self._events_closed = True
            self._events.put_nowait(None)


BRIDGE_SCRIPT = r'''
const { Client, LocalAuth } = require('whatsapp-web.js');
const readline = require('readline');

const config = JSON.parse(process.argv[2] || '{}');

const emit = (event, data = {}) => {
    process.stdout.write(JSON.stringify({ event, data }) + '\n');
};

const respond = (id, ok, payload) => {
    const message = { event: 'response', id, ok };
    if (ok) {
        message.result = payload;
    } else {
        message.error = payload;
    }
    process.stdout.write(JSON.stringify(message) + '\n');
};

// LocalAuth con path persistente
const client = new Client({
    authStrategy: new LocalAuth({
        clientId: config.clientId,
        dataPath: config.authPath
    }),
    webVersionCache: config.webVersionUrl
        ? { type: 'remote', remotePath: config.webVersionUrl }
        : { type: 'local', path: config.cachePath },
    userAgent: config.userAgent,
    puppeteer: {
        headless: config.headless,
        args: config.browserArgs
    }
});

client.on('qr', (qr) => emit('qr', { qr }));

client.on('authenticated', () => emit('authenticated'));

client.on('ready', () => emit('ready', {
    phone_number: client.info?.wid?.user || null
}));

client.on('message', (msg) => emit('message', {
    id: msg.id?._serialized || null,
    from: msg.from,
    body: msg.body,
    timestamp: msg.timestamp,
    hasMedia: msg.hasMedia
}));

client.on('auth_failure', (message) => emit('auth_failure', { message: String(message) }));

client.on('disconnected', (reason) => emit('disconnected', { reason: String(reason) }));

const serializeSent = (sent, to) => ({
    id: sent?.id?._serialized || null,
    to,
    timestamp: sent?.timestamp || null,
    ack: sent?.ack ?? null
});

// Comandos desde Python, uno por línea
const rl = readline.createInterface({ input: process.stdin });

rl.on('line', async (line) => {
    if (!line.trim()) return;

    let command;
    try {
        command = JSON.parse(line);
    } catch (error) {
        emit('command_error', { error: error.message });
        return;
    }

    const { id, action, data = {} } = command;

    try {
        if (action === 'send_message') {
            const sent = await client.sendMessage(data.to, data.body, data.options || {});
            respond(id, true, serializeSent(sent, data.to));
        } else if (action === 'get_chats') {
            const chats = await client.getChats();
            respond(id, true, chats.map((chat) => ({
                id: chat.id._serialized,
                name: chat.name,
                isGroup: chat.isGroup
            })));
        } else if (action === 'destroy') {
            try {
                await client.destroy();
            } finally {
                respond(id, true, { destroyed: true });
                process.exit(0);
            }
        } else {
            respond(id, false, `Unknown action: ${action}`);
        }
    } catch (error) {
        respond(id, false, error.message);
    }
});

rl.on('close', async () => {
    try {
        await client.destroy();
    } finally {
        process.exit(0);
    }
});

client.initialize().catch((error) => {
    emit('init_error', { error: error.message });
    process.exit(1);
});
'''


class WhatsAppWebClient(SessionAdapter):
    """
    Adapter que maneja un subprocess Node.js con whatsapp-web.js.

    Features:
    - Session persistence vía LocalAuth (sobrevive reinicios)
    - Versión de WhatsApp Web fijada
    - Comandos request/response con timeout
    - Evento 'disconnected' sintético si el proceso muere sin avisar
    """

    def __init__(
        self,
        client_id: str = None,
        auth_path: str = None,
        cache_path: str = None,
        bridge_path: str = None,
        web_version_url: str = None,
        headless: bool = None,
        browser_args: List[str] = None,
        user_agent: str = None,
        node_binary: str = None,
        command_timeout: float = None
    ):
        super().__init__()
        settings = get_settings()

        self.client_id = client_id or settings.WHATSAPP_CLIENT_ID
        self.auth_path = Path(auth_path or settings.WHATSAPP_AUTH_PATH)
        self.cache_path = Path(cache_path or settings.WHATSAPP_CACHE_PATH)
        self.bridge_path = Path(bridge_path or settings.WHATSAPP_BRIDGE_PATH)
        self.web_version_url = web_version_url if web_version_url is not None else settings.WHATSAPP_WEB_VERSION_URL
        self.headless = headless if headless is not None else settings.WHATSAPP_HEADLESS
        self.browser_args = browser_args if browser_args is not None else settings.browser_args
        self.user_agent = user_agent or settings.WHATSAPP_USER_AGENT
        self.node_binary = node_binary or settings.WHATSAPP_NODE_BINARY
        self.command_timeout = command_timeout or settings.WHATSAPP_COMMAND_TIMEOUT

        self.process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._command_ids = itertools.count(1)
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._destroying = False

    @property
    def script_path(self) -> Path:
        return self.bridge_path / "whatsapp-bridge.js"

    @property
    def bridge_config(self) -> Dict[str, Any]:
        """Configuración que recibe el script Node.js como argv[2]."""
        return {
            "clientId": self.client_id,
            "authPath": str(self.auth_path),
            "cachePath": str(self.cache_path),
            "webVersionUrl": self.web_version_url,
            "headless": self.headless,
            "browserArgs": self.browser_args,
            "userAgent": self.user_agent,
        }

    def _write_bridge_script(self) -> Path:
        """Escribe el script del bridge en el directorio de trabajo de Node."""
        self.bridge_path.mkdir(parents=True, exist_ok=True)
        self.script_path.write_text(BRIDGE_SCRIPT, encoding='utf-8')
        logger.debug(f"Bridge script escrito en {self.script_path}")
        return self.script_path

    async def _ensure_node_dependencies(self):
        """Instala whatsapp-web.js con npm si no está en el bridge."""
        if (self.bridge_path / "node_modules" / "whatsapp-web.js").exists():
            return

        npm = shutil.which("npm")
        if npm is None:
            raise WhatsAppClientError("npm no está instalado - no se pueden instalar dependencias Node.js")

        package_json = {
            "name": "whatsapp-gateway-bridge",
            "version": "1.0.0",
            "private": True,
            "dependencies": NODE_DEPENDENCIES,
            "engines": {"node": ">=18.0.0"}
        }
        (self.bridge_path / "package.json").write_text(json.dumps(package_json, indent=2), encoding='utf-8')

        logger.info("📦 Instalando dependencias Node.js...")
        process = await asyncio.create_subprocess_exec(
            npm, 'install', '--omit=dev', '--no-audit', '--no-fund',
            cwd=str(self.bridge_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=300)
        except asyncio.TimeoutError:
            process.kill()
            raise WhatsAppClientError("Timeout instalando dependencias Node.js")

        if process.returncode != 0:
            raise WhatsAppClientError(f"npm install falló: {stderr.decode(errors='replace').strip()}")

        logger.info("✅ Dependencias Node.js instaladas")

    async def connect(self):
        """
        Inicia el subprocess Node.js.

        Retorna en cuanto el proceso arrancó; qr/authenticated/ready llegan
        después por el canal de eventos.

        Raises:
            WhatsAppClientError: Si Node.js no está disponible o el proceso no arranca
        """
        if self.process is not None and self.process.returncode is None:
            raise WhatsAppClientError("El cliente WhatsApp ya está conectado")

        if shutil.which(self.node_binary) is None:
            raise WhatsAppClientError(f"Node.js no está instalado ({self.node_binary})")

        self._write_bridge_script()
        await self._ensure_node_dependencies()

        logger.info("🚀 Iniciando proceso WhatsApp Web.js...")
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.node_binary,
                str(self.script_path),
                json.dumps(self.bridge_config),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.bridge_path),
                limit=STDOUT_LIMIT
            )
        except OSError as e:
            raise WhatsAppClientError(f"No se pudo iniciar Node.js: {e}") from e

        self._stdout_task = asyncio.create_task(self._monitor_output(self.process))
        self._stderr_task = asyncio.create_task(self._monitor_stderr(self.process))
        logger.info(f"✅ Proceso WhatsApp iniciado (pid {self.process.pid})")

    async def _monitor_output(self, process: asyncio.subprocess.Process):
        """Lee stdout del subprocess hasta EOF y despacha cada línea."""
        logger.debug("👁️ Iniciando monitoring de WhatsApp output...")

        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as e:
                # Línea más larga que el límite del StreamReader
                logger.warning(f"⚠️ Línea descartada del bridge: {e}")
                continue

            if not raw:
                break

            line = raw.decode('utf-8', errors='replace').strip()
            if line:
                self._handle_line(line)

        return_code = await process.wait()
        self._handle_exit(return_code)

    async def _monitor_stderr(self, process: asyncio.subprocess.Process):
        """Drena stderr para que el pipe no se llene."""
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            line = raw.decode('utf-8', errors='replace').strip()
            if not line:
                continue
            if 'error' in line.lower():
                logger.warning(f"WhatsApp stderr: {line}")
            else:
                logger.debug(f"WhatsApp stderr: {line}")

    def _handle_line(self, line: str):
        """Procesa una línea de stdout: respuesta a comando o evento."""
        if not line.startswith('{'):
            # console.log de whatsapp-web.js / puppeteer
            if 'error' in line.lower() or 'failed' in line.lower():
                logger.warning(f"WhatsApp warning/error: {line}")
            else:
                logger.debug(f"WhatsApp info: {line}")
            return

        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"JSON decode error: {e}, line: {line[:200]}")
            return

        event = payload.get('event')
        data = payload.get('data') or {}

        if event == 'response':
            self._resolve_command(payload)
            return

        try:
            event_type = SessionEventType(event)
        except ValueError:
            if event == 'init_error':
                logger.error(f"❌ Error inicializando WhatsApp Web.js: {data.get('error')}")
            else:
                logger.debug(f"Evento de bridge ignorado: {event}")
            return

        log_whatsapp_event(logger, event_type.value, data)
        self._emit(event_type, data)

    def _resolve_command(self, payload: Dict[str, Any]):
        command_id = str(payload.get('id'))
        future = self._pending.get(command_id)
        if future is None or future.done():
            logger.debug(f"Respuesta sin comando pendiente: {command_id}")
            return

        if payload.get('ok'):
            future.set_result(payload.get('result'))
        else:
            future.set_exception(WhatsAppClientError(payload.get('error') or 'Unknown error'))

    def _fail_pending(self, reason: str):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(WhatsAppClientError(reason))
        self._pending.clear()

    def _handle_exit(self, return_code: Optional[int]):
        """El proceso terminó: falla comandos pendientes y cierra el canal."""
        self._fail_pending("Proceso WhatsApp terminado")

        if not self._destroying:
            logger.error(f"❌ Proceso WhatsApp terminó inesperadamente con código: {return_code}")
            self._emit(SessionEventType.DISCONNECTED, {"reason": "PROCESS_EXITED", "return_code": return_code})
        else:
            logger.info(f"🛑 Proceso WhatsApp terminado (código {return_code})")

        self._close_events()

    async def _send_command(self, action: str, data: Optional[Dict[str, Any]] = None, timeout: float = None) -> Any:
        """
        Envía un comando al proceso Node.js y espera su respuesta.

        Raises:
            WhatsAppClientError: Proceso no disponible, timeout o error del proveedor
        """
        process = self.process
        if process is None or process.returncode is not None or process.stdin is None:
            raise WhatsAppClientError("Proceso WhatsApp no disponible")

        command_id = str(next(self._command_ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[command_id] = future

        command = {"id": command_id, "action": action, "data": data or {}}

        try:
            process.stdin.write((json.dumps(command) + '\n').encode('utf-8'))
            await process.stdin.drain()
            return await asyncio.wait_for(future, timeout=timeout or self.command_timeout)
        except asyncio.TimeoutError:
            raise WhatsAppClientError(f"Timeout esperando respuesta a '{action}'")
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WhatsAppClientError(f"Error enviando comando '{action}': {e}") from e
        finally:
            self._pending.pop(command_id, None)

    async def send_message(self, jid: str, body: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._send_command("send_message", {
            "to": jid,
            "body": body,
            "options": options or {}
        })

    async def get_chats(self) -> List[Dict[str, Any]]:
        return await self._send_command("get_chats")

    async def destroy(self):
        """
        Detiene el cliente: pide destroy() a whatsapp-web.js y, si no
        responde, mata el proceso.
        """
        process = self.process
        self._destroying = True

        if process is None:
            self._close_events()
            return

        logger.info("🛑 Deteniendo cliente WhatsApp...")

        try:
            if process.returncode is None:
                try:
                    await self._send_command("destroy", timeout=DESTROY_TIMEOUT)
                except WhatsAppClientError as e:
                    logger.debug(f"destroy remoto falló: {e}")

                try:
                    await asyncio.wait_for(process.wait(), timeout=10.0)
                except asyncio.TimeoutError:
                    logger.warning("⚠️ Proceso WhatsApp no terminó, forzando kill")
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()
        finally:
            for task in (self._stdout_task, self._stderr_task):
                if task is not None and not task.done():
                    task.cancel()
            self._fail_pending("Cliente WhatsApp destruido")
            self.process = None
            self._close_events()
