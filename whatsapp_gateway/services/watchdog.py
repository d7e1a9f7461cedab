"""
Heartbeat watchdog de la sesión WhatsApp.

Detecta cuelgues silenciosos: si la sesión lleva demasiado tiempo en
READY sin volver a confirmar liveness, dispara una recuperación sin
borrar credenciales.
"""

import asyncio
import contextlib
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..models.session import SessionPhase
from ..utils.config import get_settings
from ..utils.logger import get_logger
from .session_controller import SessionController

logger = get_logger(__name__)


class Watchdog:
    """Chequeo periódico de staleness sobre SessionState."""

    def __init__(
        self,
        controller: SessionController,
        interval: float = None,
        threshold: float = None,
        clock: Callable[[], datetime] = None,
        sleep: Callable[[float], Awaitable[Any]] = None
    ):
        settings = get_settings()
        self.controller = controller
        self.interval = interval if interval is not None else settings.WATCHDOG_INTERVAL
        self.threshold = threshold if threshold is not None else settings.WATCHDOG_STALENESS_THRESHOLD
        self._clock = clock or controller.clock
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None

    def check(self) -> bool:
        """
        Un chequeo del watchdog.

        Returns:
            True si se disparó una recuperación
        """
        state = self.controller.state
        if state.phase != SessionPhase.READY or state.last_ready_at is None:
            return False

        elapsed = (self._clock() - state.last_ready_at).total_seconds()
        if elapsed <= self.threshold:
            return False

        logger.warning(f"💀 Heartbeat perdido ({elapsed:.0f}s desde ready), reiniciando...")
        task = self.controller.request_recovery(wipe_auth=False, reason="watchdog: heartbeat lost")
        return task is not None

    async def _run(self):
        while True:
            await self._sleep(self.interval)
            try:
                self.check()
            except Exception as e:
                logger.error(f"❌ Error en watchdog: {e}", exc_info=True)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"⏱️ Watchdog iniciado (cada {self.interval:.0f}s, umbral {self.threshold:.0f}s)")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
