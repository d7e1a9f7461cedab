"""
Webhook Relay - Reenvío de mensajes entrantes a una URL externa.

Cada mensaje se entrega en una task independiente (fire-and-forget).
Los fallos se registran y se descartan: nunca se reintentan ni afectan
el estado de la sesión.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Set

import httpx

from ..models.messages import WebhookPayload
from ..utils.config import get_settings
from ..utils.logger import get_logger, log_api_call

logger = get_logger(__name__)


class WebhookRelay:
    """
    Entrega de webhooks con concurrencia acotada.

    Un semáforo limita las entregas simultáneas; las tasks en vuelo se
    drenan (o cancelan) en close().
    """

    def __init__(
        self,
        timeout: float = None,
        max_concurrency: int = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        settings = get_settings()
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT
        self.max_concurrency = max_concurrency or settings.WEBHOOK_MAX_CONCURRENCY

        self._client = client
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._tasks: Set[asyncio.Task] = set()

        self.stats = {
            "delivered": 0,
            "failed": 0,
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def relay(self, url: str, payload: WebhookPayload) -> asyncio.Task:
        """
        Programa la entrega sin esperarla.

        Returns:
            La task de entrega (útil en tests)
        """
        task = asyncio.create_task(self.deliver(url, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def deliver(self, url: str, payload: WebhookPayload) -> bool:
        """
        POST del payload al webhook.

        Returns:
            True si el webhook respondió 2xx
        """
        async with self._semaphore:
            start_time = time.perf_counter()
            try:
                response = await self._get_client().post(url, json=payload.to_json())
                response.raise_for_status()
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                self.stats["failed"] += 1
                log_api_call(
                    logger,
                    service="webhook",
                    endpoint=url,
                    duration_ms=(time.perf_counter() - start_time) * 1000,
                    success=False,
                    error=str(e)
                )
                logger.warning(f"⚠️ Webhook failed: {e}")
                return False

            self.stats["delivered"] += 1
            log_api_call(
                logger,
                service="webhook",
                endpoint=url,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                success=True
            )
            return True

    async def close(self, timeout: float = 5.0):
        """Espera las entregas en vuelo (hasta timeout) y cierra el cliente HTTP."""
        if self._tasks:
            pending = list(self._tasks)
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            for task in still_pending:
                task.cancel()
            if still_pending:
                logger.warning(f"⚠️ {len(still_pending)} webhooks cancelados en shutdown")
                await asyncio.gather(*still_pending, return_exceptions=True)

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "in_flight": self.in_flight}
