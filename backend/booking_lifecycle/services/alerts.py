"""
Non-blocking alert channel for the audit log.

publish() only enqueues (put_nowait); a background worker drains the queue
and hands each alert to every sink. A full queue drops the alert with a
warning and a metric instead of slowing down the audit write. Sink failures
are logged per sink and never reach the publisher.
"""

import asyncio
from typing import Optional

import httpx

from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import record_alert
from booking_lifecycle.schemas.alert import Alert
from booking_lifecycle.services.interfaces.alert_sink import AlertSink

logger = get_logger(__name__)


class LoggingAlertSink(AlertSink):
    async def send(self, alert: Alert) -> None:
        logger.warning(
            "audit_alert",
            alert_type=alert.alert_type,
            severity=alert.severity,
            message=alert.message,
            booking_id=alert.booking_id,
            audit_entry_id=alert.audit_entry_id,
        )


class WebhookAlertSink(AlertSink):
    """POSTs the alert as JSON. The client carries an explicit timeout."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._owns_client = client is None

    async def send(self, alert: Alert) -> None:
        response = await self._client.post(self.url, json=alert.model_dump(mode="json"))
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AlertDispatcher:
    def __init__(self, sinks: list[AlertSink], queue_size: int = 1000):
        self.sinks = sinks
        self._queue: asyncio.Queue[Alert] = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def publish(self, alert: Alert) -> bool:
        """Enqueue without waiting. Returns False if the alert was dropped."""
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            record_alert(alert.alert_type, "dropped")
            logger.warning("audit_alert_dropped", alert_type=alert.alert_type, booking_id=alert.booking_id)
            return False
        record_alert(alert.alert_type, "published")
        self.start()
        return True

    async def _deliver(self, alert: Alert) -> None:
        for sink in self.sinks:
            try:
                await sink.send(alert)
            except (httpx.HTTPError, OSError) as e:
                record_alert(alert.alert_type, "failed")
                logger.error(
                    "audit_alert_delivery_failed",
                    sink=type(sink).__name__,
                    alert_type=alert.alert_type,
                    error=str(e),
                )
            else:
                record_alert(alert.alert_type, "delivered")

    async def _run(self) -> None:
        while True:
            alert = await self._queue.get()
            try:
                await self._deliver(alert)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued alert has been handed to the sinks."""
        if not self._queue.empty():
            self.start()
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        for sink in self.sinks:
            if isinstance(sink, WebhookAlertSink):
                await sink.close()
