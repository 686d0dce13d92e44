"""
Alert sink interface.
Alerts leave the process through one of these; delivery must not block
the audit write that triggered them.
"""

from abc import ABC, abstractmethod

from booking_lifecycle.schemas.alert import Alert


class AlertSink(ABC):
    """
    Implementations:
    - LoggingAlertSink: structured log line
    - WebhookAlertSink: JSON POST via httpx
    """

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        pass
