"""
Simulated payment gateway - no network.
Useful for development, demos and tests.
"""

import asyncio
import uuid
from collections import defaultdict
from typing import Optional

from booking_lifecycle.services.interfaces.payment_gateway import GatewayError, PaymentGateway


class SimulatedPaymentGateway(PaymentGateway):
    """
    Succeeds unless told otherwise.

    - latency_seconds: delay added to every call (exercises timeouts)
    - fail_next(operation, code, times): script the next N failures
    - declined_payment_methods: authorize always raises card_declined

    Successful calls are remembered per (operation, object id); repeating one
    returns the original reference without moving money again.
    """

    def __init__(self, latency_seconds: float = 0.0):
        self.latency_seconds = latency_seconds
        self.declined_payment_methods: set[str] = set()
        self._scripted_failures: dict[str, list[str]] = defaultdict(list)
        self._completed: dict[tuple[str, str], str] = {}
        self.calls: list[tuple[str, str, Optional[int]]] = []  # every accepted money movement

    def fail_next(self, operation: str, code: str = "processing_error", times: int = 1) -> None:
        self._scripted_failures[operation].extend([code] * times)

    def count(self, operation: str) -> int:
        return sum(1 for op, _, _ in self.calls if op == operation)

    async def _perform(self, operation: str, object_id: str, amount_cents: Optional[int] = None) -> str:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        done = self._completed.get((operation, object_id))
        if done is not None:
            return done
        if self._scripted_failures[operation]:
            raise GatewayError(self._scripted_failures[operation].pop(0))
        reference = f"sim_{operation}_{uuid.uuid4().hex[:12]}"
        self._completed[(operation, object_id)] = reference
        self.calls.append((operation, object_id, amount_cents))
        return reference

    async def authorize(self, intent_id: str, amount_cents: int, currency: str, payment_method_id: str) -> str:
        if payment_method_id in self.declined_payment_methods:
            raise GatewayError("card_declined")
        return await self._perform("authorize", intent_id, amount_cents)

    async def capture(self, intent_id: str, amount_cents: int) -> str:
        return await self._perform("capture", intent_id, amount_cents)

    async def cancel(self, intent_id: str) -> str:
        return await self._perform("cancel", intent_id)

    async def refund(self, refund_id: str, intent_id: str, amount_cents: int) -> str:
        return await self._perform("refund", refund_id, amount_cents)

    async def submit_dispute_evidence(self, dispute_id: str, evidence: dict) -> str:
        return await self._perform("dispute_evidence", dispute_id)
