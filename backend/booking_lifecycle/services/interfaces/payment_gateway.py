"""
Payment gateway interface.
Only the behavioural contract is fixed here; any real processor client
must honour the same semantics:

- Every call is idempotent on its object id (intent id, refund id), so a
  retried call after a timeout never moves money twice.
- Failures raise GatewayError with a processor error code. Codes in
  RETRYABLE_GATEWAY_ERRORS may be retried; anything else is final.
- Calls may be slow. The PaymentManager wraps each one in an explicit
  timeout and retry budget, so implementations need not.
"""

from abc import ABC, abstractmethod
from typing import Optional

# Processor error codes that indicate the call may be retried
RETRYABLE_GATEWAY_ERRORS: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "api_connection_error",
}


class GatewayError(Exception):
    def __init__(self, code: str, message: Optional[str] = None, retryable: Optional[bool] = None):
        self.code = code
        self.message = message or code.replace("_", " ")
        self.retryable = code in RETRYABLE_GATEWAY_ERRORS if retryable is None else retryable
        super().__init__(self.message)


class PaymentGateway(ABC):
    """
    Interface for payment processors.

    Implementations:
    - SimulatedPaymentGateway: in-process, scriptable failures and latency
    """

    @abstractmethod
    async def authorize(self, intent_id: str, amount_cents: int, currency: str, payment_method_id: str) -> str:
        """
        Place a hold for amount_cents.

        Returns:
            Processor reference for the authorization
        """
        pass

    @abstractmethod
    async def capture(self, intent_id: str, amount_cents: int) -> str:
        pass

    @abstractmethod
    async def cancel(self, intent_id: str) -> str:
        """Release an uncaptured hold."""
        pass

    @abstractmethod
    async def refund(self, refund_id: str, intent_id: str, amount_cents: int) -> str:
        pass

    @abstractmethod
    async def submit_dispute_evidence(self, dispute_id: str, evidence: dict) -> str:
        pass
