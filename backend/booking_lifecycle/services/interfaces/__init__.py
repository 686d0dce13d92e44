"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .alert_sink import AlertSink
from .payment_gateway import GatewayError, PaymentGateway
from .simulated_gateway import SimulatedPaymentGateway

__all__ = ['AlertSink', 'GatewayError', 'PaymentGateway', 'SimulatedPaymentGateway']
