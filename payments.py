"""
Payment gateway stubs

The order workflow only depends on the ``PaymentGateway`` protocol. Two
implementations ship: ``MockPaymentGateway`` always approves, and
``SimulatedPaymentGateway`` adds latency and a decline rate. No real card
network is ever contacted; card payloads are never logged.
"""
import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    success: bool
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None


class PaymentGateway(Protocol):
    def process_payment(self, amount: Decimal, card: Dict[str, Any],
                        idempotency_key: Optional[str] = None) -> PaymentResult:
        ...

    def refund_payment(self, transaction_id: str, amount: Decimal) -> RefundResult:
        ...


class MockPaymentGateway:
    def __init__(self):
        self._by_key: Dict[str, PaymentResult] = {}
        self._lock = threading.Lock()

    def process_payment(self, amount, card, idempotency_key=None):
        with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            result = PaymentResult(success=True, transaction_id=f"mock_{uuid.uuid4().hex}", amount=amount)
            if idempotency_key:
                self._by_key[idempotency_key] = result
        logger.info("Payment approved: %s for %s", result.transaction_id, amount)
        return result

    def refund_payment(self, transaction_id, amount):
        with self._lock:
            self._by_key = {k: r for k, r in self._by_key.items() if r.transaction_id != transaction_id}
        refund = RefundResult(success=True, refund_id=f"refund_{uuid.uuid4().hex}", amount=amount)
        logger.info("Payment %s refunded: %s", transaction_id, refund.refund_id)
        return refund


class SimulatedPaymentGateway(MockPaymentGateway):
    """Mock gateway with wall-clock latency and random declines."""

    def __init__(self, latency: float = 0.5, failure_rate: float = 0.1, rng: Optional[random.Random] = None):
        super().__init__()
        self.latency = latency
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    def process_payment(self, amount, card, idempotency_key=None):
        if self.latency:
            time.sleep(self.latency)
        if self.rng.random() < self.failure_rate:
            logger.warning("Payment declined for %s", amount)
            return PaymentResult(success=False, amount=amount, error="Card declined")
        return super().process_payment(amount, card, idempotency_key)


def build_gateway(settings) -> PaymentGateway:
    if settings.payment_mode == "simulated":
        return SimulatedPaymentGateway(latency=settings.payment_latency,
                                       failure_rate=settings.payment_failure_rate)
    return MockPaymentGateway()
