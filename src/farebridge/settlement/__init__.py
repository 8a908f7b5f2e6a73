from .payments import PaymentOrchestrator, free_intent_idempotency_key, order_intent_idempotency_key
from .refunds import RefundOrchestrator

__all__ = [
    "PaymentOrchestrator",
    "RefundOrchestrator",
    "free_intent_idempotency_key",
    "order_intent_idempotency_key",
]
