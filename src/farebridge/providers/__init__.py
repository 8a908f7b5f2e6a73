from .base import BookingProvider, PaymentGateway
from .duffel import DuffelClient
from .retry import retry_idempotent
from .stripe_gateway import StripeGateway

__all__ = ["BookingProvider", "DuffelClient", "PaymentGateway", "StripeGateway", "retry_idempotent"]
