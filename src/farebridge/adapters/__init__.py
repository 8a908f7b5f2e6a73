from .duffel_webhook import DuffelWebhookAdapter
from .stripe_webhook import StripeWebhookAdapter

__all__ = ["DuffelWebhookAdapter", "StripeWebhookAdapter"]
