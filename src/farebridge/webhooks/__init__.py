from .ingestion import IngestionResult, MalformedWebhook, WebhookIngestion
from .signature import verify_signature

__all__ = ["IngestionResult", "MalformedWebhook", "WebhookIngestion", "verify_signature"]
