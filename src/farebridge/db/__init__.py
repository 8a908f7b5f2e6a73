from .repositories import (
    AuditRepository,
    CancellationRepository,
    ChangeOfferRepository,
    ChangeRepository,
    ChangeRequestRepository,
    MemoryState,
    OrderRepository,
    ProcessedKeyRepository,
    RefundRepository,
    Repositories,
    ScheduleChangeRepository,
    StorageBackend,
    TicketDocumentConstraint,
    TicketDocumentRepository,
    UserRepository,
    WebhookEventRepository,
    build_repositories,
    get_storage_backend,
)

__all__ = [
    "AuditRepository",
    "CancellationRepository",
    "ChangeOfferRepository",
    "ChangeRepository",
    "ChangeRequestRepository",
    "MemoryState",
    "OrderRepository",
    "ProcessedKeyRepository",
    "RefundRepository",
    "Repositories",
    "ScheduleChangeRepository",
    "StorageBackend",
    "TicketDocumentConstraint",
    "TicketDocumentRepository",
    "UserRepository",
    "WebhookEventRepository",
    "build_repositories",
    "get_storage_backend",
]
