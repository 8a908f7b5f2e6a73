from __future__ import annotations

import os
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from farebridge.db.supabase_client import get_client
from farebridge.errors import MissingConstraintError, UniqueViolationError


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SUPABASE = "supabase"


class TicketDocumentConstraint(str, Enum):
    COMPOSITE = "composite"
    # UNIQUE(unique_id) only, no (order_id, unique_id) constraint to upsert against
    LEGACY_GLOBAL = "legacy_global"


def get_storage_backend() -> StorageBackend:
    raw = os.getenv("FAREBRIDGE_STORAGE_BACKEND", StorageBackend.MEMORY.value).strip().lower()
    if raw == StorageBackend.SUPABASE.value:
        return StorageBackend.SUPABASE
    return StorageBackend.MEMORY


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _execute(query: Any) -> Any:
    try:
        return query.execute()
    except Exception as exc:
        code = str(getattr(exc, "code", "") or "")
        if code == "23505":
            raise UniqueViolationError(str(exc)) from exc
        if code == "42P10":
            raise MissingConstraintError(str(exc)) from exc
        raise


def _first(response: Any) -> dict[str, Any] | None:
    rows = response.data or []
    return rows[0] if rows else None


@dataclass
class MemoryState:
    orders: dict[str, dict[str, Any]] = field(default_factory=dict)
    ticket_documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    ticket_document_constraint: TicketDocumentConstraint = TicketDocumentConstraint.COMPOSITE
    cancellations: dict[str, dict[str, Any]] = field(default_factory=dict)
    change_requests: dict[str, dict[str, Any]] = field(default_factory=dict)
    change_offers: dict[str, dict[str, Any]] = field(default_factory=dict)
    changes: dict[str, dict[str, Any]] = field(default_factory=dict)
    schedule_changes: dict[str, dict[str, Any]] = field(default_factory=dict)
    webhook_events: dict[str, dict[str, Any]] = field(default_factory=dict)
    processed_keys: dict[str, dict[str, Any]] = field(default_factory=dict)
    refunds: dict[str, dict[str, Any]] = field(default_factory=dict)
    users: dict[str, dict[str, Any]] = field(default_factory=dict)
    audit_log: list[dict[str, Any]] = field(default_factory=list)


_MEMORY_STATE = MemoryState()


class _BaseRepository:
    def __init__(self, state: MemoryState | None = None, client: Any | None = None) -> None:
        self.backend = StorageBackend.SUPABASE if client is not None else get_storage_backend()
        self.state = state if state is not None else _MEMORY_STATE
        if self.backend == StorageBackend.SUPABASE:
            self.client = client if client is not None else get_client()
        else:
            self.client = None


class OrderRepository(_BaseRepository):
    table = "orders"

    def _find(self, column: str, value: Any) -> dict[str, Any] | None:
        for row in self.state.orders.values():
            if row.get(column) == value:
                return row
        return None

    def get_by_provider_id(self, provider_booking_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = self._find("provider_booking_id", provider_booking_id)
            return dict(row) if row else None
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("provider_booking_id", provider_booking_id)
            .limit(1)
            .execute()
        )
        return _first(response)

    def get_by_intent(self, payment_intent_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = self._find("payment_intent_id", payment_intent_id)
            return dict(row) if row else None
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("payment_intent_id", payment_intent_id)
            .limit(1)
            .execute()
        )
        return _first(response)

    def insert_if_absent(self, row: dict[str, Any]) -> dict[str, Any]:
        """Insert keyed by provider_booking_id; an existing row is returned untouched."""
        provider_booking_id = row["provider_booking_id"]
        if self.backend == StorageBackend.MEMORY:
            existing = self._find("provider_booking_id", provider_booking_id)
            if existing:
                return dict(existing)
            now = _now_iso()
            stored = {"id": str(uuid4()), "created_at": now, "updated_at": now, **row}
            self.state.orders[stored["id"]] = stored
            return dict(stored)
        _execute(
            self.client.table(self.table).upsert(
                row, on_conflict="provider_booking_id", ignore_duplicates=True
            )
        )
        return self.get_by_provider_id(provider_booking_id) or row

    def update(
        self,
        provider_booking_id: str,
        values: dict[str, Any],
        unless_status_in: Collection[str] | None = None,
    ) -> bool:
        """Keyed partial update. Returns False when no row matched."""
        payload = {**values, "updated_at": _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            row = self._find("provider_booking_id", provider_booking_id)
            if row is None:
                return False
            if unless_status_in and row.get("status") in unless_status_in:
                return False
            intent_id = payload.get("payment_intent_id")
            if intent_id:
                owner = self._find("payment_intent_id", intent_id)
                if owner is not None and owner["id"] != row["id"]:
                    raise UniqueViolationError(f"payment_intent_id {intent_id} already linked")
            row.update(payload)
            return True
        query = self.client.table(self.table).update(payload).eq("provider_booking_id", provider_booking_id)
        if unless_status_in:
            excluded = ",".join(sorted(unless_status_in))
            query = query.or_(f"status.is.null,status.not.in.({excluded})")
        response = _execute(query)
        return bool(response.data)

    def list_by_user(self, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            rows = [dict(row) for row in self.state.orders.values() if row.get("user_id") == user_id]
            rows.sort(key=lambda row: row["created_at"], reverse=True)
            return rows[:limit]
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or []

    def all_rows(self) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [dict(row) for row in self.state.orders.values()]
        response = self.client.table(self.table).select("*").execute()
        return response.data or []


class TicketDocumentRepository(_BaseRepository):
    table = "ticket_documents"

    def upsert_by_order_unique(self, row: dict[str, Any]) -> dict[str, Any]:
        """Upsert on the (order_id, unique_id) constraint."""
        if self.backend == StorageBackend.MEMORY:
            if self.state.ticket_document_constraint == TicketDocumentConstraint.LEGACY_GLOBAL:
                raise MissingConstraintError("no unique constraint matching (order_id, unique_id)")
            for existing in self.state.ticket_documents.values():
                if existing["order_id"] == row["order_id"] and existing["unique_id"] == row["unique_id"]:
                    existing.update({"type": row["type"], "url": row.get("url"), "updated_at": _now_iso()})
                    return dict(existing)
            now = _now_iso()
            stored = {"id": str(uuid4()), "created_at": now, "updated_at": now, **row}
            self.state.ticket_documents[stored["id"]] = stored
            return dict(stored)
        response = _execute(self.client.table(self.table).upsert(row, on_conflict="order_id,unique_id"))
        return _first(response) or row

    def upsert_by_id(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if self.state.ticket_document_constraint == TicketDocumentConstraint.LEGACY_GLOBAL:
                for existing in self.state.ticket_documents.values():
                    if existing["id"] != row["id"] and existing["unique_id"] == row["unique_id"]:
                        raise UniqueViolationError(f"unique_id {row['unique_id']} already exists")
            now = _now_iso()
            stored = self.state.ticket_documents.setdefault(row["id"], {"created_at": now})
            stored.update({**row, "updated_at": now})
            return dict(stored)
        response = _execute(self.client.table(self.table).upsert(row, on_conflict="id"))
        return _first(response) or row

    def list_by_order(self, order_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [dict(row) for row in self.state.ticket_documents.values() if row["order_id"] == order_id]
        response = self.client.table(self.table).select("*").eq("order_id", order_id).execute()
        return response.data or []

    def all_rows(self) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [dict(row) for row in self.state.ticket_documents.values()]
        response = self.client.table(self.table).select("*").execute()
        return response.data or []


class _ProviderKeyedRepository(_BaseRepository):
    """Mirror rows keyed by a unique provider identifier, merged on upsert."""

    table: str
    key_column: str
    state_attr: str

    def _rows(self) -> dict[str, dict[str, Any]]:
        return getattr(self.state, self.state_attr)

    def upsert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            now = _now_iso()
            stored = self._rows().setdefault(row[self.key_column], {"id": str(uuid4()), "created_at": now})
            stored.update({**row, "updated_at": now})
            return dict(stored)
        response = _execute(self.client.table(self.table).upsert(row, on_conflict=self.key_column))
        return _first(response) or row

    def insert_if_absent(self, row: dict[str, Any]) -> bool:
        """Insert-only write. Returns False when the key already existed."""
        if self.backend == StorageBackend.MEMORY:
            if row[self.key_column] in self._rows():
                return False
            now = _now_iso()
            self._rows()[row[self.key_column]] = {"id": str(uuid4()), "created_at": now, "updated_at": now, **row}
            return True
        response = _execute(
            self.client.table(self.table).upsert(row, on_conflict=self.key_column, ignore_duplicates=True)
        )
        return bool(response.data)

    def get(self, key: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = self._rows().get(key)
            return dict(row) if row else None
        response = self.client.table(self.table).select("*").eq(self.key_column, key).limit(1).execute()
        return _first(response)

    def list_where(self, column: str, value: Any) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [dict(row) for row in self._rows().values() if row.get(column) == value]
        response = self.client.table(self.table).select("*").eq(column, value).execute()
        return response.data or []


class CancellationRepository(_ProviderKeyedRepository):
    table = "order_cancellations"
    key_column = "provider_cancellation_id"
    state_attr = "cancellations"


class ChangeRequestRepository(_ProviderKeyedRepository):
    table = "order_change_requests"
    key_column = "provider_request_id"
    state_attr = "change_requests"


class ChangeOfferRepository(_ProviderKeyedRepository):
    table = "order_change_offers"
    key_column = "provider_offer_id"
    state_attr = "change_offers"


class ChangeRepository(_ProviderKeyedRepository):
    table = "order_changes"
    key_column = "provider_change_id"
    state_attr = "changes"


class ScheduleChangeRepository(_ProviderKeyedRepository):
    table = "order_schedule_changes"
    key_column = "provider_change_id"
    state_attr = "schedule_changes"


class RefundRepository(_ProviderKeyedRepository):
    table = "refunds"
    key_column = "provider_refund_id"
    state_attr = "refunds"


class WebhookEventRepository(_BaseRepository):
    table = "webhook_events"

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if row["id"] in self.state.webhook_events:
                raise UniqueViolationError(f"webhook event {row['id']} already recorded")
            stored = {"processed_at": None, **row}
            self.state.webhook_events[row["id"]] = stored
            return dict(stored)
        response = _execute(self.client.table(self.table).insert(row))
        return _first(response) or row

    def mark_processed(self, event_id: str) -> None:
        processed_at = _now_iso()
        if self.backend == StorageBackend.MEMORY:
            row = self.state.webhook_events.get(event_id)
            if row is None:
                raise KeyError("Webhook event not found")
            row["processed_at"] = processed_at
            return
        self.client.table(self.table).update({"processed_at": processed_at}).eq("id", event_id).execute()

    def get(self, event_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = self.state.webhook_events.get(event_id)
            return dict(row) if row else None
        response = self.client.table(self.table).select("*").eq("id", event_id).limit(1).execute()
        return _first(response)


class ProcessedKeyRepository(_BaseRepository):
    table = "processed_keys"

    def exists(self, key: str) -> bool:
        if self.backend == StorageBackend.MEMORY:
            return key in self.state.processed_keys
        response = self.client.table(self.table).select("key").eq("key", key).limit(1).execute()
        return bool(response.data)

    def insert(self, key: str) -> None:
        row = {"key": key, "created_at": _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            if key in self.state.processed_keys:
                raise UniqueViolationError(f"key {key} already processed")
            self.state.processed_keys[key] = row
            return
        _execute(self.client.table(self.table).insert(row))


class UserRepository(_BaseRepository):
    table = "users"

    def first(self) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            rows = sorted(self.state.users.values(), key=lambda row: row["created_at"])
            return dict(rows[0]) if rows else None
        response = self.client.table(self.table).select("*").order("created_at").limit(1).execute()
        return _first(response)

    def ensure(self, email: str, role: str = "ADMIN") -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            for row in self.state.users.values():
                if row["email"] == email:
                    return dict(row)
            row = {"id": str(uuid4()), "email": email, "role": role, "created_at": _now_iso()}
            self.state.users[row["id"]] = row
            return dict(row)
        _execute(
            self.client.table(self.table).upsert(
                {"email": email, "role": role}, on_conflict="email", ignore_duplicates=True
            )
        )
        response = self.client.table(self.table).select("*").eq("email", email).limit(1).execute()
        return _first(response) or {"email": email, "role": role}


class AuditRepository(_BaseRepository):
    table = "audit_log"

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if "id" not in row:
                row = {**row, "id": str(uuid4())}
            self.state.audit_log.append(row)
            self.state.audit_log.sort(key=lambda item: item["timestamp"])
            return row
        response = self.client.table(self.table).insert(row).execute()
        return (response.data or [row])[0]

    def get_by_order(self, order_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [row for row in self.state.audit_log if row.get("order_id") == order_id]
        response = self.client.table(self.table).select("*").eq("order_id", order_id).order("timestamp").execute()
        return response.data or []

    def get_by_action(self, action: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [row for row in self.state.audit_log if row.get("action") == action]
        response = self.client.table(self.table).select("*").eq("action", action).order("timestamp").execute()
        return response.data or []


@dataclass
class Repositories:
    orders: OrderRepository
    ticket_documents: TicketDocumentRepository
    cancellations: CancellationRepository
    change_requests: ChangeRequestRepository
    change_offers: ChangeOfferRepository
    changes: ChangeRepository
    schedule_changes: ScheduleChangeRepository
    refunds: RefundRepository
    webhook_events: WebhookEventRepository
    processed_keys: ProcessedKeyRepository
    users: UserRepository
    audit: AuditRepository


def build_repositories(state: MemoryState | None = None, client: Any | None = None) -> Repositories:
    return Repositories(
        orders=OrderRepository(state, client),
        ticket_documents=TicketDocumentRepository(state, client),
        cancellations=CancellationRepository(state, client),
        change_requests=ChangeRequestRepository(state, client),
        change_offers=ChangeOfferRepository(state, client),
        changes=ChangeRepository(state, client),
        schedule_changes=ScheduleChangeRepository(state, client),
        refunds=RefundRepository(state, client),
        webhook_events=WebhookEventRepository(state, client),
        processed_keys=ProcessedKeyRepository(state, client),
        users=UserRepository(state, client),
        audit=AuditRepository(state, client),
    )
