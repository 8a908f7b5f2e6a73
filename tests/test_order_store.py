from __future__ import annotations

import pytest

from farebridge.config import EngineSettings
from farebridge.db.supabase_client import get_client
from farebridge.errors import UniqueViolationError
from farebridge.ledger.idempotency import IdempotencyLedger, key_for_envelope, key_for_payment_event
from farebridge.models.booking import BookingOrder
from farebridge.models.events import WebhookEnvelope
from fakes import build_test_runtime, envelope, order_payload


def _order(**overrides) -> BookingOrder:
    return BookingOrder.model_validate(order_payload(**overrides))


def test_snapshot_merge_creates_placeholder_owner_once() -> None:
    runtime = build_test_runtime()

    first = runtime.store.merge_snapshot(_order(order_id="ord_A"))
    second = runtime.store.merge_snapshot(_order(order_id="ord_B"))

    assert first["user_id"] == second["user_id"]
    users = list(runtime.repositories.users.state.users.values())
    assert [user["email"] for user in users] == ["system@farebridge.local"]
    assert first["order_type"] == "hold"
    assert first["amount"] == "100.00"
    assert first["status"] == "awaiting_payment"


def test_terminal_status_survives_later_snapshots() -> None:
    runtime = build_test_runtime()
    runtime.store.merge_snapshot(_order(order_type="instant", status="confirmed"))
    runtime.store.set_status("ord_0001", "cancelled", "cancelled")

    row = runtime.store.merge_snapshot(_order(order_type="instant", status="confirmed", amount="120.00"))

    assert row["status"] == "cancelled"
    assert row["payment_status"] == "cancelled"
    assert row["amount"] == "120.00"


def test_terminal_snapshot_is_always_applied() -> None:
    runtime = build_test_runtime()
    runtime.store.merge_snapshot(_order(order_type="instant", status="cancelled"))

    row = runtime.store.merge_snapshot(_order(order_type="instant", status="refunded"))

    assert row["status"] == "refunded"


def test_partial_snapshot_does_not_blank_columns() -> None:
    runtime = build_test_runtime()
    runtime.store.merge_snapshot(_order())

    row = runtime.store.merge_snapshot(BookingOrder.model_validate({"id": "ord_0001", "status": "confirmed"}))

    assert row["status"] == "confirmed"
    assert row["booking_reference"] == "RZPNX8"
    assert row["order_type"] == "hold"


def test_payment_intent_links_to_one_order_only() -> None:
    runtime = build_test_runtime()
    runtime.store.merge_snapshot(_order(order_id="ord_A"))
    runtime.store.merge_snapshot(_order(order_id="ord_B"))
    runtime.store.link_payment("ord_A", "pi_0001")

    with pytest.raises(UniqueViolationError):
        runtime.store.link_payment("ord_B", "pi_0001")

    assert runtime.store.get_by_intent("pi_0001")["provider_booking_id"] == "ord_A"


def test_schedule_change_is_recorded_once() -> None:
    runtime = build_test_runtime()

    assert runtime.store.record_airline_change("ord_0001", "oaic_1", {"id": "oaic_1"})
    assert runtime.store.record_airline_change("ord_0001", "oaic_1", {"id": "oaic_1"})

    assert len(runtime.repositories.schedule_changes.list_where("order_id", "ord_0001")) == 1
    assert runtime.store.get("ord_0001")["status"] == "changed"


def test_unknown_order_is_flagged_when_placeholders_are_disabled() -> None:
    runtime = build_test_runtime(create_placeholder_orders=False)

    assert runtime.store.ensure_order("ord_0001") is None
    assert runtime.store.ensure_order("ord_0001", user_id="user-1")["user_id"] == "user-1"

    open_items = runtime.audit.follow_ups()
    assert [item.action for item in open_items] == ["unknown_order"]
    assert open_items[0].needs_follow_up
    assert [record.order_id for record in runtime.audit.get_history("ord_0001")] == ["ord_0001"]


def test_ledger_keys() -> None:
    with_key = WebhookEnvelope.model_validate(envelope("wev_1", "order.updated", {}, idempotency_key="idem-7"))
    without_key = WebhookEnvelope.model_validate(envelope("wev_2", "order.updated", {}))

    assert key_for_envelope(with_key) == "order.updated|idem-7"
    assert key_for_envelope(without_key) == "event|wev_2"
    assert key_for_payment_event("evt_1") == "stripe|evt_1"


def test_ledger_records_each_key_once() -> None:
    runtime = build_test_runtime()
    ledger = IdempotencyLedger(runtime.repositories.processed_keys)

    assert ledger.record("event|wev_1") is True
    assert ledger.record("event|wev_1") is False
    assert ledger.seen("event|wev_1")
    assert not ledger.seen("event|wev_2")


def test_settings_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("FAREBRIDGE_ENV", "Production")
    monkeypatch.setenv("DUFFEL_API_URL", "https://api.duffel.test/")
    monkeypatch.setenv("DUFFEL_WEBHOOK_DEV_ACCEPT_UNVERIFIED", "true")
    monkeypatch.setenv("FAREBRIDGE_CREATE_PLACEHOLDER_ORDERS", "no")
    monkeypatch.setenv("FAREBRIDGE_POLL_MAX_ATTEMPTS", "20")

    settings = EngineSettings.from_env()

    assert settings.is_production
    assert settings.booking_api_url == "https://api.duffel.test"
    assert settings.webhook_accept_unverified is True
    assert settings.accept_unverified_webhooks is False
    assert settings.create_placeholder_orders is False
    assert settings.poll_max_attempts == 20


def test_supabase_client_requires_credentials(monkeypatch) -> None:
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_KEY", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)

    with pytest.raises(RuntimeError):
        get_client()
