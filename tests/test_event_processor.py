from __future__ import annotations

import asyncio

from farebridge.models.booking import OrderStatus
from farebridge.tickets.poller import poll_job_id
from fakes import build_test_runtime, envelope, order_payload


def _count_merges(runtime) -> list[str]:
    calls: list[str] = []
    original = runtime.store.merge_snapshot

    def counting(order, *args, **kwargs):
        calls.append(order.id)
        return original(order, *args, **kwargs)

    runtime.store.merge_snapshot = counting  # type: ignore[method-assign]
    return calls


def test_redelivered_event_applies_once() -> None:
    runtime = build_test_runtime()
    merges = _count_merges(runtime)
    event = envelope("wev_0001", "order.created", order_payload(status="awaiting_payment"), idempotency_key="k-1")

    first = asyncio.run(runtime.processor.process(event))
    second = asyncio.run(runtime.processor.process(event))

    assert first.status == "applied"
    assert second.status == "duplicate"
    assert merges == ["ord_0001"]
    assert runtime.ledger.seen("order.created|k-1")


def test_same_idempotency_key_under_new_event_id_is_a_duplicate() -> None:
    runtime = build_test_runtime()
    payload = order_payload(status="awaiting_payment")

    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.updated", payload, idempotency_key="k-9")))
    outcome = asyncio.run(runtime.processor.process(envelope("wev_0002", "order.updated", payload, idempotency_key="k-9")))

    assert outcome.status == "duplicate"


def test_event_id_is_the_fallback_key() -> None:
    runtime = build_test_runtime()
    event = envelope("wev_0003", "order.updated", order_payload(status="awaiting_payment"))

    asyncio.run(runtime.processor.process(event))

    assert runtime.ledger.seen("event|wev_0003")


def test_order_created_creates_placeholder_owned_order() -> None:
    runtime = build_test_runtime()

    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.created", order_payload(status="awaiting_payment"))))

    row = runtime.store.get("ord_0001")
    assert row is not None
    assert row["status"] == "awaiting_payment"
    assert row["amount"] == "100.00"
    assert row["currency"] == "EUR"
    assert row["order_type"] == "hold"
    assert row["last_event_type"] == "order.created"
    placeholder = runtime.repositories.users.first()
    assert placeholder is not None
    assert row["user_id"] == placeholder["id"]


def test_unknown_order_is_flagged_when_placeholders_disabled() -> None:
    runtime = build_test_runtime(create_placeholder_orders=False)

    outcome = asyncio.run(runtime.processor.process(envelope("wev_0001", "order.updated", order_payload())))

    assert outcome.status == "skipped"
    assert runtime.store.get("ord_0001") is None
    assert [record.order_id for record in runtime.audit.follow_ups("unknown_order")] == ["ord_0001"]


def test_confirmed_order_schedules_one_ticket_poll() -> None:
    runtime = build_test_runtime()
    payload = order_payload(order_type="instant", status="confirmed")

    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.created", payload)))
    asyncio.run(runtime.processor.process(envelope("wev_0002", "order.updated", payload)))

    pending = runtime.poll_queue.pending
    assert len(pending) == 1
    assert pending[0].job_id == poll_job_id("ord_0001")
    assert pending[0].payload == {"order_id": "ord_0001", "attempt": 1}
    assert pending[0].delay == 2.0


def test_update_merges_without_blanking_columns() -> None:
    runtime = build_test_runtime()
    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.created", order_payload(status="awaiting_payment"))))

    asyncio.run(runtime.processor.process(envelope("wev_0002", "order.updated", {"id": "ord_0001", "status": "paid"})))

    row = runtime.store.get("ord_0001")
    assert row["status"] == "paid"
    assert row["amount"] == "100.00"
    assert row["booking_reference"] == "RZPNX8"


def test_airline_change_is_recorded_once_and_marks_order_changed() -> None:
    runtime = build_test_runtime()
    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.created", order_payload(status="confirmed"))))
    change = {"id": "oac_0001", "order_id": "ord_0001", "removed": [], "added": []}

    asyncio.run(runtime.processor.process(envelope("wev_0002", "order.airline_initiated_change_detected", change)))
    asyncio.run(runtime.processor.process(envelope("wev_0003", "order.airline_initiated_change_detected", change)))

    assert runtime.store.get("ord_0001")["status"] == OrderStatus.CHANGED.value
    rows = runtime.repositories.schedule_changes.list_where("order_id", "ord_0001")
    assert len(rows) == 1
    assert rows[0]["payload"]["id"] == "oac_0001"


def test_cancellation_quote_then_confirmation() -> None:
    runtime = build_test_runtime()
    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.created", order_payload(status="confirmed"))))
    quote = {
        "id": "ore_0001",
        "order_id": "ord_0001",
        "refund_amount": "90.00",
        "refund_currency": "EUR",
        "refund_to": "original_form_of_payment",
        "expires_at": "2026-03-01T12:00:00Z",
    }

    asyncio.run(runtime.processor.process(envelope("wev_0002", "order_cancellation.created", quote)))
    mirror = runtime.repositories.cancellations.get("ore_0001")
    assert mirror["refund_amount"] == "90.00"
    assert mirror.get("confirmed_at") is None

    confirmed = {**quote, "confirmed_at": "2026-03-01T11:00:00Z"}
    asyncio.run(runtime.processor.process(envelope("wev_0003", "order_cancellation.confirmed", confirmed)))

    assert runtime.repositories.cancellations.get("ore_0001")["confirmed_at"].startswith("2026-03-01T11:00:00")
    row = runtime.store.get("ord_0001")
    assert row["status"] == "cancelled"
    assert row["payment_status"] == "cancelled"


def test_out_of_order_cancellation_converges() -> None:
    runtime = build_test_runtime()
    confirmed = {"id": "ore_0001", "order_id": "ord_0001", "confirmed_at": "2026-03-01T11:00:00Z"}

    asyncio.run(runtime.processor.process(envelope("wev_0009", "order_cancellation.confirmed", confirmed)))
    asyncio.run(runtime.processor.process(envelope("wev_0001", "order.created", order_payload(status="confirmed"))))

    row = runtime.store.get("ord_0001")
    assert row["status"] == "cancelled"
    assert row["amount"] == "100.00"
    assert runtime.poll_queue.pending == []


def test_unknown_and_ping_events_are_ignored_but_stamped() -> None:
    runtime = build_test_runtime()
    for event_id, event_type in (("wev_0001", "ping.triggered"), ("wev_0002", "order.something_new")):
        runtime.repositories.webhook_events.insert({"id": event_id, "type": event_type})
        outcome = asyncio.run(runtime.processor.process(envelope(event_id, event_type, {"id": "x"})))
        assert outcome.status == "ignored"
        assert runtime.repositories.webhook_events.get(event_id)["processed_at"] is not None


def test_worker_drain_processes_queued_webhooks() -> None:
    runtime = build_test_runtime()
    asyncio.run(
        runtime.webhook_queue.add("process", {"event": envelope("wev_0001", "order.created", order_payload())})
    )

    processed = asyncio.run(runtime.drain())

    assert processed == 1
    assert runtime.store.get("ord_0001") is not None
    assert runtime.webhook_queue.completed_count == 1
