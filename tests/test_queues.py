from __future__ import annotations

import asyncio

from farebridge.bus.factory import build_queue_from_env, build_transport_queue_from_env
from farebridge.bus.fanout import FanoutJobQueue
from farebridge.bus.in_memory import InMemoryJobQueue
from farebridge.bus.jobs import TICKET_POLL_QUEUE, WEBHOOK_QUEUE, Job
from farebridge.bus.kafka import KafkaJobQueue
from farebridge.bus.worker import WorkerPool
from fakes import FakeClock


class FakeProducer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.flush_count = 0
        self.closed = False

    def send(self, topic: str, key: str, value: dict) -> None:
        self.sent.append((topic, key, value))

    def flush(self) -> None:
        self.flush_count += 1

    def close(self) -> None:
        self.closed = True


class RecordingMirror:
    def __init__(self) -> None:
        self.published: list[Job] = []
        self.closed = False

    def publish(self, job: Job) -> None:
        self.published.append(job)

    def close(self) -> None:
        self.closed = True


def test_delayed_job_waits_for_its_run_time() -> None:
    clock = FakeClock()
    queue = InMemoryJobQueue(TICKET_POLL_QUEUE, clock=clock)

    asyncio.run(queue.add("poll", {"order_id": "ord_0001"}, delay=10))

    assert queue.pop_due() is None
    clock.advance(10)
    job = queue.pop_due()
    assert job is not None
    assert job.payload == {"order_id": "ord_0001"}


def test_pending_job_id_dedupes_until_taken() -> None:
    queue = InMemoryJobQueue(TICKET_POLL_QUEUE, clock=FakeClock())

    first = asyncio.run(queue.add("poll", {"attempt": 1}, job_id="poll:ord_0001"))
    duplicate = asyncio.run(queue.add("poll", {"attempt": 2}, job_id="poll:ord_0001"))
    taken = queue.pop_due()
    again = asyncio.run(queue.add("poll", {"attempt": 2}, job_id="poll:ord_0001"))

    assert first is not None
    assert duplicate is None
    assert taken is not None and taken.payload == {"attempt": 1}
    assert again is not None


def test_failed_job_backs_off_exponentially_then_gives_up() -> None:
    clock = FakeClock()
    queue = InMemoryJobQueue(WEBHOOK_QUEUE, clock=clock)
    asyncio.run(queue.add("process", {}, max_attempts=3, backoff_seconds=2.0, remove_on_fail=False))
    error = RuntimeError("database unavailable")

    first_retry = asyncio.run(queue.fail(queue.pop_due(), error))
    assert first_retry is not None
    assert (first_retry.attempts_made, first_retry.delay) == (1, 2.0)
    assert queue.pop_due() is None

    clock.advance(2)
    second_retry = asyncio.run(queue.fail(queue.pop_due(), error))
    assert second_retry is not None
    assert (second_retry.attempts_made, second_retry.delay) == (2, 4.0)

    clock.advance(4)
    assert asyncio.run(queue.fail(queue.pop_due(), error)) is None
    assert queue.failed_count == 1
    assert queue.failed[0].attempts_made == 3


def test_drain_runs_due_jobs_and_retries_failures_later() -> None:
    clock = FakeClock()
    queue = InMemoryJobQueue(WEBHOOK_QUEUE, clock=clock)
    calls: list[int] = []

    async def flaky(job: Job) -> None:
        calls.append(job.attempts_made)
        if job.attempts_made == 0:
            raise RuntimeError("transient")

    pool = WorkerPool()
    pool.register(queue, flaky)
    asyncio.run(queue.add("process", {}, max_attempts=2, backoff_seconds=2.0))

    assert asyncio.run(pool.drain()) == 1
    assert calls == [0]
    clock.advance(2)
    assert asyncio.run(pool.drain()) == 1
    assert calls == [0, 1]
    assert queue.completed_count == 1
    assert queue.pending == []


def test_started_workers_consume_jobs() -> None:
    seen: list[dict] = []

    async def scenario() -> bool:
        queue = InMemoryJobQueue(WEBHOOK_QUEUE, poll_interval=0.01)
        handled = asyncio.Event()

        async def handler(job: Job) -> None:
            seen.append(job.payload)
            handled.set()

        pool = WorkerPool(concurrency=2)
        pool.register(queue, handler)
        await pool.start()
        await queue.add("process", {"event": "wev_0001"})
        await asyncio.wait_for(handled.wait(), timeout=2)
        await pool.stop()
        return pool.running

    assert asyncio.run(scenario()) is False
    assert seen == [{"event": "wev_0001"}]


def test_kafka_queue_publishes_job_to_mapped_topic() -> None:
    producer = FakeProducer()
    queue = KafkaJobQueue(TICKET_POLL_QUEUE, bootstrap_servers="127.0.0.1:9092", producer=producer)  # type: ignore[arg-type]

    job = asyncio.run(queue.add("poll", {"order_id": "ord_0001", "attempt": 1}, job_id="poll:ord_0001"))
    queue.close()

    assert len(producer.sent) == 1
    topic, key, value = producer.sent[0]
    assert topic == "farebridge.tickets.poll"
    assert key == "poll:ord_0001"
    assert value["id"] == job.id
    assert value["payload"] == {"order_id": "ord_0001", "attempt": 1}
    assert producer.flush_count == 1
    assert producer.closed is False


def test_fanout_mirrors_only_accepted_jobs() -> None:
    mirror = RecordingMirror()
    queue = FanoutJobQueue(InMemoryJobQueue(TICKET_POLL_QUEUE, clock=FakeClock()), [mirror])

    asyncio.run(queue.add("poll", {"attempt": 1}, job_id="poll:ord_0001"))
    asyncio.run(queue.add("poll", {"attempt": 1}, job_id="poll:ord_0001"))
    queue.close()

    assert [job.job_id for job in mirror.published] == ["poll:ord_0001"]
    assert queue.pop_due() is not None
    assert mirror.closed is True


def test_factory_returns_plain_queue_for_memory_backend(monkeypatch) -> None:
    monkeypatch.setenv("FAREBRIDGE_QUEUE_BACKEND", "memory")

    assert build_transport_queue_from_env(WEBHOOK_QUEUE) is None
    assert isinstance(build_queue_from_env(WEBHOOK_QUEUE), InMemoryJobQueue)


def test_factory_builds_kafka_transport(monkeypatch) -> None:
    captured: dict[str, str] = {}

    class DummyKafkaJobQueue:
        def __init__(self, name: str, bootstrap_servers: str, client_id: str) -> None:
            captured["name"] = name
            captured["bootstrap_servers"] = bootstrap_servers
            captured["client_id"] = client_id

        def publish(self, job: Job) -> None:
            pass

    monkeypatch.setenv("FAREBRIDGE_QUEUE_BACKEND", "kafka")
    monkeypatch.setenv("FAREBRIDGE_KAFKA_BOOTSTRAP_SERVERS", "localhost:19092")
    monkeypatch.setenv("FAREBRIDGE_KAFKA_CLIENT_ID", "farebridge-test")
    monkeypatch.setattr("farebridge.bus.factory.KafkaJobQueue", DummyKafkaJobQueue)

    queue = build_queue_from_env(WEBHOOK_QUEUE)

    assert isinstance(queue, FanoutJobQueue)
    assert captured == {
        "name": WEBHOOK_QUEUE,
        "bootstrap_servers": "localhost:19092",
        "client_id": "farebridge-test",
    }


def test_factory_rejects_unknown_backend(monkeypatch) -> None:
    monkeypatch.setenv("FAREBRIDGE_QUEUE_BACKEND", "redis")
    try:
        build_transport_queue_from_env(WEBHOOK_QUEUE)
        raise AssertionError("Expected ValueError")
    except ValueError as exc:
        assert "Unsupported FAREBRIDGE_QUEUE_BACKEND" in str(exc)
