from __future__ import annotations

import os

from farebridge.bus.fanout import FanoutJobQueue
from farebridge.bus.in_memory import InMemoryJobQueue
from farebridge.bus.kafka import KafkaJobQueue


def build_transport_queue_from_env(name: str) -> KafkaJobQueue | None:
    backend = os.getenv("FAREBRIDGE_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return None
    if backend == "kafka":
        bootstrap_servers = os.getenv("FAREBRIDGE_KAFKA_BOOTSTRAP_SERVERS", "127.0.0.1:9092")
        client_id = os.getenv("FAREBRIDGE_KAFKA_CLIENT_ID", "farebridge-producer")
        return KafkaJobQueue(name, bootstrap_servers=bootstrap_servers, client_id=client_id)
    raise ValueError("Unsupported FAREBRIDGE_QUEUE_BACKEND. Use 'memory' or 'kafka'.")


def build_queue_from_env(name: str) -> InMemoryJobQueue | FanoutJobQueue:
    primary = InMemoryJobQueue(name)
    transport = build_transport_queue_from_env(name)
    return primary if transport is None else FanoutJobQueue(primary, [transport])
