from __future__ import annotations

import json
from typing import Any

from kafka import KafkaProducer

from farebridge.bus.jobs import Job
from farebridge.bus.routing import QUEUE_TOPIC_MAP


class KafkaJobQueue:
    """Publishes job envelopes to a topic for out-of-process consumers."""

    def __init__(
        self,
        name: str,
        bootstrap_servers: str,
        client_id: str = "farebridge-producer",
        producer: KafkaProducer | None = None,
    ) -> None:
        self.name = name
        self.topic = QUEUE_TOPIC_MAP[name]
        self._owns_producer = producer is None
        self._producer = producer or KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            client_id=client_id,
            linger_ms=10,
            acks="all",
            value_serializer=lambda payload: json.dumps(payload).encode("utf-8"),
            key_serializer=lambda key: key.encode("utf-8"),
        )

    def publish(self, job: Job) -> None:
        self._producer.send(self.topic, key=job.dedupe_key, value=job.model_dump(mode="json"))
        self._producer.flush()

    async def add(self, name: str, payload: dict[str, Any], **options: Any) -> Job:
        job = Job(queue=self.name, name=name, payload=payload, **options)
        self.publish(job)
        return job

    def close(self) -> None:
        if self._owns_producer:
            self._producer.flush()
            self._producer.close()
