from .factory import build_queue_from_env, build_transport_queue_from_env
from .fanout import FanoutJobQueue
from .in_memory import InMemoryJobQueue
from .jobs import TICKET_POLL_QUEUE, WEBHOOK_QUEUE, Job, JobQueue
from .kafka import KafkaJobQueue
from .worker import WorkerPool

__all__ = [
    "TICKET_POLL_QUEUE",
    "WEBHOOK_QUEUE",
    "FanoutJobQueue",
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "KafkaJobQueue",
    "WorkerPool",
    "build_queue_from_env",
    "build_transport_queue_from_env",
]
