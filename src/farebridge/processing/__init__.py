from .events import EventProcessor, ProcessOutcome

__all__ = ["EventProcessor", "ProcessOutcome"]
