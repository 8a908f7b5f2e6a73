from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

EventT = TypeVar("EventT")


class Adapter(ABC, Generic[EventT]):
    @abstractmethod
    def parse(self, payload: dict[str, Any]) -> EventT:
        """Normalize a decoded provider payload to a typed event."""
