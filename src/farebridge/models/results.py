from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class OperationResult:
    ok: bool
    code: str | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    @classmethod
    def success(cls, **data: Any) -> OperationResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, code: str, message: str, **data: Any) -> OperationResult:
        return cls(ok=False, code=code, message=message, data=data)

    @classmethod
    def skip(cls, code: str, message: str) -> OperationResult:
        return cls(ok=True, code=code, message=message, skipped=True)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RefundOutcome:
    order_id: str
    steps: dict[str, OperationResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps.values())

    @property
    def code(self) -> str | None:
        for step in self.steps.values():
            if not step.ok:
                return step.code
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "code": self.code,
            "order_id": self.order_id,
            "steps": {name: step.to_dict() for name, step in self.steps.items()},
        }
