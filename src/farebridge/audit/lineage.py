from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from farebridge.db.repositories import AuditRepository

# Actions an operator has to resolve by hand.
FOLLOW_UP_ACTIONS = frozenset(
    {
        "cancellation_follow_up",
        "refund_follow_up",
        "settlement_failed",
        "charge_without_order",
        "charge_amount_mismatch",
        "refund_without_order",
        "unknown_order",
    }
)


@dataclass
class AuditRecord:
    id: str
    timestamp: str
    action: str
    component: str
    order_id: str | None
    output_reference: str | None
    detail: dict[str, Any]

    @property
    def needs_follow_up(self) -> bool:
        return self.action in FOLLOW_UP_ACTIONS


class AuditStore:
    """Operational trail of orchestrator steps and follow-ups that need a human."""

    def __init__(self, repository: AuditRepository | None = None) -> None:
        self.repository = repository or AuditRepository()

    def log(
        self,
        action: str,
        component: str,
        order_id: str | None = None,
        output_reference: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditRecord:
        stored = self.repository.insert(
            {
                "id": str(uuid4()),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": action,
                "component": component,
                "order_id": order_id,
                "output_reference": output_reference,
                "detail": detail or {},
            }
        )
        return AuditRecord(**stored)

    def get_history(self, order_id: str) -> list[AuditRecord]:
        return [AuditRecord(**row) for row in self.repository.get_by_order(order_id)]

    def follow_ups(self, action: str | None = None) -> list[AuditRecord]:
        """Records for one action, or every open follow-up when no action is given."""
        actions = [action] if action else sorted(FOLLOW_UP_ACTIONS)
        rows = [row for name in actions for row in self.repository.get_by_action(name)]
        rows.sort(key=lambda row: row["timestamp"])
        return [AuditRecord(**row) for row in rows]
