"""
Result of handling one provider event, returned by the lifecycle services.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class HandlerOutcome:
    # applied | skipped | not_found | ignored | deferred | refunded | manual_review | invalid
    action: str
    order_id: Optional[str] = None
    status: Optional[str] = None
    detail: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.action in {"applied", "refunded", "manual_review"}
