"""
Battle Model
Pydantic model for one task's execution history
(.battleloop/battles/<task>/history.json).
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from .base import WireModel, utcnow
from .iteration import Iteration

BattleStatus = Literal[
    "pending",
    "running",
    "paused",
    "awaiting_approval",
    "completed",
    "failed",
    "cancelled",
]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class Battle(WireModel):
    task_id: str
    status: BattleStatus = "pending"
    iterations: List[Iteration] = []
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: BattleStatus, error: Optional[str] = None) -> None:
        """Stamp a terminal status with completion time and duration."""
        self.status = status
        self.completed_at = utcnow()
        self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)
        if error is not None:
            self.error = error


def create_battle(task_id: str) -> Battle:
    return Battle(task_id=task_id)
