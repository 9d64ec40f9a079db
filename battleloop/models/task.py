"""
Task Model
==========
Pydantic models for the PRD (.battleloop/prd.json) and the tasks it holds.

Tasks are authored by the planning side of the product; the battle loop only
reads them and keeps their status in sync with the battle outcome.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from .base import WireModel, utcnow

TaskStatus = Literal["pending", "planning", "in_progress", "paused", "completed", "failed"]


class Task(WireModel):
    id: str
    title: str
    description: str = ""
    status: TaskStatus = "pending"
    priority: int = 1
    acceptance_criteria: List[str] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PRD(WireModel):
    project_name: str = ""
    description: str = ""
    tasks: List[Task] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def find_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.tasks if t.id == task_id), None)
