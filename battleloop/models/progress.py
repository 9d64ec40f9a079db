"""
Progress Model
==============
Pydantic model for the per-task progress record
(.battleloop/battles/<task>/progress.json).

The engine writes it at every step of an iteration; the agent may write it
too (logs, lastOutput, error). The ProgressMonitor only ever reads it.

Fields:
    task_id             — task this record tracks
    current_iteration   — 1-based iteration counter (0 before the first one)
    status              — idle / in_progress / awaiting_approval / completed / failed
    last_update         — timestamp of the last write
    logs                — free-form log lines appended by the agent
    last_output         — most recent line of agent output
    completion_detected — True once the completion sigil was seen
    error               — fatal error reported for the battle, None otherwise
    feedback_results    — loop name → FeedbackResult
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import Field

from .base import WireModel, utcnow

ProgressStatus = Literal["idle", "in_progress", "awaiting_approval", "completed", "failed"]


class FeedbackResult(WireModel):
    passed: bool
    output: str = ""
    duration: Optional[float] = None  # milliseconds


FeedbackResults = Dict[str, FeedbackResult]


class Progress(WireModel):
    task_id: str
    current_iteration: int = 0
    status: ProgressStatus = "idle"
    last_update: datetime = Field(default_factory=utcnow)
    logs: List[str] = []
    last_output: str = ""
    completion_detected: bool = False
    error: Optional[str] = None
    feedback_results: Dict[str, FeedbackResult] = {}

    def touch(self) -> None:
        self.last_update = utcnow()


def create_initial_progress(task_id: str) -> Progress:
    return Progress(task_id=task_id)
