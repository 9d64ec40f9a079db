"""
Iteration Model
===============
Pydantic model representing one pass through the battle loop:
Prompt → Agent → Feedback → Commit → Checkpoint.

Fields:
    number           — loop counter (1-based, monotonic within a battle)
    started_at       — when the agent was launched
    ended_at         — when the iteration was recorded
    output           — captured agent stdout + stderr
    result           — pending / success / failure / timeout / cancelled
    files_changed    — staged + unstaged + untracked paths after the agent ran
    commit_hash      — set when auto-commit produced a commit
    error            — agent-side error (e.g. timeout) or iteration exception
    feedback_results — loop name → FeedbackResult for this iteration

An Iteration is appended to its Battle only once it has concluded, so the
persisted history never shows a half-finished pass.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import Field

from .base import WireModel, utcnow
from .progress import FeedbackResult

IterationResult = Literal["pending", "success", "failure", "timeout", "cancelled"]


class Iteration(WireModel):
    number: int
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    output: str = ""
    result: IterationResult = "pending"
    files_changed: List[str] = []
    commit_hash: Optional[str] = None
    error: Optional[str] = None
    feedback_results: Optional[Dict[str, FeedbackResult]] = None


def create_iteration(number: int) -> Iteration:
    return Iteration(number=number)
