"""
Battle Config Model
===================
Per-project settings read from .battleloop/config.yaml.

Fields:
    max_iterations_per_task — iteration cap before the battle fails
    mode                    — "hitl" pauses for approval after each iteration,
                              "yolo" runs until completion or the cap
    feedback_loops          — loop names run after every agent pass
    feedback_commands       — optional loop name → shell command overrides
    timeout_minutes         — agent timeout per iteration
    polling_interval_ms     — ProgressMonitor poll interval
    auto_commit             — commit passing iterations; also selects the
                              commit-based checkpoint strategy
    retention               — checkpoint retention policy
"""
from typing import Dict, List, Literal

from pydantic import Field

from battleloop.core.config import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_TIMEOUT_MINUTES,
)
from .base import WireModel
from .checkpoint import RetentionPolicy

ExecutionMode = Literal["hitl", "yolo"]


class BattleConfig(WireModel):
    max_iterations_per_task: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    mode: ExecutionMode = "hitl"
    feedback_loops: List[str] = ["test", "lint", "typecheck"]
    feedback_commands: Dict[str, str] = {}
    timeout_minutes: int = Field(default=DEFAULT_TIMEOUT_MINUTES, ge=0)
    polling_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=1)
    auto_commit: bool = True
    retention: RetentionPolicy = RetentionPolicy()
