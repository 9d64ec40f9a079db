"""
Run State
Everything the engine owns for the lifetime of one active battle.
Created by start(), discarded at every terminal transition.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from battleloop.models.battle import Battle
from battleloop.models.battle_config import BattleConfig, ExecutionMode
from battleloop.models.task import Task
from battleloop.services.checkpoint_manager import CheckpointManager


class ApprovalOutcome(str, Enum):
    APPROVED = "approved"
    CANCELLED = "cancelled"


class ApprovalGate:
    """
    One-shot wait point for human approval between HITL iterations.

    ``arm()`` opens the gate, ``wait()`` suspends until ``resolve()`` is
    called. Resolving with nothing pending is a no-op that returns False.
    """

    def __init__(self) -> None:
        self._future: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._future is not None and not self._future.done()

    def arm(self) -> None:
        if not self.pending:
            self._future = asyncio.get_running_loop().create_future()

    async def wait(self) -> ApprovalOutcome:
        # A gate resolved between arm() and wait() returns immediately
        if self._future is None:
            self.arm()
        try:
            return await self._future
        finally:
            self._future = None

    def resolve(self, outcome: ApprovalOutcome) -> bool:
        if not self.pending:
            return False
        self._future.set_result(outcome)
        return True


@dataclass
class BattleRunState:
    # Identity
    task_id: str
    task: Task
    config: BattleConfig
    mode: ExecutionMode
    battle: Battle
    checkpoints: CheckpointManager

    # Loop position
    iteration: int = 0

    # Control flags, consulted at the top of each iteration
    paused: bool = False
    cancelled: bool = False
    cancel_reason: Optional[str] = None

    # True while a _run_loop coroutine is driving this battle
    looping: bool = False

    approval: ApprovalGate = field(default_factory=ApprovalGate)
