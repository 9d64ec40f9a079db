"""
/api/battle
Control surface for the battle loop: start/pause/resume/cancel/approve the
active battle and read a task's progress, history and checkpoints.

Long-running operations (start, resume) are scheduled on the server's event
loop and the request returns immediately; clients poll /current or
/{task_id}/progress.
"""
import asyncio
import logging
from typing import Literal, Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field

from battleloop.agents.agent_runner import AgentRunner
from battleloop.agents.battle_engine import BattleLoopEngine
from battleloop.agents.git_agent import GitAgent
from battleloop.agents.progress_monitor import ProgressMonitor
from battleloop.core.config import WORKDIR
from battleloop.core.errors import BattleInProgressError
from battleloop.executor.feedback_runner import FeedbackLoopRunner
from battleloop.models.base import WireModel
from battleloop.services.checkpoint_manager import CheckpointManager
from battleloop.services.file_store import FileStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/battle")


class StartBattleRequest(WireModel):
    mode: Optional[Literal["hitl", "yolo"]] = None


class CancelBattleRequest(WireModel):
    reason: Optional[str] = None


class RollbackRequest(WireModel):
    target_iteration: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------
_engine: Optional[BattleLoopEngine] = None
_background: Set[asyncio.Task] = set()


def build_engine(working_dir: str = WORKDIR) -> BattleLoopEngine:
    store = FileStore(working_dir)
    return BattleLoopEngine(
        store=store,
        agent_runner=AgentRunner(working_dir),
        git=GitAgent(working_dir),
        feedback_runner=FeedbackLoopRunner(working_dir),
        monitor=ProgressMonitor(store),
    )


def get_engine() -> BattleLoopEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def _spawn(coro, label: str) -> None:
    task = asyncio.get_running_loop().create_task(coro)
    _background.add(task)

    def _done(t: asyncio.Task) -> None:
        _background.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("%s failed: %s", label, t.exception(), exc_info=t.exception())

    task.add_done_callback(_done)


async def _require_task(engine: BattleLoopEngine, task_id: str) -> None:
    if await engine.store.get_task(task_id) is None:
        raise HTTPException(status_code=404, detail=f'Task "{task_id}" not found')


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@router.get("/current")
async def get_current(engine: BattleLoopEngine = Depends(get_engine)):
    return {
        "battle": engine.current_state(),
        "isRunning": engine.is_running,
        "isPaused": engine.is_paused,
        "isAwaitingApproval": engine.is_awaiting_approval,
    }


@router.post("/start/{task_id}")
async def start_battle(
    task_id: str,
    body: Optional[StartBattleRequest] = None,
    engine: BattleLoopEngine = Depends(get_engine),
):
    current = engine.current_state()
    if current is not None:
        raise HTTPException(
            status_code=409,
            detail=f'Battle already in progress for task "{current["taskId"]}". '
                   "Finish or cancel the current battle first.",
        )
    await _require_task(engine, task_id)

    config = await engine.store.load_config()
    mode = (body.mode if body else None) or config.mode
    try:
        engine.reserve(task_id)
    except BattleInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    _spawn(engine.start(task_id, mode, reserved=True), f"Battle {task_id}")
    logger.info("Battle for %s scheduled (%s)", task_id, mode)
    return {"message": "Battle started", "taskId": task_id, "mode": mode}


@router.post("/pause")
async def pause_battle(engine: BattleLoopEngine = Depends(get_engine)):
    if not engine.is_running:
        raise HTTPException(status_code=409, detail="No battle is currently running")
    engine.pause()
    return {"message": "Battle will pause after the current iteration", "battle": engine.current_state()}


@router.post("/resume")
async def resume_battle(engine: BattleLoopEngine = Depends(get_engine)):
    if not engine.is_paused:
        raise HTTPException(status_code=409, detail="No battle is currently paused")
    _spawn(engine.resume(), "Resume")
    return {"message": "Battle resumed", "battle": engine.current_state()}


@router.post("/cancel")
async def cancel_battle(
    body: Optional[CancelBattleRequest] = None,
    engine: BattleLoopEngine = Depends(get_engine),
):
    current = engine.current_state()
    if current is None:
        raise HTTPException(status_code=409, detail="No battle in progress")
    await engine.cancel(body.reason if body else None)
    return {"message": "Battle cancelled", "taskId": current["taskId"]}


@router.post("/approve")
async def approve_battle(engine: BattleLoopEngine = Depends(get_engine)):
    if not engine.is_awaiting_approval:
        raise HTTPException(status_code=409, detail="Battle is not awaiting approval")
    engine.approve()
    return {"message": "Approved, continuing to next iteration", "battle": engine.current_state()}


@router.get("/{task_id}/progress")
async def get_progress(task_id: str, engine: BattleLoopEngine = Depends(get_engine)):
    await _require_task(engine, task_id)
    progress = await engine.store.load_progress(task_id)
    return {"taskId": task_id, "progress": progress.to_wire() if progress else None}


@router.get("/{task_id}/history")
async def get_history(task_id: str, engine: BattleLoopEngine = Depends(get_engine)):
    await _require_task(engine, task_id)
    battle = await engine.store.load_battle(task_id)
    return {"taskId": task_id, "history": battle.to_wire() if battle else None}


@router.get("/{task_id}/checkpoints")
async def get_checkpoints(task_id: str, engine: BattleLoopEngine = Depends(get_engine)):
    await _require_task(engine, task_id)
    checkpoints = await engine.store.load_checkpoints(task_id)
    return {"taskId": task_id, "checkpoints": [cp.to_wire() for cp in checkpoints]}


@router.post("/{task_id}/rollback")
async def rollback_battle(
    task_id: str,
    body: RollbackRequest,
    engine: BattleLoopEngine = Depends(get_engine),
):
    await _require_task(engine, task_id)
    if engine.is_busy:
        current = engine.current_state() or {}
        raise HTTPException(
            status_code=409,
            detail=f"Cancel the active battle (task \"{current.get('taskId', task_id)}\") before rolling back",
        )

    config = await engine.store.load_config()
    checkpoints = await engine.store.load_checkpoints(task_id)
    manager = CheckpointManager(engine.git, auto_commit=config.auto_commit, retention=config.retention)
    result = await manager.rollback(checkpoints, body.target_iteration)
    if not result.success:
        status = 404 if not result.checkpoint_id else 500
        raise HTTPException(status_code=status, detail=result.error)
    return result.to_wire()


async def shutdown_engine() -> None:
    """Cancel the active battle and drop background work on server shutdown."""
    global _engine
    for task in list(_background):
        task.cancel()
    if _engine is not None:
        await _engine.cleanup()
        _engine = None
