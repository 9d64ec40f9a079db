"""
Battle Loop Engine
==================
Drives one task through repeated agent iterations until it completes, fails,
hits the iteration cap, or a human pauses/cancels it.

Per-iteration flow:
    Prompt → Agent → Completion check → Feedback loops → Commit
        → Record iteration → Checkpoint → Decide (complete / fail / approve / next)

State machine:
    idle → running ⇄ paused
    running → awaiting_approval → running        (HITL mode)
    running → completed | failed
    any active state → cancelled
The engine holds at most one BattleRunState; it is created by start() and
dropped at every terminal transition, which returns the engine to idle.

Failure policy:
    - Agent timeout / non-zero exit / failing feedback → iteration failure,
      loop continues.
    - Exception inside an iteration → recorded as a failed iteration, loop
      continues.
    - Commit, checkpoint, and task-status sync failures → logged only.
    - Iteration cap reached without completion → battle failed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from battleloop.agents.agent_runner import AgentRunner
from battleloop.agents.git_agent import GitAgent
from battleloop.agents.progress_monitor import ProgressMonitor
from battleloop.core.constants import APPROVAL_SUMMARY_LIMIT, COMPLETION_SIGIL, DEFAULT_CANCEL_REASON
from battleloop.core.errors import (
    AlreadyWatchingError,
    BattleInProgressError,
    BattleLoopError,
    GitCommandError,
    NoActiveBattleError,
    StoreFileNotFoundError,
    StoreValidationError,
    TaskNotFoundError,
)
from battleloop.executor.feedback_runner import (
    FeedbackLoopRunner,
    all_passed,
    create_log_excerpt,
    to_feedback_results,
)
from battleloop.models.base import utcnow
from battleloop.models.battle import Battle, create_battle
from battleloop.models.battle_config import ExecutionMode
from battleloop.models.iteration import Iteration, create_iteration
from battleloop.models.progress import FeedbackResult, Progress, create_initial_progress
from battleloop.models.task import TaskStatus
from battleloop.services.checkpoint_manager import CheckpointManager, is_internal_path
from battleloop.services.file_store import FileStore
from battleloop.services.prompt_builder import PromptBuilder, TaskContext
from battleloop.state.run_state import ApprovalOutcome, BattleRunState
from battleloop.utils.events import EventBus

logger = logging.getLogger(__name__)


@dataclass
class IterationOutcome:
    """What one agent pass produced, before it is written into an Iteration."""
    success: bool
    output: str = ""
    completion_detected: bool = False
    timed_out: bool = False
    files_changed: List[str] = field(default_factory=list)
    commit_hash: Optional[str] = None
    error: Optional[str] = None
    feedback_results: Dict[str, FeedbackResult] = field(default_factory=dict)


class BattleLoopEngine:

    def __init__(
        self,
        store: FileStore,
        agent_runner: AgentRunner,
        git: GitAgent,
        feedback_runner: FeedbackLoopRunner,
        monitor: ProgressMonitor,
        prompt_builder: Optional[PromptBuilder] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.agent_runner = agent_runner
        self.git = git
        self.feedback_runner = feedback_runner
        self.monitor = monitor
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.events = events or EventBus()

        # Fixed manager (tests, embedding); otherwise one per battle from config
        self._checkpoint_manager = checkpoint_manager

        self._state: Optional[BattleRunState] = None
        self._starting = False
        self._project_summary = ""

        self._monitor_listeners = {
            "progress": self._on_monitor_progress,
            "complete": self._on_monitor_complete,
            "error": self._on_monitor_error,
        }
        for event, listener in self._monitor_listeners.items():
            self.monitor.on(event, listener)

    # -------------------------------------------------------------------
    # Observer API
    # -------------------------------------------------------------------
    def on(self, event: str, listener) -> None:
        self.events.on(event, listener)

    def off(self, event: str, listener) -> None:
        self.events.off(event, listener)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def status(self) -> str:
        if self._state is None:
            return "idle"
        if self._state.paused and not self._state.looping:
            return "paused"
        return self._state.battle.status

    @property
    def is_running(self) -> bool:
        state = self._state
        return state is not None and not state.paused and not state.cancelled

    @property
    def is_paused(self) -> bool:
        return self._state is not None and self._state.paused

    @property
    def is_awaiting_approval(self) -> bool:
        return self._state is not None and self._state.approval.pending

    @property
    def is_busy(self) -> bool:
        return self._state is not None or self._starting

    @property
    def current_battle(self) -> Optional[Battle]:
        return self._state.battle if self._state else None

    def current_state(self) -> Optional[Dict[str, Any]]:
        state = self._state
        if state is None:
            return None
        return {
            "taskId": state.task_id,
            "iteration": state.iteration,
            "status": self.status,
            "mode": state.mode,
        }

    # -------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------
    def reserve(self, task_id: str) -> None:
        """
        Claim the engine for ``task_id`` ahead of a scheduled start. The
        claim is released when the reserved start finishes preparing.
        """
        if self.is_busy:
            active = self._state.task_id if self._state else task_id
            raise BattleInProgressError(active)
        self._starting = True

    async def start(self, task_id: str, mode: Optional[ExecutionMode] = None, reserved: bool = False) -> Battle:
        """
        Start (or recover) the battle for ``task_id`` and run it until it
        halts. Returns the Battle in its final or paused state. Pass
        ``reserved=True`` after a successful reserve().
        """
        if not reserved:
            self.reserve(task_id)

        try:
            state = await self._prepare(task_id, mode)
        finally:
            self._starting = False

        self.events.emit("battle_start", {"taskId": task_id, "task": state.task, "mode": state.mode})
        self._start_monitor(task_id, state.config.polling_interval_ms)

        await self._run_loop(state)
        return state.battle

    async def _prepare(self, task_id: str, mode: Optional[ExecutionMode]) -> BattleRunState:
        config = await self.store.load_config()
        try:
            prd = await self.store.load_prd()
        except StoreFileNotFoundError:
            raise TaskNotFoundError(task_id) from None
        task = prd.find_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        await self.store.ensure_battle_folder(task_id)

        existing = await self.store.load_battle(task_id)
        fresh = existing is None or existing.is_terminal
        battle = create_battle(task_id) if fresh else existing
        battle.status = "running"

        checkpoints = self._checkpoint_manager or CheckpointManager(
            self.git, auto_commit=config.auto_commit, retention=config.retention
        )
        self.feedback_runner.set_overrides(config.feedback_commands)
        self._project_summary = self.prompt_builder.summarize_prd(prd)

        state = BattleRunState(
            task_id=task_id,
            task=task,
            config=config,
            mode=mode or config.mode,
            battle=battle,
            checkpoints=checkpoints,
            iteration=battle.iterations[-1].number if battle.iterations else 0,
        )
        self._state = state

        try:
            await self.store.save_battle(battle)
            progress = create_initial_progress(task_id)
            progress.status = "in_progress"
            progress.current_iteration = state.iteration
            await self.store.save_progress(progress)
        except Exception:
            self._state = None
            raise

        await self._update_task_status(task_id, "in_progress")
        if fresh:
            await self._create_initial_checkpoint(state)

        logger.info(
            "Battle started | task=%s | mode=%s | max=%d | recovered=%s",
            task_id, state.mode, config.max_iterations_per_task, not fresh,
        )
        return state

    def pause(self) -> None:
        """Halt after the in-flight iteration; it is never truncated."""
        state = self._state
        if state is None:
            raise NoActiveBattleError("No active battle to pause")
        if state.paused:
            return
        state.paused = True
        logger.info("Pause requested for %s at iteration %d", state.task_id, state.iteration)
        self.events.emit("battle_pause", {"taskId": state.task_id, "iteration": state.iteration})

    async def resume(self) -> Optional[Battle]:
        """
        Continue a paused battle with the same Battle and counter.

        When the loop has not halted yet (pause still pending) the flag is
        simply cleared and the running loop carries on.
        """
        state = self._state
        if state is None:
            raise NoActiveBattleError("No active battle to resume")
        if not state.paused:
            return None

        state.paused = False
        self.events.emit("battle_resume", {"taskId": state.task_id, "iteration": state.iteration})
        if state.looping:
            return state.battle

        state.battle.status = "running"
        await self.store.save_battle(state.battle)
        self._start_monitor(state.task_id, state.config.polling_interval_ms)
        await self._run_loop(state)
        return state.battle

    async def cancel(self, reason: Optional[str] = None) -> None:
        state = self._state
        if state is None:
            return
        reason = reason or DEFAULT_CANCEL_REASON
        state.cancelled = True
        state.cancel_reason = reason
        self._state = None

        self.agent_runner.kill()
        self.feedback_runner.kill()
        self.monitor.stop()

        state.battle.finish("cancelled", error=reason)
        try:
            await self.store.save_battle(state.battle)
            progress = await self._load_or_create_progress(state.task_id)
            progress.status = "failed"
            progress.error = reason
            await self.store.save_progress(progress)
        finally:
            await self._update_task_status(state.task_id, "paused")
            state.approval.resolve(ApprovalOutcome.CANCELLED)
            logger.info("Battle cancelled | task=%s | reason=%s", state.task_id, reason)
            self.events.emit("battle_cancel", {"taskId": state.task_id, "reason": reason})

    def approve(self) -> bool:
        state = self._state
        if state is None or not state.approval.pending:
            logger.warning("approve() called with no pending approval")
            return False
        state.approval.resolve(ApprovalOutcome.APPROVED)
        self.events.emit("approval_received", {"taskId": state.task_id, "iteration": state.iteration})
        return True

    async def cleanup(self) -> None:
        await self.cancel()
        self.monitor.stop()
        for event, listener in self._monitor_listeners.items():
            self.monitor.off(event, listener)
        self.events.clear()

    # -------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------
    async def _run_loop(self, state: BattleRunState) -> None:
        state.looping = True
        try:
            await self._iterate(state)
        finally:
            state.looping = False

        if self._state is not state or state.cancelled:
            return
        if state.paused:
            state.battle.status = "paused"
            await self.store.save_battle(state.battle)
            self.monitor.stop()
            logger.info("Battle paused | task=%s | iteration=%d", state.task_id, state.iteration)
            return

        max_iterations = state.config.max_iterations_per_task
        if state.iteration >= max_iterations:
            await self._fail(state, f"Maximum iterations ({max_iterations}) reached without completion")

    async def _iterate(self, state: BattleRunState) -> None:
        task_id = state.task_id
        battle = state.battle
        max_iterations = state.config.max_iterations_per_task

        while (
            self._state is state
            and not state.paused
            and not state.cancelled
            and state.iteration < max_iterations
        ):
            state.iteration += 1
            number = state.iteration

            iteration = create_iteration(number)
            recorded = False
            logger.info("[ITERATION %d/%d] %s", number, max_iterations, task_id)
            self.events.emit("iteration_start", {"taskId": task_id, "iteration": number})

            try:
                progress = await self._load_or_create_progress(task_id)
                progress.current_iteration = number
                progress.status = "in_progress"
                await self.store.save_progress(progress)

                outcome = await self._execute_iteration(state, iteration)
                if outcome is None or state.cancelled:
                    break

                iteration.ended_at = utcnow()
                if outcome.timed_out:
                    iteration.result = "timeout"
                else:
                    iteration.result = "success" if outcome.success else "failure"
                iteration.output = outcome.output
                iteration.files_changed = outcome.files_changed
                iteration.commit_hash = outcome.commit_hash
                iteration.error = outcome.error
                iteration.feedback_results = outcome.feedback_results

                battle.iterations.append(iteration)
                recorded = True
                await self.store.save_battle(battle)
                await self.store.write_iteration_log(task_id, number, outcome.output)
                self.events.emit("iteration_end", {
                    "taskId": task_id,
                    "iteration": number,
                    "result": iteration.result,
                })

                if iteration.result == "success":
                    await self._create_checkpoint(state, iteration)

                if outcome.completion_detected:
                    await self._complete(state)
                    return

                if not outcome.success:
                    current = await self._load_or_create_progress(task_id)
                    if current.error:
                        await self._fail(state, current.error)
                        return

                if state.mode == "hitl":
                    await self._wait_for_approval(state, number, outcome.output)
                    if state.cancelled:
                        break

            except asyncio.CancelledError:
                raise
            except Exception as e:
                if state.cancelled:
                    break
                logger.exception("Iteration %d of %s raised", number, task_id)
                if not recorded:
                    iteration.ended_at = utcnow()
                    iteration.result = "failure"
                    iteration.error = str(e)
                    battle.iterations.append(iteration)
                await self.store.save_battle(battle)
                self.events.emit("error", {
                    "taskId": task_id,
                    "iteration": number,
                    "message": str(e),
                    "code": "ITERATION_ERROR",
                })

    async def _execute_iteration(self, state: BattleRunState, iteration: Iteration) -> Optional[IterationOutcome]:
        """Run one pass. Returns None when the battle was cancelled mid-way."""
        task_id = state.task_id
        config = state.config

        context = TaskContext(
            progress_file_path=self.store.progress_path(task_id),
            max_iterations=config.max_iterations_per_task,
            feedback_loops=list(config.feedback_loops),
            feedback_commands=dict(config.feedback_commands),
            auto_commit=config.auto_commit,
            commit_message=self.git.format_commit_message(task_id, state.task.title),
            project_summary=self._project_summary,
            current_progress=await self._load_or_create_progress(task_id),
        )
        prompt = self.prompt_builder.build_task_prompt(state.task, context)

        run = await self.agent_runner.run(prompt, timeout_seconds=config.timeout_minutes * 60)
        if state.cancelled:
            return None
        self.events.emit("iteration_output", {
            "taskId": task_id,
            "iteration": iteration.number,
            "output": run.output,
        })

        completion_detected = COMPLETION_SIGIL in run.output
        if completion_detected:
            logger.info("Completion sigil detected in iteration %d", iteration.number)
            self.events.emit("completion_detected", {"taskId": task_id, "iteration": iteration.number})
            progress = await self._load_or_create_progress(task_id)
            progress.completion_detected = True
            await self.store.save_progress(progress)

        loop_results = []
        for loop in config.feedback_loops:
            if state.cancelled:
                return None
            result = await self.feedback_runner.run_loop(loop)
            loop_results.append(result)
            self.events.emit("feedback_result", {
                "taskId": task_id,
                "iteration": iteration.number,
                "loop": loop,
                "result": {
                    "passed": result.passed,
                    "output": create_log_excerpt(result.output),
                    "duration": result.duration,
                },
            })
            progress = await self._load_or_create_progress(task_id)
            progress.feedback_results[loop] = FeedbackResult(
                passed=result.passed, output=result.output, duration=result.duration
            )
            await self.store.save_progress(progress)
        if state.cancelled:
            return None

        feedback_passed = all_passed(loop_results)
        files_changed: List[str] = []
        commit_hash = None
        try:
            status = await asyncio.to_thread(self.git.status)
        except (GitCommandError, OSError) as e:
            logger.warning("git status failed, no file tracking this iteration: %s", e)
            status = None

        if status is not None:
            files_changed = status.changed_files
            if config.auto_commit and feedback_passed and status.is_dirty:
                commit_hash = await self._commit(state, files_changed)

        return IterationOutcome(
            success=run.success and feedback_passed,
            output=run.output,
            completion_detected=completion_detected,
            timed_out=run.timed_out,
            files_changed=files_changed,
            commit_hash=commit_hash,
            error=run.error,
            feedback_results=to_feedback_results(loop_results),
        )

    async def _commit(self, state: BattleRunState, files_changed: List[str]) -> Optional[str]:
        to_commit = [f for f in files_changed if not is_internal_path(f)]
        if not to_commit:
            return None
        message = self.git.format_commit_message(state.task_id, state.task.title)
        try:
            await asyncio.to_thread(self.git.add, to_commit)
            return await asyncio.to_thread(self.git.commit, message)
        except (GitCommandError, OSError) as e:
            logger.warning("Auto-commit failed for %s: %s", state.task_id, e)
            return None

    async def _wait_for_approval(self, state: BattleRunState, number: int, summary: str) -> None:
        state.battle.status = "awaiting_approval"
        await self.store.save_battle(state.battle)
        progress = await self._load_or_create_progress(state.task_id)
        progress.status = "awaiting_approval"
        await self.store.save_progress(progress)

        if state.cancelled:
            return
        state.approval.arm()
        logger.info("Awaiting approval after iteration %d of %s", number, state.task_id)
        self.events.emit("await_approval", {
            "taskId": state.task_id,
            "iteration": number,
            "summary": summary[:APPROVAL_SUMMARY_LIMIT],
        })
        outcome = await state.approval.wait()

        if outcome is ApprovalOutcome.CANCELLED or state.cancelled:
            return
        state.battle.status = "running"
        await self.store.save_battle(state.battle)
        progress = await self._load_or_create_progress(state.task_id)
        progress.status = "in_progress"
        await self.store.save_progress(progress)

    # -------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------
    async def _complete(self, state: BattleRunState) -> None:
        self._state = None
        state.battle.finish("completed")
        await self.store.save_battle(state.battle)

        progress = await self._load_or_create_progress(state.task_id)
        progress.status = "completed"
        progress.completion_detected = True
        await self.store.save_progress(progress)

        await self._update_task_status(state.task_id, "completed")
        self.monitor.stop()
        logger.info(
            "Battle completed | task=%s | iterations=%d | %sms",
            state.task_id, len(state.battle.iterations), state.battle.duration_ms,
        )
        self.events.emit("battle_complete", {"taskId": state.task_id, "battle": state.battle})

    async def _fail(self, state: BattleRunState, error: str) -> None:
        self._state = None
        state.battle.finish("failed", error=error)
        await self.store.save_battle(state.battle)

        progress = await self._load_or_create_progress(state.task_id)
        progress.status = "failed"
        progress.error = error
        await self.store.save_progress(progress)

        await self._update_task_status(state.task_id, "failed")
        self.monitor.stop()
        logger.error("Battle failed | task=%s | %s", state.task_id, error)
        self.events.emit("battle_failed", {"taskId": state.task_id, "error": error, "battle": state.battle})

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    async def _load_or_create_progress(self, task_id: str) -> Progress:
        try:
            progress = await self.store.load_progress(task_id)
        except StoreValidationError as e:
            logger.warning("Progress for %s is unreadable, starting fresh: %s", task_id, e)
            progress = None
        if progress is None:
            progress = create_initial_progress(task_id)
            await self.store.save_progress(progress)
        return progress

    async def _update_task_status(self, task_id: str, status: TaskStatus) -> None:
        try:
            await self.store.update_task_status(task_id, status)
        except (BattleLoopError, OSError) as e:
            logger.warning("Could not set task %s to %s: %s", task_id, status, e)

    async def _create_initial_checkpoint(self, state: BattleRunState) -> None:
        try:
            checkpoint = await state.checkpoints.create_initial(state.task_id)
            existing = await self.store.load_checkpoints(state.task_id)
            await self.store.save_checkpoints(state.task_id, state.checkpoints.cleanup(existing + [checkpoint]))
        except Exception as e:
            logger.warning("Initial checkpoint for %s skipped: %s", state.task_id, e)

    async def _create_checkpoint(self, state: BattleRunState, iteration: Iteration) -> None:
        try:
            checkpoint = await state.checkpoints.create(
                state.task_id, iteration, iteration.feedback_results or {}
            )
            existing = await self.store.load_checkpoints(state.task_id)
            kept = state.checkpoints.cleanup(existing + [checkpoint])
            await self.store.save_checkpoints(state.task_id, kept)
        except Exception as e:
            logger.warning("Checkpoint after iteration %d failed: %s", iteration.number, e)

    def _start_monitor(self, task_id: str, interval_ms: int) -> None:
        try:
            self.monitor.watch(task_id, interval_ms)
        except AlreadyWatchingError:
            self.monitor.stop()
            self.monitor.watch(task_id, interval_ms)

    # -------------------------------------------------------------------
    # Monitor forwarding
    # -------------------------------------------------------------------
    def _on_monitor_progress(self, payload: Dict[str, Any]) -> None:
        self.events.emit("progress_update", payload)

    def _on_monitor_complete(self, payload: Dict[str, Any]) -> None:
        self.events.emit("completion_detected", {"taskId": payload.get("taskId")})

    def _on_monitor_error(self, payload: Dict[str, Any]) -> None:
        if self._state is None:
            return
        progress = payload.get("progress")
        self.events.emit("error", {
            "taskId": payload.get("taskId"),
            "message": getattr(progress, "error", None),
            "code": "PROGRESS_ERROR",
        })
