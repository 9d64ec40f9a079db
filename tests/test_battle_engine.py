"""
Battle Engine Tests
===================
End-to-end loop behaviour with a real FileStore and ProgressMonitor on
tmp_path, and mocked agent, git, feedback and checkpoint collaborators.
"""
import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from battleloop.agents.agent_runner import AgentRunResult
from battleloop.agents.battle_engine import BattleLoopEngine
from battleloop.agents.git_agent import GitAgent, GitStatus
from battleloop.agents.progress_monitor import ProgressMonitor
from battleloop.core.constants import COMPLETION_SIGIL
from battleloop.core.errors import BattleInProgressError, NoActiveBattleError, TaskNotFoundError
from battleloop.executor.feedback_runner import FeedbackLoopResult
from battleloop.models.battle_config import BattleConfig
from battleloop.models.checkpoint import Checkpoint
from battleloop.models.task import PRD, Task
from battleloop.services.file_store import FileStore

TASK_ID = "001-login"
DONE = f"all done {COMPLETION_SIGIL}"


def _result(output="working on it", exit_code=0, **kwargs):
    return AgentRunResult(exit_code=exit_code, output=output, **kwargs)


def _checkpoint(battle_id, iteration=None, feedback_results=None):
    number = iteration.number if iteration is not None else 0
    return Checkpoint(
        id=f"cp-{number}",
        battle_id=battle_id,
        after_iteration=number,
        storage_type="commit",
        commit_hash="abc",
    )


class Harness:
    """Engine plus its mocks and an event recorder."""

    def __init__(self, tmp_path, **config):
        self.store = FileStore(str(tmp_path))
        settings = {
            "mode": "yolo",
            "max_iterations_per_task": 5,
            "feedback_loops": ["test"],
            "polling_interval_ms": 10,
            "timeout_minutes": 1,
        }
        settings.update(config)
        asyncio.run(self.store.save_config(BattleConfig(**settings)))
        asyncio.run(self.store.save_prd(PRD(
            project_name="demo",
            tasks=[Task(id=TASK_ID, title="Add login"), Task(id="002", title="Other")],
        )))

        self.agent = MagicMock()
        self.agent.run = AsyncMock(return_value=_result())
        self.agent.kill.return_value = True

        self.git = MagicMock(spec=GitAgent)
        self.git.format_commit_message.return_value = "[BattleLoop] 001-login: Add login"
        self.git.status.return_value = GitStatus()
        self.git.commit.return_value = "abc123"

        self.feedback = MagicMock()
        self.feedback.run_loop = AsyncMock(
            side_effect=lambda loop: FeedbackLoopResult(name=loop, passed=True, output="ok", duration=5)
        )

        self.checkpoints = MagicMock()
        self.checkpoints.create_initial = AsyncMock(
            side_effect=lambda battle_id: _checkpoint(battle_id, None)
        )
        self.checkpoints.create = AsyncMock(side_effect=_checkpoint)
        self.checkpoints.cleanup.side_effect = lambda cps: cps

        self.engine = BattleLoopEngine(
            store=self.store,
            agent_runner=self.agent,
            git=self.git,
            feedback_runner=self.feedback,
            monitor=ProgressMonitor(self.store, interval_ms=10),
            checkpoint_manager=self.checkpoints,
        )

        self.events = []
        for name in (
            "battle_start", "battle_pause", "battle_resume", "battle_cancel",
            "battle_complete", "battle_failed", "iteration_start", "iteration_end",
            "iteration_output", "feedback_result", "completion_detected",
            "await_approval", "approval_received", "error",
        ):
            self.engine.on(name, lambda payload, name=name: self.events.append((name, payload)))

    def named(self, name):
        return [payload for event, payload in self.events if event == name]

    def load(self, what):
        loader = {
            "battle": self.store.load_battle,
            "progress": self.store.load_progress,
            "checkpoints": self.store.load_checkpoints,
        }[what]
        return asyncio.run(loader(TASK_ID))

    def task_status(self):
        return asyncio.run(self.store.get_task(TASK_ID)).status


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


# ---------------------------------------------------------------------------
# Completion / failure
# ---------------------------------------------------------------------------
def test_yolo_runs_until_completion_sigil(harness):
    harness.agent.run.side_effect = [_result(), _result(DONE)]

    battle = asyncio.run(harness.engine.start(TASK_ID))

    assert battle.status == "completed"
    assert [it.number for it in battle.iterations] == [1, 2]
    assert all(it.result == "success" for it in battle.iterations)
    assert battle.duration_ms is not None
    assert harness.engine.status == "idle"
    assert harness.engine.current_state() is None

    assert harness.load("battle").status == "completed"
    progress = harness.load("progress")
    assert progress.status == "completed"
    assert progress.completion_detected is True
    assert harness.task_status() == "completed"
    assert len(harness.named("battle_complete")) == 1
    assert harness.named("await_approval") == []


def test_max_iterations_reached_fails_battle(tmp_path):
    harness = Harness(tmp_path, max_iterations_per_task=1)
    harness.feedback.run_loop.side_effect = (
        lambda loop: FeedbackLoopResult(name=loop, passed=False, output="1 failed", duration=5)
    )

    battle = asyncio.run(harness.engine.start(TASK_ID))

    assert battle.status == "failed"
    assert battle.error == "Maximum iterations (1) reached without completion"
    assert len(battle.iterations) == 1
    assert battle.iterations[0].result == "failure"
    assert battle.iterations[0].feedback_results["test"].passed is False
    assert harness.load("progress").status == "failed"
    assert harness.task_status() == "failed"
    assert harness.named("battle_failed")[0]["error"] == battle.error
    harness.checkpoints.create.assert_not_called()


def test_agent_reported_error_fails_battle(harness):
    async def agent_writes_error(prompt, timeout_seconds=None):
        progress = await harness.store.load_progress(TASK_ID)
        progress.error = "Cannot resolve dependency"
        await harness.store.save_progress(progress)
        return _result("giving up", exit_code=1)

    harness.agent.run.side_effect = agent_writes_error

    battle = asyncio.run(harness.engine.start(TASK_ID))
    assert battle.status == "failed"
    assert battle.error == "Cannot resolve dependency"
    assert len(battle.iterations) == 1


def test_timeout_marks_iteration_and_continues(tmp_path):
    harness = Harness(tmp_path, max_iterations_per_task=2)
    harness.agent.run.side_effect = [
        _result("partial", exit_code=-1, timed_out=True, error="Agent execution timed out"),
        _result(DONE),
    ]

    battle = asyncio.run(harness.engine.start(TASK_ID))
    assert [it.result for it in battle.iterations] == ["timeout", "success"]
    assert battle.iterations[0].error == "Agent execution timed out"
    assert battle.status == "completed"


def test_iteration_exception_is_recorded_and_loop_continues(harness):
    harness.agent.run.side_effect = [RuntimeError("agent crashed"), _result(DONE)]

    battle = asyncio.run(harness.engine.start(TASK_ID))
    assert battle.iterations[0].result == "failure"
    assert battle.iterations[0].error == "agent crashed"
    assert battle.status == "completed"
    errors = harness.named("error")
    assert errors[0]["code"] == "ITERATION_ERROR"
    assert errors[0]["iteration"] == 1


def test_failure_after_iteration_recorded_is_not_duplicated(tmp_path):
    harness = Harness(tmp_path, max_iterations_per_task=1)
    harness.store.write_iteration_log = AsyncMock(side_effect=OSError("disk full"))

    battle = asyncio.run(harness.engine.start(TASK_ID))

    assert [it.number for it in battle.iterations] == [1]
    assert battle.iterations[0].result == "success"
    assert [it.number for it in harness.load("battle").iterations] == [1]
    iteration_errors = [e for e in harness.named("error") if e["code"] == "ITERATION_ERROR"]
    assert [e["message"] for e in iteration_errors] == ["disk full"]


def test_unreadable_progress_is_replaced(harness):
    path = harness.store.progress_path(TASK_ID)

    async def agent(prompt, timeout_seconds=None):
        if harness.agent.run.await_count == 1:
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"taskId": TASK_ID, "status": "working"}, f)
            return _result()
        return _result(DONE)

    harness.agent.run.side_effect = agent

    battle = asyncio.run(harness.engine.start(TASK_ID))

    assert battle.status == "completed"
    assert [it.result for it in battle.iterations] == ["success", "success"]
    assert harness.engine.current_state() is None
    assert harness.load("progress").status == "completed"


# ---------------------------------------------------------------------------
# Start guards
# ---------------------------------------------------------------------------
def test_unknown_task_raises_and_leaves_engine_idle(harness):
    with pytest.raises(TaskNotFoundError):
        asyncio.run(harness.engine.start("999"))
    assert harness.engine.status == "idle"
    harness.agent.run.assert_not_called()


def test_start_while_running_is_rejected(harness):
    seen = {}

    async def agent(prompt, timeout_seconds=None):
        try:
            await harness.engine.start("002")
        except BattleInProgressError as e:
            seen["error"] = e
        return _result(DONE)

    harness.agent.run.side_effect = agent

    battle = asyncio.run(harness.engine.start(TASK_ID))
    assert seen["error"].task_id == TASK_ID
    assert battle.status == "completed"
    assert asyncio.run(harness.store.load_battle("002")) is None


def test_reserve_blocks_other_starts_until_reserved_start_runs(harness):
    harness.agent.run.return_value = _result(DONE)

    harness.engine.reserve(TASK_ID)
    assert harness.engine.is_busy is True
    with pytest.raises(BattleInProgressError):
        harness.engine.reserve("002")
    with pytest.raises(BattleInProgressError):
        asyncio.run(harness.engine.start("002"))

    battle = asyncio.run(harness.engine.start(TASK_ID, reserved=True))
    assert battle.status == "completed"
    assert harness.engine.is_busy is False
    assert asyncio.run(harness.store.load_battle("002")) is None


def test_reserved_start_of_unknown_task_releases_engine(harness):
    harness.engine.reserve("999")
    with pytest.raises(TaskNotFoundError):
        asyncio.run(harness.engine.start("999", reserved=True))
    assert harness.engine.is_busy is False


def test_controls_require_active_battle(harness):
    with pytest.raises(NoActiveBattleError):
        harness.engine.pause()
    with pytest.raises(NoActiveBattleError):
        asyncio.run(harness.engine.resume())
    assert harness.engine.approve() is False
    asyncio.run(harness.engine.cancel())


def test_initial_checkpoint_saved_on_fresh_battle(harness):
    harness.agent.run.return_value = _result(DONE)
    asyncio.run(harness.engine.start(TASK_ID))

    harness.checkpoints.create_initial.assert_awaited_once_with(TASK_ID)
    saved = harness.load("checkpoints")
    assert [cp.after_iteration for cp in saved] == [0, 1]


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------
def test_pause_finishes_current_iteration_then_resume_continues(harness):
    async def agent(prompt, timeout_seconds=None):
        if harness.agent.run.await_count == 1:
            harness.engine.pause()
            return _result("first pass")
        return _result(DONE)

    harness.agent.run.side_effect = agent

    async def run_test():
        paused = await harness.engine.start(TASK_ID)
        snapshot = (paused.status, len(paused.iterations), harness.engine.status)
        resumed = await harness.engine.resume()
        return snapshot, paused, resumed

    snapshot, paused, resumed = asyncio.run(run_test())

    assert snapshot == ("paused", 1, "paused")
    assert paused.iterations[0].result == "success"
    assert paused.iterations[0].output == "first pass"
    assert resumed is paused
    assert [it.number for it in resumed.iterations] == [1, 2]
    assert resumed.status == "completed"
    assert len(harness.named("battle_pause")) == 1
    assert len(harness.named("battle_resume")) == 1


def test_resume_when_not_paused_is_noop(harness):
    async def agent(prompt, timeout_seconds=None):
        seen = await harness.engine.resume()
        assert seen is None
        return _result(DONE)

    harness.agent.run.side_effect = agent
    assert asyncio.run(harness.engine.start(TASK_ID)).status == "completed"
    assert harness.named("battle_resume") == []


# ---------------------------------------------------------------------------
# HITL approval
# ---------------------------------------------------------------------------
def test_hitl_waits_for_approval_then_continues_same_battle(harness):
    harness.agent.run.side_effect = [_result("step one"), _result(DONE)]
    statuses = []

    def approve(payload):
        statuses.append(harness.engine.status)
        assert harness.engine.is_awaiting_approval is True
        assert harness.engine.approve() is True

    harness.engine.on("await_approval", approve)

    battle = asyncio.run(harness.engine.start(TASK_ID, mode="hitl"))

    assert statuses == ["awaiting_approval"]
    approvals = harness.named("await_approval")
    assert len(approvals) == 1
    assert approvals[0]["iteration"] == 1
    assert approvals[0]["summary"] == "step one"
    assert len(harness.named("approval_received")) == 1
    assert [it.number for it in battle.iterations] == [1, 2]
    assert battle.status == "completed"


def test_approval_summary_truncated(tmp_path):
    harness = Harness(tmp_path, mode="hitl", max_iterations_per_task=1)
    harness.agent.run.return_value = _result("x" * 2000)
    harness.engine.on("await_approval", lambda payload: harness.engine.approve())

    asyncio.run(harness.engine.start(TASK_ID))
    assert len(harness.named("await_approval")[0]["summary"]) == 500


def test_cancel_while_awaiting_approval(harness):
    def cancel(payload):
        asyncio.get_running_loop().create_task(harness.engine.cancel("Stopped by reviewer"))

    harness.engine.on("await_approval", cancel)

    battle = asyncio.run(harness.engine.start(TASK_ID, mode="hitl"))

    assert battle.status == "cancelled"
    assert battle.error == "Stopped by reviewer"
    assert harness.agent.run.await_count == 1
    harness.agent.kill.assert_called_once()
    harness.feedback.kill.assert_called_once()
    assert harness.engine.status == "idle"

    assert harness.load("battle").status == "cancelled"
    progress = harness.load("progress")
    assert progress.status == "failed"
    assert progress.error == "Stopped by reviewer"
    assert harness.task_status() == "paused"
    assert harness.named("battle_cancel")[0]["reason"] == "Stopped by reviewer"
    assert harness.named("battle_failed") == []


def test_cancel_default_reason(harness):
    async def agent(prompt, timeout_seconds=None):
        await harness.engine.cancel()
        return _result()

    harness.agent.run.side_effect = agent
    battle = asyncio.run(harness.engine.start(TASK_ID))
    assert battle.status == "cancelled"
    assert battle.error == "Cancelled by user"
    assert battle.iterations == []


# ---------------------------------------------------------------------------
# Git integration
# ---------------------------------------------------------------------------
def test_auto_commit_stages_only_project_files(harness):
    harness.git.status.return_value = GitStatus(
        unstaged=["src/auth.py"],
        untracked=["src/login.py", ".battleloop/battles/001-login/progress.json"],
    )
    harness.agent.run.return_value = _result(DONE)

    battle = asyncio.run(harness.engine.start(TASK_ID))

    harness.git.add.assert_called_once_with(["src/auth.py", "src/login.py"])
    harness.git.commit.assert_called_once_with("[BattleLoop] 001-login: Add login")
    iteration = battle.iterations[0]
    assert iteration.commit_hash == "abc123"
    assert "src/login.py" in iteration.files_changed


def test_no_commit_when_feedback_fails(tmp_path):
    harness = Harness(tmp_path, max_iterations_per_task=1)
    harness.git.status.return_value = GitStatus(unstaged=["src/auth.py"])
    harness.feedback.run_loop.side_effect = (
        lambda loop: FeedbackLoopResult(name=loop, passed=False, output="boom", duration=1)
    )

    asyncio.run(harness.engine.start(TASK_ID))
    harness.git.add.assert_not_called()
    harness.git.commit.assert_not_called()


def test_no_commit_when_auto_commit_disabled(tmp_path):
    harness = Harness(tmp_path, auto_commit=False)
    harness.git.status.return_value = GitStatus(unstaged=["src/auth.py"])
    harness.agent.run.return_value = _result(DONE)

    battle = asyncio.run(harness.engine.start(TASK_ID))
    harness.git.commit.assert_not_called()
    assert battle.iterations[0].files_changed == ["src/auth.py"]
    assert battle.iterations[0].commit_hash is None


def test_feedback_events_and_progress(harness):
    harness.agent.run.return_value = _result(DONE)
    asyncio.run(harness.engine.start(TASK_ID))

    feedback = harness.named("feedback_result")
    assert len(feedback) == 1
    assert feedback[0]["loop"] == "test"
    assert feedback[0]["result"]["passed"] is True
    assert harness.load("progress").feedback_results["test"].output == "ok"


def test_iteration_log_written(harness, tmp_path):
    harness.agent.run.return_value = _result(DONE)
    asyncio.run(harness.engine.start(TASK_ID))
    log = tmp_path / ".battleloop" / "battles" / TASK_ID / "logs" / "iteration-1.txt"
    assert log.read_text() == DONE


def test_recovered_battle_keeps_counter(harness, tmp_path):
    async def first_run():
        async def agent(prompt, timeout_seconds=None):
            harness.engine.pause()
            return _result("one")
        harness.agent.run.side_effect = agent
        return await harness.engine.start(TASK_ID)

    asyncio.run(first_run())
    history = json.loads(
        (tmp_path / ".battleloop" / "battles" / TASK_ID / "history.json").read_text()
    )
    assert history["status"] == "paused"

    # A new engine picks up the non-terminal battle from disk
    fresh = Harness(tmp_path)
    fresh.agent.run.return_value = _result(DONE)
    battle = asyncio.run(fresh.engine.start(TASK_ID))
    assert [it.number for it in battle.iterations] == [1, 2]
    fresh.checkpoints.create_initial.assert_not_called()
