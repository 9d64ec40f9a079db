from battleloop.core.constants import COMPLETION_SIGIL
from battleloop.models.progress import FeedbackResult, Progress
from battleloop.models.task import PRD, Task
from battleloop.services.prompt_builder import PromptBuilder, TaskContext


def _task():
    return Task(
        id="001",
        title="Add login",
        description="Username and password form",
        acceptance_criteria=["Form renders", "Bad password shows error"],
    )


def test_prompt_contains_task_and_sigil():
    context = TaskContext(progress_file_path="/repo/.battleloop/battles/001/progress.json", max_iterations=5)
    prompt = PromptBuilder().build_task_prompt(_task(), context)

    assert "**ID:** 001" in prompt
    assert "- [ ] Bad password shows error" in prompt
    assert "/repo/.battleloop/battles/001/progress.json" in prompt
    assert COMPLETION_SIGIL in prompt
    assert "Maximum iterations: 5" in prompt


def test_prompt_lists_feedback_and_commit():
    context = TaskContext(
        progress_file_path="p.json",
        max_iterations=3,
        feedback_loops=["test", "lint"],
        feedback_commands={"test": "pytest -q"},
        commit_message="[BattleLoop] 001: Add login",
    )
    prompt = PromptBuilder().build_task_prompt(_task(), context)
    assert "- test: `pytest -q`" in prompt
    assert "- lint" in prompt
    assert "`[BattleLoop] 001: Add login`" in prompt


def test_prompt_without_auto_commit_omits_commit_section():
    context = TaskContext(progress_file_path="p.json", max_iterations=3, auto_commit=False)
    assert "## Commit" not in PromptBuilder().build_task_prompt(_task(), context)


def test_prompt_includes_previous_iteration_state():
    progress = Progress(
        task_id="001",
        current_iteration=2,
        status="in_progress",
        error="ImportError",
        feedback_results={"test": FeedbackResult(passed=False), "lint": FeedbackResult(passed=True)},
    )
    context = TaskContext(progress_file_path="p.json", max_iterations=4, current_progress=progress)
    prompt = PromptBuilder().build_task_prompt(_task(), context)

    assert "**Iteration:** 2 / 4" in prompt
    assert "**Previous Error:** ImportError" in prompt
    assert "**Failing Feedback Loops:** test" in prompt
    assert "Current iteration: 2" in prompt


def test_summarize_prd():
    prd = PRD(project_name="demo", description="A demo app", tasks=[_task()])
    summary = PromptBuilder().summarize_prd(prd)
    assert summary.startswith("**Project:** demo")
    assert "- [pending] 001: Add login" in summary
