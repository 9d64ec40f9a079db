"""
Prompt Builder
==============
Builds the per-iteration task prompt handed to the external agent.

Prompt Design Rules:
    - The agent is told the progress file path and the camelCase fields it
      may write, since the ProgressMonitor reads that file.
    - The completion sigil is stated verbatim together with the condition
      for emitting it.
    - When auto-commit is on, the agent is told the commit message format
      but that the loop commits for it.
"""
import json
from dataclasses import dataclass, field
from typing import List, Optional

from battleloop.core.constants import COMPLETION_SIGIL
from battleloop.models.progress import Progress
from battleloop.models.task import PRD, Task


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
SYSTEM_HEADER = (
    "You are working inside the BattleLoop autonomous development loop.\n"
    "Your goal is to complete the task below efficiently and accurately."
)

TASK_INTRO = (
    "You are in EXECUTION MODE. Work iteratively:\n"
    "1. Understand the task and its acceptance criteria\n"
    "2. Explore the relevant code\n"
    "3. Implement the solution\n"
    "4. Run the feedback loops\n"
    "5. Update the progress file"
)

PROGRESS_INSTRUCTIONS = (
    "Keep {progress_path} up to date while you work. You may set \"logs\", "
    "\"lastOutput\" and \"error\"; leave the other fields as they are."
)

COMPLETION_INSTRUCTIONS = (
    "When ALL acceptance criteria are met and every feedback loop passes, "
    "output the completion sigil on its own line:\n"
    f"{COMPLETION_SIGIL}\n"
    "Do NOT output it before that."
)

PROGRESS_UPDATE_SCHEMA = {
    "logs": ["string"],
    "lastOutput": "string",
    "error": "string | null",
}


@dataclass
class TaskContext:
    """Everything the prompt needs beyond the task itself."""
    progress_file_path: str
    max_iterations: int
    feedback_loops: List[str] = field(default_factory=list)
    feedback_commands: dict = field(default_factory=dict)
    auto_commit: bool = True
    commit_message: str = ""
    project_summary: str = ""
    current_progress: Optional[Progress] = None


class PromptBuilder:

    def summarize_prd(self, prd: PRD) -> str:
        """Short project context: name, description and the task list."""
        lines = []
        if prd.project_name:
            lines.append(f"**Project:** {prd.project_name}")
        if prd.description:
            lines.append(prd.description)
        if prd.tasks:
            lines.append("")
            lines.append("Tasks:")
            lines.extend(f"- [{t.status}] {t.id}: {t.title}" for t in prd.tasks)
        return "\n".join(lines)

    def build_task_prompt(self, task: Task, context: TaskContext) -> str:
        sections: List[str] = [SYSTEM_HEADER, "", TASK_INTRO]

        if context.project_summary:
            sections += ["", "## Project Context", "", context.project_summary]

        sections += [
            "",
            "## Current Task",
            "",
            f"**ID:** {task.id}",
            f"**Title:** {task.title}",
            f"**Priority:** {task.priority}",
            "",
            "### Description",
            "",
            task.description or "(no description)",
        ]
        if task.acceptance_criteria:
            sections += ["", "### Acceptance Criteria", ""]
            sections += [f"- [ ] {c}" for c in task.acceptance_criteria]

        progress = context.current_progress
        if progress is not None and progress.current_iteration > 0:
            sections += [
                "",
                "### Current Progress",
                "",
                f"**Iteration:** {progress.current_iteration} / {context.max_iterations}",
                f"**Status:** {progress.status}",
            ]
            if progress.last_output:
                sections.append(f"**Last Output:** {progress.last_output}")
            if progress.error:
                sections.append(f"**Previous Error:** {progress.error}")
            failing = [name for name, r in progress.feedback_results.items() if not r.passed]
            if failing:
                sections.append(f"**Failing Feedback Loops:** {', '.join(failing)}")

        sections += [
            "",
            "## Progress Tracking",
            "",
            PROGRESS_INSTRUCTIONS.format(progress_path=context.progress_file_path),
            "",
            "```json",
            json.dumps(PROGRESS_UPDATE_SCHEMA, indent=2),
            "```",
        ]

        if context.feedback_loops:
            sections += ["", "## Feedback Loops", "", "These checks run after you finish:"]
            for loop in context.feedback_loops:
                command = context.feedback_commands.get(loop)
                sections.append(f"- {loop}: `{command}`" if command else f"- {loop}")

        if context.auto_commit:
            sections += [
                "",
                "## Commit",
                "",
                "Do not commit yourself. Passing iterations are committed as:",
                f"`{context.commit_message}`",
            ]

        sections += ["", "## Completion", "", COMPLETION_INSTRUCTIONS]

        current = progress.current_iteration if progress is not None else 1
        sections += [
            "",
            "## Constraints",
            "",
            f"- Maximum iterations: {context.max_iterations}",
            f"- Current iteration: {current or 1}",
            "- Only modify files necessary for this task",
            "- Follow existing code patterns and conventions",
        ]
        return "\n".join(sections)
