"""
Feedback Runner
===============
Runs the configured feedback loops (tests, lint, typecheck, ...) against the
working tree after each agent pass and reports pass/fail per loop.

BOUNDARY RULES:
    - Runner ONLY observes execution.
    - Runner NEVER fixes code and NEVER commits.
    - Loops run sequentially, in configured order, each with its own timeout.
    - A loop that cannot be resolved or started counts as failed; the
      runner itself never raises for a loop failure.
    - Each loop runs in its own process group so kill() takes down the
      whole command, not just the shell.
"""
import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from battleloop.core.config import FEEDBACK_TIMEOUT_SECONDS, WORKDIR
from battleloop.executor.command_resolver import resolve_command
from battleloop.executor.project_detector import detect_project_type
from battleloop.models.progress import FeedbackResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Loop Result
# ---------------------------------------------------------------------------
@dataclass
class FeedbackLoopResult:
    """
    Outcome of one feedback loop.

    Fields
    ------
    name : str
        Loop name ("test", "lint", ...).
    passed : bool
        True only when the command exited 0 within the timeout.
    output : str
        Trimmed stdout followed by stderr.
    duration : float
        Wall clock in milliseconds.
    command : str | None
        The shell command that ran, None when unresolved.
    """
    name: str
    passed: bool
    output: str = ""
    duration: float = 0.0
    command: Optional[str] = None


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.
    Short logs are returned unchanged.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


class FeedbackLoopRunner:

    def __init__(
        self,
        working_dir: str = WORKDIR,
        overrides: Optional[Dict[str, str]] = None,
        timeout_seconds: float = FEEDBACK_TIMEOUT_SECONDS,
    ) -> None:
        self.working_dir = working_dir
        self.overrides = dict(overrides or {})
        self.timeout_seconds = timeout_seconds
        self._project_type: Optional[str] = None
        self._detected = False
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def project_type(self) -> Optional[str]:
        if not self._detected:
            self._project_type = detect_project_type(self.working_dir)
            self._detected = True
        return self._project_type

    def set_overrides(self, overrides: Optional[Dict[str, str]]) -> None:
        self.overrides = dict(overrides or {})

    async def run_loop(self, name: str, timeout_seconds: Optional[float] = None) -> FeedbackLoopResult:
        timeout = timeout_seconds or self.timeout_seconds
        start = time.monotonic()

        resolved = resolve_command(
            name, self.working_dir, overrides=self.overrides, project_type=self.project_type
        )
        if not resolved.resolved:
            logger.warning("No command for feedback loop '%s' (%s project)", name, resolved.project_type)
            return FeedbackLoopResult(
                name=name,
                passed=False,
                output=f'No command configured for feedback loop "{name}" '
                       f"({resolved.project_type} project)",
                duration=_elapsed_ms(start),
            )

        logger.info("[FEEDBACK] %s → %s", name, resolved.command)
        try:
            proc = await asyncio.create_subprocess_shell(
                resolved.command,
                cwd=self.working_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "FORCE_COLOR": "1"},
                start_new_session=True,
            )
        except OSError as e:
            return FeedbackLoopResult(
                name=name,
                passed=False,
                output=f"Error running loop: {e}",
                duration=_elapsed_ms(start),
                command=resolved.command,
            )

        self._process = proc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            logger.warning("[FEEDBACK] %s timed out after %ss", name, timeout)
            return FeedbackLoopResult(
                name=name,
                passed=False,
                output=f"Timeout after {timeout}s",
                duration=_elapsed_ms(start),
                command=resolved.command,
            )
        except asyncio.CancelledError:
            _kill_group(proc)
            raise
        finally:
            if self._process is proc:
                self._process = None

        out = stdout.decode("utf-8", errors="replace").strip()
        err = stderr.decode("utf-8", errors="replace").strip()
        output = f"{out}\n{err}" if out and err else (out or err)

        result = FeedbackLoopResult(
            name=name,
            passed=proc.returncode == 0,
            output=output,
            duration=_elapsed_ms(start),
            command=resolved.command,
        )
        logger.info(
            "[FEEDBACK] %s %s | exit=%d | %.0fms",
            name, "PASSED" if result.passed else "FAILED", proc.returncode, result.duration,
        )
        return result

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def kill(self) -> bool:
        """Kill the in-flight loop command. Returns False when none is running."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return False
        logger.warning("[FEEDBACK] killing pid=%s", proc.pid)
        _kill_group(proc)
        return True

    async def run_all(self, loops: List[str], timeout_seconds: Optional[float] = None) -> List[FeedbackLoopResult]:
        """Run loops sequentially; never short-circuits on failure."""
        results = []
        for loop in loops:
            results.append(await self.run_loop(loop, timeout_seconds))
        return results


def to_feedback_results(results: List[FeedbackLoopResult]) -> Dict[str, FeedbackResult]:
    return {
        r.name: FeedbackResult(passed=r.passed, output=r.output, duration=r.duration)
        for r in results
    }


def all_passed(results: List[FeedbackLoopResult]) -> bool:
    return all(r.passed for r in results)


def summarize(results: List[FeedbackLoopResult]) -> str:
    """One line per loop, e.g. ``✓ test (1200ms)`` / ``✗ lint (300ms)``."""
    lines = []
    for r in results:
        mark = "✓" if r.passed else "✗"
        lines.append(f"{mark} {r.name} ({r.duration:.0f}ms)")
    return "\n".join(lines)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
