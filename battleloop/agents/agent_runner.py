"""
Agent Runner
============
Spawns the external code-generation agent for one iteration and collects
its output.

The runner never interprets the output; completion detection and feedback
are the engine's job. One process at a time: ``kill()`` targets the
process started by the most recent ``run()``.
"""
import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from typing import List, Optional

from battleloop.core.config import AGENT_ACCEPT_EDITS, AGENT_COMMAND, WORKDIR

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "Agent execution timed out"


@dataclass
class AgentRunResult:
    """
    Outcome of one agent invocation.

    Fields
    ------
    exit_code : int
        Process exit code, -1 when killed by timeout or never started.
    output : str
        Combined stdout + stderr in arrival order.
    timed_out : bool
        True when the timeout fired and the process was killed.
    error : str | None
        Infrastructure error (spawn failure, timeout), not agent failures.
    """
    exit_code: int = -1
    output: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class AgentRunner:

    def __init__(
        self,
        working_dir: str = WORKDIR,
        command: str = AGENT_COMMAND,
        accept_edits: bool = AGENT_ACCEPT_EDITS,
    ) -> None:
        self.working_dir = working_dir
        self.command = command
        self.accept_edits = accept_edits
        self._process: Optional[asyncio.subprocess.Process] = None

    def build_command(self, prompt: str) -> List[str]:
        cmd = shlex.split(self.command)
        if self.accept_edits:
            cmd.append("--dangerously-skip-permissions")
        cmd.extend(["--print", prompt])
        return cmd

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def run(self, prompt: str, timeout_seconds: Optional[float] = None) -> AgentRunResult:
        """
        Run the agent to exit or timeout.

        ``timeout_seconds`` of None or 0 waits indefinitely.
        """
        chunks: List[bytes] = []
        env = {**os.environ, "CI": "true"}

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                cwd=self.working_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            logger.error("Failed to spawn agent '%s': %s", self.command, e)
            return AgentRunResult(exit_code=-1, error=f"Failed to spawn agent: {e}")

        self._process = proc
        logger.info("Agent spawned | pid=%s | timeout=%ss", proc.pid, timeout_seconds or "none")

        async def drain(stream):
            while True:
                chunk = await stream.read(8192)
                if not chunk:
                    break
                chunks.append(chunk)

        try:
            await asyncio.wait_for(
                asyncio.gather(drain(proc.stdout), drain(proc.stderr), proc.wait()),
                timeout=timeout_seconds or None,
            )
        except asyncio.TimeoutError:
            logger.warning("Agent pid=%s timed out after %ss, killing", proc.pid, timeout_seconds)
            self._terminate(proc)
            await proc.wait()
            return AgentRunResult(
                exit_code=-1,
                output=_decode(chunks),
                timed_out=True,
                error=TIMEOUT_ERROR,
            )
        except asyncio.CancelledError:
            self._terminate(proc)
            raise
        finally:
            if self._process is proc and proc.returncode is not None:
                self._process = None

        result = AgentRunResult(exit_code=proc.returncode, output=_decode(chunks))
        logger.info("Agent exited | code=%d | output=%d chars", result.exit_code, len(result.output))
        return result

    def kill(self) -> bool:
        """Hard-kill the running agent. Returns False when nothing is running."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return False
        self._terminate(proc)
        return True

    @staticmethod
    def _terminate(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")
