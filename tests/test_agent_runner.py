"""
Agent Runner Tests
==================
Uses small shell scripts in tmp_path as the "agent". The runner appends
``--print <prompt>``, so the prompt arrives as ``$2``.
"""
import asyncio

import pytest

from battleloop.agents.agent_runner import AgentRunner, AgentRunResult, TIMEOUT_ERROR


@pytest.fixture
def make_agent(tmp_path):
    def make(body, accept_edits=False):
        script = tmp_path / "agent.sh"
        script.write_text("#!/bin/sh\n" + body + "\n")
        return AgentRunner(str(tmp_path), command=f"sh {script}", accept_edits=accept_edits)
    return make


def test_build_command_appends_flags():
    runner = AgentRunner("/tmp", command="claude --model x", accept_edits=True)
    assert runner.build_command("do it") == [
        "claude", "--model", "x", "--dangerously-skip-permissions", "--print", "do it",
    ]
    runner.accept_edits = False
    assert "--dangerously-skip-permissions" not in runner.build_command("do it")


def test_collects_stdout_and_stderr(make_agent):
    runner = make_agent('echo "got: $2"\necho "warn" >&2\necho "CI=$CI"')
    result = asyncio.run(runner.run("the prompt", timeout_seconds=10))
    assert result.success is True
    assert result.exit_code == 0
    assert "got: the prompt" in result.output
    assert "warn" in result.output
    assert "CI=true" in result.output
    assert runner.is_running is False


def test_runs_in_working_dir(make_agent, tmp_path):
    runner = make_agent("pwd")
    result = asyncio.run(runner.run("p"))
    assert str(tmp_path.resolve()) in result.output


def test_nonzero_exit_is_not_an_error(make_agent):
    result = asyncio.run(make_agent("echo nope; exit 2").run("p", timeout_seconds=10))
    assert result.exit_code == 2
    assert result.success is False
    assert result.timed_out is False
    assert result.error is None


def test_timeout_kills_process(make_agent):
    runner = make_agent("echo started\nexec sleep 5")
    result = asyncio.run(runner.run("p", timeout_seconds=0.3))
    assert result.timed_out is True
    assert result.exit_code == -1
    assert result.error == TIMEOUT_ERROR
    assert runner.is_running is False


def test_spawn_failure_returns_error(tmp_path):
    runner = AgentRunner(str(tmp_path), command="definitely-not-a-real-agent-binary")
    result = asyncio.run(runner.run("p"))
    assert result.exit_code == -1
    assert result.error.startswith("Failed to spawn agent")


def test_kill_running_agent(make_agent):
    runner = make_agent("exec sleep 5")

    async def run_test():
        task = asyncio.create_task(runner.run("p"))
        for _ in range(100):
            if runner.is_running:
                break
            await asyncio.sleep(0.01)
        killed = runner.kill()
        result = await task
        return killed, result

    killed, result = asyncio.run(run_test())
    assert killed is True
    assert result.success is False
    assert runner.kill() is False


def test_result_defaults():
    result = AgentRunResult()
    assert result.exit_code == -1
    assert result.success is False
