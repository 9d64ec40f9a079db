"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    BATTLELOOP_WORKDIR             — Repository the battles run against (default: cwd)
    BATTLELOOP_AGENT_COMMAND       — Agent CLI invocation (default: claude)
    BATTLELOOP_AGENT_ACCEPT_EDITS  — Let the agent edit without prompting (default: true)
    BATTLELOOP_COMMIT_PREFIX       — Product prefix used in auto-commit messages
    BATTLELOOP_MAX_ITERATIONS      — Default iteration cap per task (default: 10)
    BATTLELOOP_TIMEOUT_MINUTES     — Default agent timeout per iteration (default: 30)
    BATTLELOOP_POLL_INTERVAL_MS    — Progress polling interval (default: 2000)
    BATTLELOOP_FEEDBACK_TIMEOUT    — Max seconds for one feedback loop (default: 300)
    BATTLELOOP_LOG_DIR             — Directory for the dated log file (default: logs)
    BATTLELOOP_LOG_LEVEL           — Root log level name (default: INFO)

Per-project settings (feedback loops, mode, auto-commit, retention) live in
.battleloop/config.yaml. The values here only seed a project that has none.
"""
import os
from dotenv import load_dotenv

load_dotenv()

WORKDIR = os.getenv("BATTLELOOP_WORKDIR", os.getcwd())

AGENT_COMMAND = os.getenv("BATTLELOOP_AGENT_COMMAND", "claude")
AGENT_ACCEPT_EDITS = os.getenv("BATTLELOOP_AGENT_ACCEPT_EDITS", "true").lower() == "true"

COMMIT_PREFIX = os.getenv("BATTLELOOP_COMMIT_PREFIX", "BattleLoop")

DEFAULT_MAX_ITERATIONS = int(os.getenv("BATTLELOOP_MAX_ITERATIONS", 10))
DEFAULT_TIMEOUT_MINUTES = int(os.getenv("BATTLELOOP_TIMEOUT_MINUTES", 30))
DEFAULT_POLL_INTERVAL_MS = int(os.getenv("BATTLELOOP_POLL_INTERVAL_MS", 2000))

# Execution timeout in seconds — max time for a single feedback command
FEEDBACK_TIMEOUT_SECONDS = int(os.getenv("BATTLELOOP_FEEDBACK_TIMEOUT", 300))

LOG_DIR = os.getenv("BATTLELOOP_LOG_DIR", "logs")
LOG_LEVEL = os.getenv("BATTLELOOP_LOG_LEVEL", "INFO")
