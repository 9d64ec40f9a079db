"""
Command Resolver
================
Maps a feedback loop name ("test", "lint", "typecheck", ...) to the shell
command that runs it in the current project.

Resolution order:
    1. Explicit override from config.yaml ``feedbackCommands``.
    2. Node projects: ``npm run <name>`` when package.json declares the script.
    3. Fixed defaults for the detected project type.

Resolver never executes commands; it only returns strings.
Deterministic: same workspace + same overrides → same commands.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from battleloop.executor.project_detector import detect_project_type, read_package_scripts


@dataclass(frozen=True)
class ResolvedCommand:
    """
    Immutable resolution result for one feedback loop.

    Fields
    ------
    loop_name : str
        Loop the command was resolved for.
    command : str | None
        Shell command, or None when nothing could be resolved.
    project_type : str
        Project type used for the lookup ("unknown" if undetected).
    source : str
        "override", "package_script", "default", or "unresolved".
    """
    loop_name: str
    command: Optional[str]
    project_type: str
    source: str

    @property
    def resolved(self) -> bool:
        return self.command is not None


# ---------------------------------------------------------------------------
# Default mapping: project_type → loop name → command
# ---------------------------------------------------------------------------
_COMMAND_MAP: dict[str, dict[str, str]] = {
    "python": {
        "test": "pytest",
        "lint": "ruff check .",
        "typecheck": "mypy .",
        "format": "ruff format --check .",
    },
    "go": {
        "test": "go test ./...",
        "lint": "go vet ./...",
        "typecheck": "go build ./...",
        "build": "go build ./...",
    },
    "rust": {
        "test": "cargo test",
        "lint": "cargo clippy",
        "typecheck": "cargo check",
        "build": "cargo build",
    },
}


def resolve_command(
    loop_name: str,
    workspace_path: str,
    overrides: Optional[Dict[str, str]] = None,
    project_type: Optional[str] = None,
) -> ResolvedCommand:
    """
    Look up the shell command for one feedback loop.

    Parameters
    ----------
    loop_name : str
        Name as listed in ``feedbackLoops``.
    workspace_path : str
        Repository root, used for detection and package.json lookup.
    overrides : dict | None
        ``feedbackCommands`` from config; wins over everything else.
    project_type : str | None
        Skip detection when already known.
    """
    if project_type is None:
        project_type = detect_project_type(workspace_path)
    ptype = project_type or "unknown"

    if overrides and overrides.get(loop_name):
        return ResolvedCommand(loop_name, overrides[loop_name], ptype, "override")

    if ptype == "node":
        if loop_name in read_package_scripts(workspace_path):
            return ResolvedCommand(loop_name, f"npm run {loop_name}", ptype, "package_script")
        return ResolvedCommand(loop_name, None, ptype, "unresolved")

    command = _COMMAND_MAP.get(ptype, {}).get(loop_name)
    if command is None:
        return ResolvedCommand(loop_name, None, ptype, "unresolved")
    return ResolvedCommand(loop_name, command, ptype, "default")
