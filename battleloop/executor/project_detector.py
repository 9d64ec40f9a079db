"""
Project Detector
================
Detects the project type from repository signals (marker files).

Detection is deterministic: the same repo always yields the same project type.
Used by the command resolver to pick default feedback commands.
Pure heuristic matching only.
"""
import json
import os
from typing import Dict, Optional


# ---------------------------------------------------------------------------
# Signal File → Project Type mapping (ordered by priority)
# ---------------------------------------------------------------------------
# Order matters: first match wins. More specific signals checked first.
SIGNAL_MAP: list[tuple[str, str]] = [
    ("package.json",     "node"),
    ("pyproject.toml",   "python"),
    ("requirements.txt", "python"),
    ("setup.py",         "python"),
    ("go.mod",           "go"),
    ("Cargo.toml",       "rust"),
]


def detect_project_type(workspace_path: str) -> Optional[str]:
    """
    Scan the workspace root for signal files and return the project type.

    Parameters
    ----------
    workspace_path : str
        Absolute path to the repository root.

    Returns
    -------
    str | None
        Detected project type string (e.g. "python", "node"),
        or None if no signal file is found.

    Notes
    -----
    - Checks files in SIGNAL_MAP order; first match wins.
    - Only checks the workspace root directory (no recursive search).
    """
    if not os.path.isdir(workspace_path):
        return None

    for signal_file, project_type in SIGNAL_MAP:
        if os.path.isfile(os.path.join(workspace_path, signal_file)):
            return project_type

    return None


def read_package_scripts(workspace_path: str) -> Dict[str, str]:
    """
    Return the ``scripts`` table of package.json, or {} when the file is
    missing or unreadable.
    """
    path = os.path.join(workspace_path, "package.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else {}
