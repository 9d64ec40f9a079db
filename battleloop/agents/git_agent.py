"""
Git Agent
=========
Thin wrapper over the git CLI for the battle loop: status, staging,
commits, and the reset/clean/apply primitives checkpoints restore with.

The agent never decides what to commit; the engine and the checkpoint
strategies do. Every call is a blocking ``subprocess.run`` scoped to one
working tree. Async callers go through ``asyncio.to_thread``.
"""
import os
import subprocess
import logging
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

from battleloop.core.config import COMMIT_PREFIX, WORKDIR
from battleloop.core.constants import STATE_FOLDER
from battleloop.core.errors import GitCommandError

logger = logging.getLogger(__name__)


@dataclass
class GitStatus:
    """
    Porcelain status split into buckets.

    Fields
    ------
    staged : list[str]
        Paths with index changes.
    unstaged : list[str]
        Paths with working-tree changes not yet staged.
    untracked : list[str]
        Paths git does not track (``??``).
    """
    staged: List[str] = field(default_factory=list)
    unstaged: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)

    @property
    def is_dirty(self) -> bool:
        return bool(self.staged or self.unstaged or self.untracked)

    @property
    def changed_files(self) -> List[str]:
        """Union of all buckets, first occurrence order, no duplicates."""
        return list(dict.fromkeys(self.staged + self.unstaged + self.untracked))


def parse_porcelain_status(output: str) -> GitStatus:
    """
    Parse ``git status --porcelain -uall`` output.

    Each line is ``XY <path>``; renames carry ``<old> -> <new>`` and are
    reported under the new path.
    """
    status = GitStatus()
    for line in output.splitlines():
        if len(line) < 4:
            continue
        index_state, tree_state = line[0], line[1]
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if path.startswith('"') and path.endswith('"'):
            path = path[1:-1]

        if index_state == "?" and tree_state == "?":
            status.untracked.append(path)
            continue
        if index_state not in (" ", "?"):
            status.staged.append(path)
        if tree_state not in (" ", "?"):
            status.unstaged.append(path)
    return status


class GitAgent:
    """
    Agent responsible for the git side effects of a battle.
    """

    def __init__(self, workspace_path: str = WORKDIR, commit_prefix: str = COMMIT_PREFIX) -> None:
        self.workspace_path = workspace_path
        self.commit_prefix = commit_prefix
        self.commit_count = 0

    def _run(self, args: List[str]) -> str:
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.workspace_path,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise GitCommandError(args, e.stderr or "") from e
        return res.stdout

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def is_repo(self) -> bool:
        try:
            return self._run(["rev-parse", "--is-inside-work-tree"]).strip() == "true"
        except (GitCommandError, OSError):
            return False

    def status(self) -> GitStatus:
        return parse_porcelain_status(self._run(["status", "--porcelain", "-uall"]))

    def head(self) -> Optional[str]:
        """SHA of HEAD, or None when the repository has no commits yet."""
        try:
            return self._run(["rev-parse", "HEAD"]).strip() or None
        except GitCommandError:
            return None

    def diff_head(self) -> str:
        """Tracked changes (staged + unstaged) against HEAD, verbatim."""
        return self._run(["diff", "HEAD"])

    def list_untracked(self) -> List[str]:
        out = self._run(["ls-files", "--others", "--exclude-standard"])
        return [line for line in out.splitlines() if line]

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    def add(self, paths: List[str]) -> None:
        if not paths:
            return
        self._run(["add", "--", *paths])

    def commit(self, message: str) -> str:
        """Commit the index and return the new HEAD SHA."""
        self._run(["commit", "-m", message])
        self.commit_count += 1
        sha = self.head() or ""
        logger.info("Committed %s: %s", sha[:8], message)
        return sha

    def reset_hard(self, ref: str) -> None:
        self._run(["reset", "--hard", ref])

    def clean_untracked(self, exclude: str = STATE_FOLDER) -> None:
        """Remove untracked files and directories, sparing ``exclude``."""
        self._run(["clean", "-fd", "-e", exclude])

    def apply_patch(self, patch: str) -> None:
        """
        Apply a unified diff to the working tree.

        The patch goes through a temporary file which is removed whether or
        not ``git apply`` succeeds.
        """
        fd, patch_path = tempfile.mkstemp(prefix="battleloop-", suffix=".patch")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(patch)
            self._run(["apply", "--whitespace=nowarn", patch_path])
        finally:
            try:
                os.unlink(patch_path)
            except OSError:
                logger.warning("Could not remove temporary patch %s", patch_path)

    def read_worktree_file(self, rel_path: str) -> str:
        with open(os.path.join(self.workspace_path, rel_path), "r", encoding="utf-8", newline="") as f:
            return f.read()

    def format_commit_message(self, task_id: str, title: str) -> str:
        return f"[{self.commit_prefix}] {task_id}: {title}"
