"""
Checkpoint Manager
==================
Snapshots restorable working-tree states during a battle and rolls back to
them on request.

Two storage strategies, picked once from ``autoCommit``:

    commit  — the iteration was committed; the checkpoint is that commit
              and restore is ``git reset --hard <commit>``.
    patch   — nothing is committed; the checkpoint is HEAD plus one unified
              diff holding tracked changes and every untracked file outside
              .battleloop/. Restore resets to HEAD, removes untracked files,
              then re-applies the diff.

Retention (``cleanup_checkpoints``) is a pure function over the list; the
caller persists what it returns.
"""
import asyncio
import logging
import random
import string
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from battleloop.agents.git_agent import GitAgent
from battleloop.core.constants import INTERNAL_STATE_PREFIXES, STATE_FOLDER
from battleloop.core.errors import CheckpointCreateError, CheckpointRestoreError, GitCommandError
from battleloop.models.base import utcnow
from battleloop.models.checkpoint import (
    DEFAULT_RETENTION_POLICY,
    Checkpoint,
    CheckpointStorageType,
    RetentionPolicy,
    RollbackResult,
)
from battleloop.models.iteration import Iteration
from battleloop.models.progress import FeedbackResult

logger = logging.getLogger(__name__)

FeedbackResults = Dict[str, FeedbackResult]

INITIAL_CHECKPOINT_DESCRIPTION = "Before battle started"


def generate_checkpoint_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"cp-{int(time.time() * 1000)}-{suffix}"


def is_internal_path(path: str) -> bool:
    return path == STATE_FOLDER or path.startswith(INTERNAL_STATE_PREFIXES)


def synthesize_new_file_patch(path: str, content: str) -> str:
    """
    Build a ``git apply``-compatible block that creates ``path`` with
    ``content``.
    """
    header = f"diff --git a/{path} b/{path}\nnew file mode 100644\n"
    if content == "":
        return header + "index 0000000..e69de29\n"

    lines = content.split("\n")
    has_trailing_newline = content.endswith("\n")
    if has_trailing_newline:
        lines = lines[:-1]

    parts = [header, "--- /dev/null\n", f"+++ b/{path}\n", f"@@ -0,0 +1,{len(lines)} @@\n"]
    parts.extend(f"+{line}\n" for line in lines)
    if not has_trailing_newline:
        parts.append("\\ No newline at end of file\n")
    return "".join(parts)


# ---------------------------------------------------------------------------
# Storage strategies
# ---------------------------------------------------------------------------
class CheckpointStorage:
    """Strategy interface; subclasses fill in storage-specific fields."""

    storage_type: CheckpointStorageType

    def __init__(self, git: GitAgent) -> None:
        self.git = git

    async def create(
        self,
        battle_id: str,
        iteration: Iteration,
        feedback_results: FeedbackResults,
    ) -> Checkpoint:
        raise NotImplementedError

    async def restore(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    def _base_checkpoint(
        self, battle_id: str, iteration: Iteration, feedback_results: FeedbackResults
    ) -> Checkpoint:
        return Checkpoint(
            id=generate_checkpoint_id(),
            battle_id=battle_id,
            after_iteration=iteration.number,
            storage_type=self.storage_type,
            timestamp=utcnow(),
            description=f"After iteration {iteration.number}",
            files=list(iteration.files_changed),
            feedback_results=dict(feedback_results),
        )


class CommitCheckpointStorage(CheckpointStorage):
    storage_type: CheckpointStorageType = "commit"

    async def create(self, battle_id, iteration, feedback_results):
        commit_hash = iteration.commit_hash
        if not commit_hash:
            commit_hash = await asyncio.to_thread(self.git.head)
        if not commit_hash:
            raise CheckpointCreateError("No commit found for checkpoint creation")

        checkpoint = self._base_checkpoint(battle_id, iteration, feedback_results)
        checkpoint.commit_hash = commit_hash
        return checkpoint

    async def restore(self, checkpoint):
        if not checkpoint.commit_hash:
            raise CheckpointRestoreError("Commit-based checkpoint missing commitHash")
        try:
            await asyncio.to_thread(self.git.reset_hard, checkpoint.commit_hash)
        except GitCommandError as e:
            raise CheckpointRestoreError(f"Failed to restore checkpoint: {e.stderr.strip()}") from e


class PatchCheckpointStorage(CheckpointStorage):
    storage_type: CheckpointStorageType = "patch"

    async def create(self, battle_id, iteration, feedback_results):
        base = await asyncio.to_thread(self.git.head)
        if not base:
            raise CheckpointCreateError("Cannot create patch checkpoint: no commits in repository")

        checkpoint = self._base_checkpoint(battle_id, iteration, feedback_results)
        checkpoint.base_commit_hash = base
        checkpoint.patch = await asyncio.to_thread(self.generate_patch)
        return checkpoint

    def generate_patch(self) -> str:
        """Tracked diff against HEAD followed by one block per untracked file."""
        try:
            patch = self.git.diff_head()
        except GitCommandError as e:
            raise CheckpointCreateError(f"Failed to diff working tree: {e.stderr.strip()}") from e

        blocks = [patch]
        for path in self.git.list_untracked():
            if is_internal_path(path):
                continue
            try:
                content = self.git.read_worktree_file(path)
            except (OSError, UnicodeDecodeError):
                logger.debug("Skipping unreadable untracked file %s", path)
                continue
            blocks.append(synthesize_new_file_patch(path, content))
        return "".join(blocks)

    async def restore(self, checkpoint):
        if not checkpoint.base_commit_hash:
            raise CheckpointRestoreError("Patch-based checkpoint missing baseCommitHash")
        try:
            await asyncio.to_thread(self.git.reset_hard, checkpoint.base_commit_hash)
        except GitCommandError as e:
            raise CheckpointRestoreError(f"Failed to reset to base commit: {e.stderr.strip()}") from e

        try:
            await asyncio.to_thread(self.git.clean_untracked, STATE_FOLDER)
        except GitCommandError as e:
            raise CheckpointRestoreError(f"Failed to remove untracked files: {e.stderr.strip()}") from e

        if checkpoint.patch and checkpoint.patch.strip():
            try:
                await asyncio.to_thread(self.git.apply_patch, checkpoint.patch)
            except GitCommandError as e:
                raise CheckpointRestoreError(f"Failed to apply patch: {e.stderr.strip()}") from e


def get_checkpoint_storage(git: GitAgent, auto_commit: bool) -> CheckpointStorage:
    return CommitCheckpointStorage(git) if auto_commit else PatchCheckpointStorage(git)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def validate_checkpoint(checkpoint: Checkpoint) -> Tuple[bool, Optional[str]]:
    if not checkpoint.id:
        return False, "Checkpoint missing ID"
    if checkpoint.storage_type == "commit" and not checkpoint.commit_hash:
        return False, "Commit-based checkpoint missing commitHash"
    if checkpoint.storage_type == "patch" and not checkpoint.base_commit_hash:
        return False, "Patch-based checkpoint missing baseCommitHash"
    return True, None


def find_checkpoint_by_iteration(checkpoints: List[Checkpoint], after_iteration: int) -> Optional[Checkpoint]:
    return next((cp for cp in checkpoints if cp.after_iteration == after_iteration), None)


def get_initial_checkpoint(checkpoints: List[Checkpoint]) -> Optional[Checkpoint]:
    return find_checkpoint_by_iteration(checkpoints, 0)


def cleanup_checkpoints(
    checkpoints: List[Checkpoint],
    policy: RetentionPolicy = DEFAULT_RETENTION_POLICY,
    now: Optional[datetime] = None,
) -> List[Checkpoint]:
    """
    Apply the retention policy and return the checkpoints to keep,
    newest first.

    The ``max_checkpoints`` newest are always kept. Beyond that, anything
    older than ``max_age`` goes, and the rest survive according to
    ``keep_successful`` / ``keep_failed``.
    """
    now = now or utcnow()
    ordered = sorted(checkpoints, key=lambda cp: cp.timestamp, reverse=True)

    kept = []
    for i, cp in enumerate(ordered):
        if i < policy.max_checkpoints:
            kept.append(cp)
            continue
        if now - cp.timestamp > policy.max_age:
            continue
        passed = cp.all_passed
        if (passed and policy.keep_successful) or (not passed and policy.keep_failed):
            kept.append(cp)
    return kept


def get_checkpoints_to_remove(
    checkpoints: List[Checkpoint],
    policy: RetentionPolicy = DEFAULT_RETENTION_POLICY,
    now: Optional[datetime] = None,
) -> List[str]:
    kept_ids = {cp.id for cp in cleanup_checkpoints(checkpoints, policy, now)}
    return [cp.id for cp in checkpoints if cp.id not in kept_ids]


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class CheckpointManager:
    """
    Binds one storage strategy and one retention policy to a working tree.
    """

    def __init__(
        self,
        git: GitAgent,
        auto_commit: bool = True,
        retention: RetentionPolicy = DEFAULT_RETENTION_POLICY,
    ) -> None:
        self.git = git
        self.retention = retention
        self.storage = get_checkpoint_storage(git, auto_commit)

    @property
    def storage_type(self) -> CheckpointStorageType:
        return self.storage.storage_type

    async def create(
        self,
        battle_id: str,
        iteration: Iteration,
        feedback_results: Optional[FeedbackResults] = None,
    ) -> Checkpoint:
        checkpoint = await self.storage.create(battle_id, iteration, feedback_results or {})
        logger.info(
            "Checkpoint %s created (%s) after iteration %d",
            checkpoint.id, checkpoint.storage_type, checkpoint.after_iteration,
        )
        return checkpoint

    async def create_initial(self, battle_id: str) -> Checkpoint:
        if not await asyncio.to_thread(self.git.is_repo):
            raise CheckpointCreateError("Cannot create initial checkpoint: not a git repository")
        head = await asyncio.to_thread(self.git.head)
        if not head:
            raise CheckpointCreateError("Cannot create initial checkpoint: no commits in repository")
        return Checkpoint(
            id=generate_checkpoint_id(),
            battle_id=battle_id,
            after_iteration=0,
            storage_type=self.storage_type,
            commit_hash=head,
            base_commit_hash=head,
            timestamp=utcnow(),
            description=INITIAL_CHECKPOINT_DESCRIPTION,
        )

    async def restore(self, checkpoint: Checkpoint) -> None:
        """Validate, then restore with the strategy matching the checkpoint."""
        valid, error = validate_checkpoint(checkpoint)
        if not valid:
            raise CheckpointRestoreError(error)

        storage = self.storage
        if checkpoint.storage_type != storage.storage_type:
            storage = get_checkpoint_storage(self.git, checkpoint.storage_type == "commit")
        await storage.restore(checkpoint)
        logger.info("Restored checkpoint %s (iteration %d)", checkpoint.id, checkpoint.after_iteration)

    async def rollback(self, checkpoints: List[Checkpoint], target_iteration: int) -> RollbackResult:
        checkpoint = find_checkpoint_by_iteration(checkpoints, target_iteration)
        if checkpoint is None:
            return RollbackResult(
                success=False,
                restored_to_iteration=target_iteration,
                error=f"No checkpoint found for iteration {target_iteration}",
            )
        try:
            await self.restore(checkpoint)
        except CheckpointRestoreError as e:
            logger.error("Rollback to iteration %d failed: %s", target_iteration, e)
            return RollbackResult(
                success=False,
                restored_to_iteration=target_iteration,
                checkpoint_id=checkpoint.id,
                storage_type=checkpoint.storage_type,
                error=str(e),
            )
        return RollbackResult(
            success=True,
            restored_to_iteration=target_iteration,
            checkpoint_id=checkpoint.id,
            storage_type=checkpoint.storage_type,
        )

    def cleanup(self, checkpoints: List[Checkpoint], now: Optional[datetime] = None) -> List[Checkpoint]:
        return cleanup_checkpoints(checkpoints, self.retention, now)
