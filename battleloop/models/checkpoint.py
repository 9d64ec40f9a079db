"""
Checkpoint Model
================
Pydantic models for restorable snapshots and their retention policy.

Fields:
    id               — "cp-<epoch ms>-<random>"
    battle_id        — battle (task id) the checkpoint belongs to
    after_iteration  — iteration it follows; 0 for the "before battle" snapshot
    storage_type     — "commit" (carries commit_hash) or "patch"
                       (carries base_commit_hash + patch)
    timestamp        — creation time, used for retention ordering
    description      — human label ("After iteration 3")
    files            — files changed in that iteration
    feedback_results — loop results at that point

A commit checkpoint without commit_hash, or a patch checkpoint without
base_commit_hash, cannot be restored; validate_checkpoint() rejects both.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional

from pydantic import Field

from .base import WireModel, utcnow
from .progress import FeedbackResult

CheckpointStorageType = Literal["commit", "patch"]


class Checkpoint(WireModel):
    id: str
    battle_id: str
    after_iteration: int
    storage_type: CheckpointStorageType
    commit_hash: Optional[str] = None
    patch: Optional[str] = None
    base_commit_hash: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    description: str = ""
    files: List[str] = []
    feedback_results: Dict[str, FeedbackResult] = {}

    @property
    def all_passed(self) -> bool:
        return all(r.passed for r in self.feedback_results.values())


class RetentionPolicy(WireModel):
    max_checkpoints: int = 10
    max_age: timedelta = timedelta(days=7)
    keep_failed: bool = True
    keep_successful: bool = True


DEFAULT_RETENTION_POLICY = RetentionPolicy()


class RollbackResult(WireModel):
    success: bool
    restored_to_iteration: int
    checkpoint_id: str = ""
    storage_type: Optional[CheckpointStorageType] = None
    error: Optional[str] = None
