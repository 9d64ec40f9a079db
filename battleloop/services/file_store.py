"""
File Store
==========
Persists every battle record under ``<workdir>/.battleloop/``.

Layout:
    config.yaml                        BattleConfig (YAML)
    prd.json                           PRD with tasks
    battles/<task>/progress.json       Progress (also written by the agent)
    battles/<task>/history.json        Battle
    battles/<task>/checkpoints.json    list[Checkpoint]
    battles/<task>/logs/iteration-N.txt

Writes go through a temp file + ``os.replace`` so a concurrent reader (the
agent, the ProgressMonitor) never sees a half-written JSON document.
Blocking IO runs in a worker thread; the public API is async.
"""
import asyncio
import json
import logging
import os
import tempfile
from typing import Any, List, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError, TypeAdapter

from battleloop.core.config import WORKDIR
from battleloop.core.constants import (
    BATTLES_FOLDER,
    CHECKPOINTS_FILE,
    CONFIG_FILE,
    HISTORY_FILE,
    LOGS_FOLDER,
    PRD_FILE,
    PROGRESS_FILE,
    STATE_FOLDER,
)
from battleloop.core.errors import StoreFileNotFoundError, StoreValidationError, TaskNotFoundError
from battleloop.models.base import utcnow
from battleloop.models.battle import Battle
from battleloop.models.battle_config import BattleConfig
from battleloop.models.checkpoint import Checkpoint
from battleloop.models.progress import Progress
from battleloop.models.task import PRD, Task, TaskStatus

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_CHECKPOINT_LIST = TypeAdapter(List[Checkpoint])


class FileStore:

    def __init__(self, working_dir: str = WORKDIR) -> None:
        self.working_dir = os.path.abspath(working_dir)

    # -------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------
    @property
    def state_dir(self) -> str:
        return os.path.join(self.working_dir, STATE_FOLDER)

    def battle_dir(self, task_id: str) -> str:
        if not task_id or task_id in (".", "..") or "/" in task_id or os.sep in task_id:
            raise StoreValidationError(task_id, [], f'Invalid task id "{task_id}"')
        return os.path.join(self.state_dir, BATTLES_FOLDER, task_id)

    def progress_path(self, task_id: str) -> str:
        return os.path.join(self.battle_dir(task_id), PROGRESS_FILE)

    def history_path(self, task_id: str) -> str:
        return os.path.join(self.battle_dir(task_id), HISTORY_FILE)

    def checkpoints_path(self, task_id: str) -> str:
        return os.path.join(self.battle_dir(task_id), CHECKPOINTS_FILE)

    def iteration_log_path(self, task_id: str, iteration: int) -> str:
        return os.path.join(self.battle_dir(task_id), LOGS_FOLDER, f"iteration-{iteration}.txt")

    # -------------------------------------------------------------------
    # Low-level IO (sync, run in a worker thread)
    # -------------------------------------------------------------------
    @staticmethod
    def _read_json(path: str) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise StoreFileNotFoundError(path) from None
        except json.JSONDecodeError as e:
            raise StoreValidationError(path, [str(e)], f"Invalid JSON in {path}: {e}") from e

    @staticmethod
    def _write_text(path: str, text: str) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _write_json(self, path: str, data: Any) -> None:
        self._write_text(path, json.dumps(data, indent=2) + "\n")

    def _load_model(self, path: str, model: Type[M]) -> M:
        data = self._read_json(path)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise StoreValidationError(path, e.errors(), f"Validation failed for {path}") from e

    # -------------------------------------------------------------------
    # Config
    # -------------------------------------------------------------------
    def _load_config_sync(self) -> BattleConfig:
        path = os.path.join(self.state_dir, CONFIG_FILE)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.debug("No %s, using defaults", path)
            return BattleConfig()
        except yaml.YAMLError as e:
            raise StoreValidationError(path, [str(e)], f"Invalid YAML in {path}: {e}") from e
        try:
            return BattleConfig.model_validate(data)
        except ValidationError as e:
            raise StoreValidationError(path, e.errors(), f"Validation failed for {path}") from e

    async def load_config(self) -> BattleConfig:
        return await asyncio.to_thread(self._load_config_sync)

    async def save_config(self, config: BattleConfig) -> None:
        path = os.path.join(self.state_dir, CONFIG_FILE)
        text = yaml.safe_dump(config.to_wire(), sort_keys=False)
        await asyncio.to_thread(self._write_text, path, text)

    # -------------------------------------------------------------------
    # PRD / tasks
    # -------------------------------------------------------------------
    async def load_prd(self) -> PRD:
        return await asyncio.to_thread(self._load_model, os.path.join(self.state_dir, PRD_FILE), PRD)

    async def save_prd(self, prd: PRD) -> None:
        await asyncio.to_thread(self._write_json, os.path.join(self.state_dir, PRD_FILE), prd.to_wire())

    async def get_task(self, task_id: str) -> Optional[Task]:
        try:
            prd = await self.load_prd()
        except StoreFileNotFoundError:
            return None
        return prd.find_task(task_id)

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        prd = await self.load_prd()
        task = prd.find_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        task.status = status
        task.updated_at = utcnow()
        prd.updated_at = task.updated_at
        await self.save_prd(prd)
        return task

    # -------------------------------------------------------------------
    # Battle folder
    # -------------------------------------------------------------------
    async def ensure_battle_folder(self, task_id: str) -> str:
        path = self.battle_dir(task_id)
        await asyncio.to_thread(os.makedirs, os.path.join(path, LOGS_FOLDER), exist_ok=True)
        return path

    # -------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------
    async def load_progress(self, task_id: str) -> Optional[Progress]:
        try:
            return await asyncio.to_thread(self._load_model, self.progress_path(task_id), Progress)
        except StoreFileNotFoundError:
            return None

    async def read_progress_raw(self, task_id: str) -> Optional[Any]:
        """Progress JSON as stored, without validation. None when absent."""
        try:
            return await asyncio.to_thread(self._read_json, self.progress_path(task_id))
        except StoreFileNotFoundError:
            return None

    async def save_progress(self, progress: Progress) -> None:
        progress.touch()
        await asyncio.to_thread(self._write_json, self.progress_path(progress.task_id), progress.to_wire())

    # -------------------------------------------------------------------
    # Battle history
    # -------------------------------------------------------------------
    async def load_battle(self, task_id: str) -> Optional[Battle]:
        try:
            return await asyncio.to_thread(self._load_model, self.history_path(task_id), Battle)
        except StoreFileNotFoundError:
            return None

    async def save_battle(self, battle: Battle) -> None:
        await asyncio.to_thread(self._write_json, self.history_path(battle.task_id), battle.to_wire())

    # -------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------
    def _load_checkpoints_sync(self, task_id: str) -> List[Checkpoint]:
        path = self.checkpoints_path(task_id)
        try:
            data = self._read_json(path)
        except StoreFileNotFoundError:
            return []
        try:
            return _CHECKPOINT_LIST.validate_python(data)
        except ValidationError as e:
            raise StoreValidationError(path, e.errors(), f"Validation failed for {path}") from e

    async def load_checkpoints(self, task_id: str) -> List[Checkpoint]:
        return await asyncio.to_thread(self._load_checkpoints_sync, task_id)

    async def save_checkpoints(self, task_id: str, checkpoints: List[Checkpoint]) -> None:
        data = [cp.to_wire() for cp in checkpoints]
        await asyncio.to_thread(self._write_json, self.checkpoints_path(task_id), data)

    # -------------------------------------------------------------------
    # Iteration logs
    # -------------------------------------------------------------------
    async def write_iteration_log(self, task_id: str, iteration: int, content: str) -> str:
        path = self.iteration_log_path(task_id, iteration)
        await asyncio.to_thread(self._write_text, path, content)
        return path

    async def read_iteration_log(self, task_id: str, iteration: int) -> Optional[str]:
        path = self.iteration_log_path(task_id, iteration)

        def _read() -> Optional[str]:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return f.read()
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_read)
