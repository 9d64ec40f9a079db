"""
File Store Tests
================
Round-trips through the on-disk .battleloop/ layout using tmp_path.
"""
import asyncio
import json

import pytest

from battleloop.core.errors import StoreFileNotFoundError, StoreValidationError, TaskNotFoundError
from battleloop.models.battle import create_battle
from battleloop.models.battle_config import BattleConfig
from battleloop.models.checkpoint import Checkpoint
from battleloop.models.progress import create_initial_progress
from battleloop.models.task import PRD, Task
from battleloop.services.file_store import FileStore


@pytest.fixture
def store(tmp_path):
    return FileStore(str(tmp_path))


def _write_prd(store, *tasks):
    asyncio.run(store.save_prd(PRD(project_name="demo", tasks=list(tasks))))


def test_missing_config_yields_defaults(store):
    config = asyncio.run(store.load_config())
    assert config == BattleConfig()


def test_config_read_from_yaml(store, tmp_path):
    state = tmp_path / ".battleloop"
    state.mkdir()
    (state / "config.yaml").write_text(
        "maxIterationsPerTask: 4\n"
        "mode: yolo\n"
        "feedbackLoops: [test]\n"
        "feedbackCommands:\n"
        "  test: pytest -q\n"
        "retention:\n"
        "  maxCheckpoints: 3\n"
    )
    config = asyncio.run(store.load_config())
    assert config.max_iterations_per_task == 4
    assert config.mode == "yolo"
    assert config.feedback_commands == {"test": "pytest -q"}
    assert config.retention.max_checkpoints == 3


def test_config_round_trip(store):
    async def run_test():
        await store.save_config(BattleConfig(mode="yolo", auto_commit=False))
        return await store.load_config()

    config = asyncio.run(run_test())
    assert config.mode == "yolo"
    assert config.auto_commit is False


def test_invalid_yaml_raises_validation_error(store, tmp_path):
    state = tmp_path / ".battleloop"
    state.mkdir()
    (state / "config.yaml").write_text("mode: [unclosed\n")
    with pytest.raises(StoreValidationError):
        asyncio.run(store.load_config())


def test_load_prd_missing_raises(store):
    with pytest.raises(StoreFileNotFoundError):
        asyncio.run(store.load_prd())
    assert asyncio.run(store.get_task("001")) is None


def test_update_task_status(store):
    _write_prd(store, Task(id="001", title="One"))

    async def run_test():
        await store.update_task_status("001", "in_progress")
        return await store.get_task("001")

    assert asyncio.run(run_test()).status == "in_progress"


def test_update_unknown_task_raises(store):
    _write_prd(store, Task(id="001", title="One"))
    with pytest.raises(TaskNotFoundError):
        asyncio.run(store.update_task_status("404", "failed"))


def test_progress_written_as_camel_case(store, tmp_path):
    async def run_test():
        await store.ensure_battle_folder("001")
        progress = create_initial_progress("001")
        progress.current_iteration = 2
        await store.save_progress(progress)
        return await store.load_progress("001")

    loaded = asyncio.run(run_test())
    assert loaded.current_iteration == 2

    raw = json.loads((tmp_path / ".battleloop" / "battles" / "001" / "progress.json").read_text())
    assert raw["taskId"] == "001"
    assert raw["currentIteration"] == 2


def test_missing_progress_and_battle_are_none(store):
    assert asyncio.run(store.load_progress("001")) is None
    assert asyncio.run(store.read_progress_raw("001")) is None
    assert asyncio.run(store.load_battle("001")) is None
    assert asyncio.run(store.load_checkpoints("001")) == []


def test_corrupt_progress_raises(store, tmp_path):
    folder = tmp_path / ".battleloop" / "battles" / "001"
    folder.mkdir(parents=True)
    (folder / "progress.json").write_text("{half")
    with pytest.raises(StoreValidationError):
        asyncio.run(store.load_progress("001"))


def test_battle_and_checkpoints_round_trip(store):
    async def run_test():
        battle = create_battle("001")
        battle.status = "running"
        await store.save_battle(battle)
        await store.save_checkpoints("001", [
            Checkpoint(id="cp-1-a", battle_id="001", after_iteration=0,
                       storage_type="patch", base_commit_hash="abc"),
        ])
        return await store.load_battle("001"), await store.load_checkpoints("001")

    battle, checkpoints = asyncio.run(run_test())
    assert battle.status == "running"
    assert checkpoints[0].base_commit_hash == "abc"


def test_iteration_log(store, tmp_path):
    path = asyncio.run(store.write_iteration_log("001", 3, "agent output"))
    assert path.endswith("iteration-3.txt")
    assert asyncio.run(store.read_iteration_log("001", 3)) == "agent output"
    assert asyncio.run(store.read_iteration_log("001", 4)) is None


def test_task_id_cannot_escape_state_dir(store):
    with pytest.raises(StoreValidationError):
        store.battle_dir("../outside")
