from __future__ import annotations

from pathlib import Path

import pytest

from action_runtime.config import load_config_dicts
from action_runtime.core.errors import InvalidArtifactIdError
from action_runtime.output import CommandOutputStore


def test_for_task_uses_default_layout(tmp_path: Path) -> None:
    store = CommandOutputStore.for_task(tmp_path / "task")
    assert store.storage_dir == tmp_path / "task" / "command-output"
    assert store.preview_bytes == 10240
    assert store.list_artifacts() == []


def test_for_task_follows_config(tmp_path: Path) -> None:
    config = load_config_dicts(
        [{"output": {"preview_size": "small", "storage_subdir": "outputs"}, "artifacts": {"chunk_size": 8}}]
    )
    store = CommandOutputStore.for_task(tmp_path, config)
    assert store.storage_dir == tmp_path / "outputs"
    assert store.preview_bytes == 5120
    assert store.reader.chunk_size == 8


def test_execution_ids_are_strictly_increasing(tmp_path: Path) -> None:
    store = CommandOutputStore(tmp_path)
    ids = [int(store.next_execution_id()) for _ in range(20)]
    assert ids == sorted(set(ids))


def test_buffer_spills_into_store_and_is_readable(tmp_path: Path) -> None:
    store = CommandOutputStore(tmp_path / "out", preview_bytes=8)
    buf = store.open_buffer(execution_id="123", command="make test")
    buf.write("first line\nsecond line\n")
    result = buf.finalize()

    assert result.artifact_id == "cmd-123.txt"
    assert store.list_artifacts() == ["cmd-123.txt"]
    page = store.reader.read("cmd-123.txt")
    assert page.content.endswith("1 | first line\n2 | second line\n3 | ")


def test_open_buffer_allocates_execution_id(tmp_path: Path) -> None:
    store = CommandOutputStore(tmp_path)
    first = store.open_buffer()
    second = store.open_buffer()
    assert int(second.execution_id) > int(first.execution_id)
    assert first.artifact_path.name == f"cmd-{first.execution_id}.txt"


def test_cleanup_except_keeps_listed_ids(tmp_path: Path) -> None:
    store = CommandOutputStore(tmp_path)
    for name in ["cmd-1.txt", "cmd-2.txt", "cmd-3.txt", "cmd-x.log", "other.txt"]:
        (tmp_path / name).write_text("x", encoding="utf-8")

    assert store.cleanup_except(["2"]) == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cmd-2.txt", "cmd-x.log", "other.txt"]

    assert store.cleanup() == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["other.txt"]


def test_cleanup_of_missing_directory_is_a_noop(tmp_path: Path) -> None:
    store = CommandOutputStore(tmp_path / "missing")
    assert store.cleanup() == 0
    assert store.cleanup_except([]) == 0
    assert store.list_artifacts() == []


@pytest.mark.parametrize("execution_id", ["../x", "abc", "1/2", "12a"])
def test_open_buffer_rejects_non_numeric_execution_ids(tmp_path: Path, execution_id: str) -> None:
    storage = tmp_path / "task" / "command-output"
    store = CommandOutputStore(storage)
    with pytest.raises(InvalidArtifactIdError):
        store.open_buffer(execution_id=execution_id)
    assert not (tmp_path / "task").exists()
