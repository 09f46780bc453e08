from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskline.pipeline.state import PipelineStateStore

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Checkpoints"),
]


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path / "logs")

    saved = store.save(
        12,
        completed_steps=[0, 1, 4],
        worktree_path=tmp_path / "wt",
        branch="auto/issue-12-abcdef",
    )
    loaded = store.load(12)

    assert saved is not None
    assert (tmp_path / "logs" / "issue-12-state.json").exists()
    assert loaded is not None
    assert loaded.item_number == 12
    assert loaded.completed_steps == [0, 1, 4]
    assert loaded.worktree_path == str(tmp_path / "wt")
    assert loaded.branch == "auto/issue-12-abcdef"
    assert loaded.updated_at


def test_missing_state_loads_as_none(tmp_path: Path) -> None:
    assert PipelineStateStore(tmp_path).load(99) is None


def test_corrupt_state_loads_as_none(tmp_path: Path) -> None:
    (tmp_path / "issue-5-state.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "issue-6-state.json").write_text('{"completed_steps": "0,1"}', encoding="utf-8")
    store = PipelineStateStore(tmp_path)

    assert store.load(5) is None
    assert store.load(6) is None


@pytest.mark.parametrize("content", ["null", "[0, 1]", '"text"', "42"])
def test_non_object_state_loads_as_none(tmp_path: Path, content: str) -> None:
    (tmp_path / "issue-7-state.json").write_text(content, encoding="utf-8")
    store = PipelineStateStore(tmp_path)

    assert store.load(7) is None
    assert store.list_all() == []


def test_delete_is_idempotent(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    store.save(3, completed_steps=[0])

    store.delete(3)
    store.delete(3)

    assert store.load(3) is None


@pytest.mark.parametrize("number", [-1, True, "7"])
def test_invalid_item_numbers_are_rejected(tmp_path: Path, number: object) -> None:
    with pytest.raises(ValueError, match="Invalid work item number"):
        PipelineStateStore(tmp_path).path_for(number)  # type: ignore[arg-type]


def test_save_is_best_effort(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")

    assert PipelineStateStore(blocker).save(1, completed_steps=[0]) is None


def test_list_all_skips_unreadable_files(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    store.save(2, completed_steps=[0])
    store.save(10, completed_steps=[0, 1])
    (tmp_path / "issue-4-state.json").write_text("garbage", encoding="utf-8")

    assert sorted(state.item_number for state in store.list_all()) == [2, 10]
