import json
from datetime import timedelta
from pathlib import Path

import pytest

from storybatch import (
    Bounded,
    ExecutionStateStore,
    SessionStatus,
    SpecNotFound,
    StopReason,
    Unbounded,
    WorkItem,
    WorkSpec,
    save_spec,
    spec_hash,
    update_item,
)


def _write_spec(path: Path) -> WorkSpec:
    spec = WorkSpec(
        project_name="demo",
        branch_label="main",
        description="Demo",
        items=[
            WorkItem(
                id="A",
                title="Story A",
                description="Implement A",
                acceptance_criteria=["A works"],
                priority=3,
                executor_role="backend",
            )
        ],
    )
    save_spec(spec, path)
    return spec


def test_initialize_requires_existing_spec(tmp_path: Path) -> None:
    store = ExecutionStateStore(tmp_path / "state")
    with pytest.raises(SpecNotFound):
        store.initialize(Bounded(5), tmp_path / "missing.json")
    assert not store.session_path.exists()


def test_initialize_persists_session_with_camel_case_keys(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")

    session = store.initialize(Bounded(5), spec_path)

    payload = json.loads(store.session_path.read_text(encoding="utf-8"))
    assert payload["sessionId"] == session.session_id
    assert payload["maxIterations"] == 5
    assert payload["status"] == "running"
    assert payload["completedIds"] == []
    assert "Session started" in store.read_progress()


def test_session_ids_are_unique_per_initialize(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")

    first = store.initialize(Bounded(5), spec_path).session_id
    second = store.initialize(Bounded(5), spec_path).session_id

    assert first != second


def test_unbounded_cap_round_trips(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Unbounded(), spec_path)

    reloaded = ExecutionStateStore(tmp_path / "state").load()

    assert reloaded is not None
    assert reloaded.max_iterations == "unbounded"
    assert reloaded.iteration_cap == Unbounded()


def test_load_returns_none_when_missing_or_corrupt(tmp_path: Path) -> None:
    store = ExecutionStateStore(tmp_path)
    assert store.load() is None

    store.session_path.write_text("{ definitely not json", encoding="utf-8")
    assert store.load() is None

    store.session_path.write_text(json.dumps({"sessionId": "x"}), encoding="utf-8")
    assert store.load() is None

    for bad_cap in (0, -3, "forever"):
        payload = {"sessionId": "x", "specPath": str(tmp_path / "spec.json"), "maxIterations": bad_cap}
        store.session_path.write_text(json.dumps(payload), encoding="utf-8")
        assert store.load() is None


def test_mark_item_result_records_once_and_counts_every_call(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Bounded(10), spec_path)

    store.mark_item_result("A", True)
    store.mark_item_result("A", True)
    store.mark_item_result("B", False, "tests failed")

    session = ExecutionStateStore(tmp_path / "state").load()
    assert session is not None
    assert session.completed_ids == ["A"]
    assert session.failed_ids == ["B"]
    assert session.current_iteration == 3
    progress = store.read_progress()
    assert "A - PASSED" in progress
    assert "B - FAILED: tests failed" in progress


def test_mutations_without_session_are_noops(tmp_path: Path) -> None:
    store = ExecutionStateStore(tmp_path)
    assert store.mark_item_result("A", True) is None
    assert store.set_in_progress("A") is None
    assert not store.session_path.exists()


def test_set_status_logs_reason(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Bounded(1), spec_path)

    session = store.set_status(SessionStatus.FAILED, StopReason.ITERATION_CAP)

    assert session is not None
    assert session.is_terminal
    assert session.stop_reason == StopReason.ITERATION_CAP
    lines = store.read_progress().splitlines()
    assert lines[-1].startswith("[")
    assert lines[-1].endswith("] Status changed to: failed (iteration_cap)")


def test_update_rejects_unknown_fields(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Bounded(1), spec_path)

    with pytest.raises(AttributeError):
        store.update(not_a_field=1)


def test_has_spec_changed_tracks_definition_only(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    spec = _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Bounded(5), spec_path, spec_hash=spec_hash(spec))

    assert store.has_spec_changed() is False

    update_item(spec_path, "A", passes=True, notes="done")
    assert store.has_spec_changed() is False

    spec.item("A").description = "Implement A differently"
    save_spec(spec, spec_path)
    assert store.has_spec_changed() is True

    spec_path.write_text("garbage", encoding="utf-8")
    assert store.has_spec_changed() is True


def test_validate_spec_still_exists_warns_without_failing(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Bounded(5), spec_path)

    assert store.validate_spec_still_exists() is True
    spec_path.unlink()
    assert store.validate_spec_still_exists() is False
    assert "WARNING: spec file missing" in store.read_progress()


def test_clear_removes_session_and_progress(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    store = ExecutionStateStore(tmp_path / "state")
    store.initialize(Bounded(5), spec_path)

    store.clear()

    assert not store.session_path.exists()
    assert not store.progress_path.exists()
    assert store.load() is None
    assert store.read_progress() == ""


def test_get_duration_formats_minutes_and_seconds(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.json"
    _write_spec(spec_path)
    session = ExecutionStateStore(tmp_path / "state").initialize(Bounded(5), spec_path)

    later = session.start_time + timedelta(seconds=125)

    assert ExecutionStateStore.get_duration(session, now=later) == "2m 5s"
