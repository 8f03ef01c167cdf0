import json
import os
import shlex
import subprocess
import sys
from pathlib import Path

import pytest

from storybatch.__main__ import main


REPO_ROOT = Path(__file__).resolve().parents[1]


def _write_spec(path: Path) -> Path:
    items = []
    for item_id, deps in (("A", []), ("B", []), ("C", ["A", "B"])):
        items.append(
            {
                "id": item_id,
                "title": f"Story {item_id}",
                "description": f"Implement {item_id}",
                "acceptanceCriteria": [f"{item_id} works"],
                "priority": 5,
                "executorRole": "backend",
                "dependencies": deps,
            }
        )
    payload = {"projectName": "demo", "branchLabel": "main", "description": "Demo", "items": items}
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("STORYBATCH_"):
            monkeypatch.delenv(name)


def _command(exit_code_for_b: int = 0) -> str:
    code = f"import sys; sys.stdin.read(); sys.exit({exit_code_for_b} if sys.argv[1] == 'B' else 0)"
    return shlex.join([sys.executable, "-c", code, "{id}"])


def test_plan_prints_batches(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    spec = _write_spec(tmp_path / "spec.json")

    assert main(["plan", "--spec", str(spec)]) == 0

    out = capsys.readouterr().out
    assert "Batch 1 (parallel): A, B" in out
    assert "Critical path: [A -> C]" in out


def test_plan_rejects_invalid_spec(tmp_path: Path) -> None:
    spec = tmp_path / "spec.json"
    spec.write_text("[]", encoding="utf-8")
    assert main(["plan", "--spec", str(spec)]) == 1


def test_run_status_progress_and_clear(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    spec = _write_spec(tmp_path / "spec.json")
    state = tmp_path / "state"

    assert main(["--state-dir", str(state), "run", "--spec", str(spec), "--command", _command()]) == 0
    assert "status=completed" in capsys.readouterr().out

    assert main(["--state-dir", str(state), "status"]) == 0
    assert "Progress: 3/3 items passed, 0 failed" in capsys.readouterr().out

    assert main(["--state-dir", str(state), "progress"]) == 0
    assert "C - PASSED" in capsys.readouterr().out

    assert main(["--state-dir", str(state), "run", "--spec", str(spec), "--command", _command()]) == 1

    assert main(["--state-dir", str(state), "clear"]) == 0
    capsys.readouterr()
    assert main(["--state-dir", str(state), "status"]) == 0
    assert capsys.readouterr().out.strip() == "Not started"


def test_run_exits_nonzero_when_an_item_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    spec = _write_spec(tmp_path / "spec.json")

    code = main(
        ["--state-dir", str(tmp_path / "state"), "run", "--spec", str(spec), "--command", _command(2), "--policy", "blocking"]
    )

    out = capsys.readouterr().out
    assert code == 1
    assert "Failed items: B" in out
    assert "Skipped items: C" in out


def test_run_defaults_to_spec_in_state_dir(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state = tmp_path / ".storybatch"
    state.mkdir()
    _write_spec(state / "spec.json")

    assert main(["run", "--command", _command(), "--max-iterations", "unbounded"]) == 0
    assert "Execution completed: 3/3 items passed." in capsys.readouterr().out


def test_module_entry_point_runs_end_to_end(tmp_path: Path) -> None:
    spec = _write_spec(tmp_path / "spec.json")
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join([str(REPO_ROOT / "src"), env.get("PYTHONPATH", "")])

    result = subprocess.run(
        [
            sys.executable,
            "-m",
            "storybatch",
            "--state-dir",
            str(tmp_path / "state"),
            "run",
            "--spec",
            str(spec),
            "--command",
            _command(),
        ],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert "status=completed" in result.stdout


def test_run_rejects_negative_max_concurrency(tmp_path: Path) -> None:
    spec = _write_spec(tmp_path / "spec.json")

    with pytest.raises(SystemExit) as excinfo:
        main(["run", "--spec", str(spec), "--command", _command(), "--max-concurrency", "-1"])

    assert excinfo.value.code == 2
    assert not (tmp_path / ".storybatch" / "session.json").exists()
