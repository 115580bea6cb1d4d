from __future__ import annotations

import json
import re
import subprocess
import sys
import time
from pathlib import Path


def _write_plan(path: Path, content: str) -> None:
    path.write_text(content.strip() + "\n", encoding="utf-8")


def _remake(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "remake.cli", *args],
        capture_output=True,
        text=True,
        check=False,
    )


def _extract_run_id(output: str) -> str:
    match = re.search(r"run_id:\s*([0-9]{8}_[0-9]{6}_[0-9a-f]{6})", output)
    assert match is not None, output
    return match.group(1)


NUMBERS_PLAN = """
goal: numbers
targets:
  base: "list(range(4))"
  total: "sum(base)"
"""


def test_cli_dry_run_lists_stale_targets_and_writes_nothing(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    _write_plan(plan_path, NUMBERS_PLAN)

    proc = _remake("make", str(plan_path), "--home", str(home), "--dry-run")
    assert proc.returncode == 0, proc.stdout + proc.stderr
    assert "Dry Run" in proc.stdout
    assert "base" in proc.stdout
    assert "total" in proc.stdout
    assert not home.exists()


def test_cli_dry_run_respects_target_and_force(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    _write_plan(plan_path, NUMBERS_PLAN + "  unrelated: \"42\"\n")

    proc = _remake("make", str(plan_path), "--home", str(home), "-t", "total", "--dry-run")
    assert proc.returncode == 0, proc.stdout + proc.stderr
    assert "total" in proc.stdout
    assert "unrelated" not in proc.stdout

    built = _remake("make", str(plan_path), "--home", str(home))
    assert built.returncode == 0, built.stdout + built.stderr
    forced = _remake(
        "make", str(plan_path), "--home", str(home), "-t", "base", "--force", "--dry-run"
    )
    assert forced.returncode == 0, forced.stdout + forced.stderr
    assert "base" in forced.stdout
    assert "total" not in forced.stdout
    assert "unrelated" not in forced.stdout


def test_cli_make_then_rerun_skips_everything(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    _write_plan(plan_path, NUMBERS_PLAN)

    first = _remake("make", str(plan_path), "--home", str(home))
    assert first.returncode == 0, first.stdout + first.stderr
    assert "state: SUCCESS" in first.stdout

    second = _remake("make", str(plan_path), "--home", str(home))
    assert second.returncode == 0
    run_id = _extract_run_id(second.stdout)
    state = json.loads((home / "runs" / run_id / "state.json").read_text(encoding="utf-8"))
    assert {t["status"] for t in state["targets"].values()} == {"SKIPPED"}

    outdated = _remake("outdated", str(plan_path), "--home", str(home), "--json")
    assert outdated.returncode == 0
    assert json.loads(outdated.stdout) == []

    shown = _remake("show", str(plan_path), "total", "--home", str(home))
    assert shown.returncode == 0
    assert "6" in shown.stdout


def test_cli_make_failure_returns_three_and_records_logs(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    _write_plan(
        plan_path,
        """
targets:
  bad: "1 / 0"
  after: "bad + 1"
""",
    )

    proc = _remake("make", str(plan_path), "--home", str(home))
    assert proc.returncode == 3
    run_id = _extract_run_id(proc.stdout)

    status = _remake("status", run_id, "--home", str(home), "--json")
    assert status.returncode == 0
    payload = json.loads(status.stdout)
    assert payload["status"] == "FAILED"
    assert payload["targets"]["after"]["status"] == "FAILED_UPSTREAM"

    logs = _remake("logs", run_id, "--home", str(home), "--target", "bad")
    assert logs.returncode == 0
    assert "ZeroDivisionError" in logs.stdout

    report = home / "runs" / run_id / "report" / "final_report.md"
    assert "### bad (FAILED)" in report.read_text(encoding="utf-8")

    unbuilt = _remake("show", str(plan_path), "bad", "--home", str(home))
    assert unbuilt.returncode == 3


def test_cli_cycle_is_reported_as_plan_error(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    _write_plan(
        plan_path,
        """
targets:
  a: "b + 1"
  b: "a + 1"
""",
    )
    proc = _remake("make", str(plan_path), "--home", str(home))
    assert proc.returncode == 2
    assert "cyclic" in proc.stdout
    assert not home.exists()


def test_cli_graph_json_lists_nodes_in_order(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    _write_plan(plan_path, NUMBERS_PLAN)
    proc = _remake("graph", str(plan_path), "--json")
    assert proc.returncode == 0
    data = json.loads(proc.stdout)
    assert [node["name"] for node in data["nodes"]] == ["base", "total"]
    assert data["edges"] == [{"from": "base", "to": "total"}]


def test_cli_forget_makes_target_outdated_again(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    _write_plan(plan_path, NUMBERS_PLAN)
    assert _remake("make", str(plan_path), "--home", str(home)).returncode == 0

    forget = _remake("forget", str(plan_path), "total", "--home", str(home))
    assert forget.returncode == 0
    assert "forgot" in forget.stdout

    outdated = _remake("outdated", str(plan_path), "--home", str(home), "--json")
    assert json.loads(outdated.stdout) == ["total"]

    gc = _remake("gc", str(plan_path), "--home", str(home))
    assert gc.returncode == 0
    assert "removed 1 unreferenced objects" in gc.stdout


def test_cli_cancel_stops_running_build(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.yaml"
    home = tmp_path / ".remake"
    sleep_cmd = json.dumps([sys.executable, "-c", "import time; time.sleep(30)"])
    _write_plan(
        plan_path,
        f"""
targets:
  - name: sleeper
    cmd: {sleep_cmd}
  - name: after
    expr: "1"
    depends_on: ["sleeper"]
""",
    )
    make = subprocess.Popen(
        [sys.executable, "-m", "remake.cli", "make", str(plan_path), "--home", str(home)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        runs_dir = home / "runs"
        deadline = time.monotonic() + 20
        run_id: str | None = None
        while time.monotonic() < deadline:
            states = list(runs_dir.glob("*/state.json")) if runs_dir.is_dir() else []
            if states:
                payload = json.loads(states[0].read_text(encoding="utf-8"))
                if payload["targets"]["sleeper"]["status"] == "RUNNING":
                    run_id = states[0].parent.name
                    break
            time.sleep(0.1)
        assert run_id is not None

        cancel = _remake("cancel", run_id, "--home", str(home))
        assert cancel.returncode == 0
        assert "cancel requested" in cancel.stdout

        stdout, _stderr = make.communicate(timeout=20)
    finally:
        if make.poll() is None:
            make.kill()
            make.wait()
    assert make.returncode == 4, stdout
    assert "state: CANCELED" in stdout

    again = _remake("cancel", run_id, "--home", str(home))
    assert again.returncode == 0
    assert "already finished" in again.stdout
