from __future__ import annotations

from pathlib import Path

import pytest

from remake import api
from remake.config.loader import parse_plan
from remake.config.schema import EngineSettings
from remake.session import Session
from remake.util.errors import CacheError, CycleError, PlanError, RemakeError, RunConflictError


def _write_plan(tmp_path: Path, body: str) -> Path:
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(body, encoding="utf-8")
    return plan_path


def test_cycle_aborts_before_anything_is_created(tmp_path: Path) -> None:
    home = tmp_path / ".remake"
    plan = parse_plan({"targets": {"a": "c + 1", "b": "a + 1", "c": "b + 1"}}, base_dir=tmp_path)
    with pytest.raises(CycleError) as exc_info:
        api.make(plan, home=home)
    assert sorted(exc_info.value.cycle) == ["a", "b", "c"]
    assert "cyclic dependencies" in str(exc_info.value)
    assert not home.exists()


def test_unknown_reference_aborts_before_anything_is_created(tmp_path: Path) -> None:
    home = tmp_path / ".remake"
    plan = parse_plan({"targets": {"a": "undefined_thing + 1"}}, base_dir=tmp_path)
    with pytest.raises(PlanError, match="undefined_thing"):
        Session(plan, home=home).open()
    assert not home.exists()


def test_make_from_yaml_file_and_read_back(tmp_path: Path) -> None:
    plan_path = _write_plan(
        tmp_path,
        "goal: numbers\n"
        "targets:\n"
        "  base: 'list(range(5))'\n"
        "  doubled: '[x * 2 for x in base]'\n",
    )
    home = tmp_path / ".remake"
    state = api.make(plan_path, home=home)
    assert state.status == "SUCCESS"
    assert state.goal == "numbers"
    assert api.read_target(plan_path, "doubled", home=home) == [0, 2, 4, 6, 8]
    assert api.outdated(plan_path, home=home) == []


def test_outdated_lists_stale_targets_without_writing(tmp_path: Path) -> None:
    plan = parse_plan({"targets": {"x": "1", "y": "x + 1"}}, base_dir=tmp_path)
    home = tmp_path / ".remake"
    assert api.outdated(plan, home=home) == ["x", "y"]
    assert not home.exists()


def test_outdated_honors_requested_targets_and_force(tmp_path: Path) -> None:
    plan = parse_plan({"targets": {"x": "1", "y": "x + 1", "other": "2"}}, base_dir=tmp_path)
    home = tmp_path / ".remake"
    session = Session(plan, home=home)
    assert session.outdated(["y"]) == ["x", "y"]
    assert api.make(plan, home=home).status == "SUCCESS"
    assert session.outdated(["y"]) == []
    assert session.outdated(["y"], force=True) == ["x", "y"]
    with pytest.raises(PlanError, match="unknown target"):
        session.outdated(["ghost"])


def test_read_target_errors(tmp_path: Path) -> None:
    plan = parse_plan({"targets": {"x": "1"}}, base_dir=tmp_path)
    with pytest.raises(PlanError, match="unknown target"):
        api.read_target(plan, "nope", home=tmp_path / ".remake")
    with pytest.raises(CacheError, match="never been built"):
        api.read_target(plan, "x", home=tmp_path / ".remake")


def test_graph_exposes_order_and_edges(tmp_path: Path) -> None:
    plan = parse_plan({"targets": {"x": "1", "y": "x + 1", "z": "x + y"}}, base_dir=tmp_path)
    graph = api.graph(plan)
    assert graph.order == ["x", "y", "z"]
    assert graph.upstream_of("z") == ["x", "y"]


def test_settings_cache_dir_is_relative_to_workdir(tmp_path: Path) -> None:
    plan = parse_plan(
        {"settings": {"cache_dir": "build-cache"}, "targets": {"x": "1"}}, base_dir=tmp_path
    )
    state = api.make(plan, home=tmp_path / ".remake")
    assert state.cache_dir == str(tmp_path.resolve() / "build-cache")
    assert (tmp_path / "build-cache" / "entries" / "x.json").is_file()


def test_explicit_settings_override_plan_settings(tmp_path: Path) -> None:
    plan = parse_plan({"settings": {"max_parallel": 3}, "targets": {"x": "1"}}, base_dir=tmp_path)
    state = api.make(plan, home=tmp_path / ".remake", settings=EngineSettings(max_parallel=1))
    assert state.max_parallel == 1


def test_second_session_on_same_cache_conflicts(tmp_path: Path) -> None:
    plan = parse_plan({"targets": {"x": "1"}}, base_dir=tmp_path)
    home = tmp_path / ".remake"
    with Session(plan, home=home):
        with pytest.raises(RunConflictError):
            Session(plan, home=home).open()
    with Session(plan, home=home) as session:
        assert session.make().status == "SUCCESS"


def test_unopened_session_properties_raise(tmp_path: Path) -> None:
    session = Session(parse_plan({"targets": {"x": "1"}}, base_dir=tmp_path))
    with pytest.raises(RemakeError, match="not open"):
        _ = session.cache
    with pytest.raises(RemakeError, match="not open"):
        _ = session.run_dir


def test_make_writes_markdown_report(tmp_path: Path) -> None:
    plan = parse_plan({"targets": {"x": "1", "bad": "x / 0"}}, base_dir=tmp_path)
    with Session(plan, home=tmp_path / ".remake") as session:
        state = session.make()
        report = session.last_report
    assert state.status == "FAILED"
    assert report is not None
    text = report.read_text(encoding="utf-8")
    assert "# Build Report" in text
    assert "### bad (FAILED)" in text
    assert "ZeroDivisionError" in text
