from __future__ import annotations

import json
import logging
import re
import stat
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.pretty import Pretty
from rich.table import Table

from remake.cache.store import FingerprintCache
from remake.config.loader import load_plan
from remake.config.schema import PlanSpec
from remake.config.settings import merge_overrides
from remake.exec.cancel import write_cancel_request
from remake.session import Session
from remake.state.lock import cache_lock
from remake.state.model import RunState
from remake.state.store import load_state
from remake.util.errors import CacheError, PlanError, RemakeError, RunConflictError, StateError
from remake.util.path_guard import has_symlink_ancestor, is_symlink_path
from remake.util.paths import run_dir
from remake.util.tail import tail_lines

app = typer.Typer(help="Incremental build engine for Python expression and command targets")
console = Console()
err_console = Console(stderr=True)
_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RUN_ID_MAX_LEN = 128
_SYMLINK_HINT_PATTERN = re.compile(r"\bsymlink\w*\b|\bsymbolic(?:[\s_-]+)?link\w*\b", re.IGNORECASE)

HomeOpt = Annotated[Path, typer.Option("--home", envvar="REMAKE_HOME")]
WorkdirOpt = Annotated[Path | None, typer.Option("--workdir")]
VerboseOpt = Annotated[int, typer.Option("--verbose", "-v", count=True)]
PlanArg = Annotated[Path, typer.Argument(exists=True, dir_okay=False)]


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    root = logging.getLogger("remake")
    root.handlers.clear()
    root.addHandler(RichHandler(console=err_console, show_path=False, markup=False))
    root.setLevel(level)
    root.propagate = False


def _exit_code_for_state(state: RunState) -> int:
    if state.status == "SUCCESS":
        return 0
    if state.status == "CANCELED":
        return 4
    return 3


def _mentions_symlink(detail: str) -> bool:
    return _SYMLINK_HINT_PATTERN.search(detail) is not None


def _render_plan_error(exc: PlanError) -> str:
    detail = str(exc)
    if _mentions_symlink(detail):
        return "invalid plan path"
    return detail


def _render_runtime_error_detail(exc: BaseException) -> str:
    detail = str(exc)
    if _mentions_symlink(detail):
        return "invalid run path"
    return detail


def _validate_home_or_exit(home: Path) -> None:
    try:
        unsafe_home = is_symlink_path(home) or has_symlink_ancestor(home)
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2) from exc
    if unsafe_home:
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2)
    for candidate in [home, *home.parents]:
        try:
            meta = candidate.lstat()
        except FileNotFoundError:
            continue
        except (OSError, RuntimeError) as exc:
            console.print(f"[red]Invalid home:[/red] {home}")
            raise typer.Exit(2) from exc
        if stat.S_ISDIR(meta.st_mode):
            break
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2)


def _validate_run_id_or_exit(run_id: str) -> None:
    if len(run_id) > _RUN_ID_MAX_LEN or _RUN_ID_PATTERN.fullmatch(run_id) is None:
        console.print(f"[red]Invalid run_id:[/red] {run_id}")
        raise typer.Exit(2)


def _resolve_workdir_or_exit(workdir: Path | None) -> Path | None:
    if workdir is None:
        return None
    try:
        resolved = workdir.resolve()
        meta = resolved.lstat()
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2) from exc
    if not stat.S_ISDIR(meta.st_mode):
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2)
    return resolved


def _load_plan_or_exit(plan_path: Path) -> PlanSpec:
    try:
        return load_plan(plan_path)
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc


def _session_or_exit(plan_path: Path, home: Path, workdir: Path | None) -> Session:
    _validate_home_or_exit(home)
    plan = _load_plan_or_exit(plan_path)
    return Session(plan, home=home, workdir=_resolve_workdir_or_exit(workdir))


def _load_run_state_or_exit(home: Path, run_id: str) -> tuple[Path, RunState]:
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    current_run_dir = run_dir(home, run_id)
    try:
        return current_run_dir, load_state(current_run_dir)
    except (StateError, OSError, RuntimeError) as exc:
        console.print(f"[red]Failed to load state:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc


def _print_run_table(state: RunState, title: str) -> None:
    table = Table(title=title)
    table.add_column("target")
    table.add_column("status")
    table.add_column("reason")
    table.add_column("attempts", justify="right")
    table.add_column("duration_sec", justify="right")
    for name, target in state.targets.items():
        table.add_row(
            name,
            target.status,
            target.reason or "-",
            str(target.attempts),
            "-" if target.duration_sec is None else str(target.duration_sec),
        )
    console.print(table)


@app.command()
def make(
    plan_path: PlanArg,
    home: HomeOpt = Path(".remake"),
    workdir: WorkdirOpt = None,
    max_parallel: Annotated[
        int | None, typer.Option("--max-parallel", min=1, envvar="REMAKE_MAX_PARALLEL")
    ] = None,
    backend: Annotated[str | None, typer.Option("--backend", envvar="REMAKE_BACKEND")] = None,
    fail_fast: Annotated[bool | None, typer.Option("--fail-fast/--no-fail-fast")] = None,
    force: Annotated[bool, typer.Option("--force")] = False,
    target: Annotated[list[str] | None, typer.Option("--target", "-t")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
    verbose: VerboseOpt = 0,
) -> None:
    """Bring targets up to date, rebuilding only what changed."""
    _configure_logging(verbose)
    _validate_home_or_exit(home)
    plan = _load_plan_or_exit(plan_path)
    resolved_workdir = _resolve_workdir_or_exit(workdir)
    try:
        settings = merge_overrides(
            plan.settings, max_parallel=max_parallel, backend=backend, fail_fast=fail_fast
        )
        session = Session(plan, home=home, workdir=resolved_workdir, settings=settings)
        if dry_run:
            stale = session.outdated(target or None, force=force)
        else:
            with session:
                state = session.make(target or None, force=force)
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc
    except RunConflictError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(3) from exc
    except (RemakeError, OSError, RuntimeError) as exc:
        console.print(f"[red]Run execution failed:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc

    if dry_run:
        table = Table(title="Dry Run - Stale Targets")
        table.add_column("#")
        table.add_column("target")
        for idx, name in enumerate(stale, start=1):
            table.add_row(str(idx), name)
        console.print(table)
        raise typer.Exit(0)

    _print_run_table(state, f"Run: {state.run_id}")
    console.print(f"run_id: [bold]{state.run_id}[/bold]")
    console.print(f"state: [bold]{state.status}[/bold]")
    if session.last_report is not None:
        console.print(f"report: {session.last_report}")
    raise typer.Exit(_exit_code_for_state(state))


@app.command()
def outdated(
    plan_path: PlanArg,
    home: HomeOpt = Path(".remake"),
    workdir: WorkdirOpt = None,
    as_json: Annotated[bool, typer.Option("--json")] = False,
    verbose: VerboseOpt = 0,
) -> None:
    """List targets a build would rebuild, in build order."""
    _configure_logging(verbose)
    session = _session_or_exit(plan_path, home, workdir)
    try:
        stale = session.outdated()
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc
    except RemakeError as exc:
        console.print(f"[red]Failed to inspect cache:[/red] {exc}")
        raise typer.Exit(2) from exc
    if as_json:
        typer.echo(json.dumps(stale))
        raise typer.Exit(0)
    if not stale:
        console.print("all targets are up to date")
        return
    for name in stale:
        console.print(name)


@app.command()
def graph(
    plan_path: PlanArg,
    workdir: WorkdirOpt = None,
    as_json: Annotated[bool, typer.Option("--json")] = False,
    verbose: VerboseOpt = 0,
) -> None:
    """Show the dependency graph in topological order."""
    _configure_logging(verbose)
    plan = _load_plan_or_exit(plan_path)
    try:
        dependency_graph = Session(plan, workdir=_resolve_workdir_or_exit(workdir)).analyze()
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc
    data: dict[str, Any] = dependency_graph.to_dict()
    if as_json:
        typer.echo(json.dumps(data, ensure_ascii=False, indent=2))
        raise typer.Exit(0)
    table = Table(title="Dependency Graph - Topological Order")
    table.add_column("#")
    table.add_column("target")
    table.add_column("kind")
    table.add_column("upstream")
    table.add_column("files")
    for idx, node in enumerate(data["nodes"], start=1):
        files = [f"< {path}" for path in node["inputs"]] + [f"> {path}" for path in node["outputs"]]
        table.add_row(
            str(idx),
            node["name"],
            node["kind"],
            ", ".join(node["upstream"]) or "-",
            "\n".join(files) or "-",
        )
    console.print(table)


@app.command()
def status(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOpt = Path(".remake"),
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    """Show the recorded state of a run."""
    _current_run_dir, state = _load_run_state_or_exit(home, run_id)
    if as_json:
        typer.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        raise typer.Exit(0)
    console.print(f"status: [bold]{state.status}[/bold]")
    _print_run_table(state, f"Run Status: {run_id}")


@app.command()
def logs(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOpt = Path(".remake"),
    target: Annotated[str | None, typer.Option("--target")] = None,
    tail: Annotated[int, typer.Option("--tail", min=1)] = 100,
) -> None:
    """Print the tail of each target's stdout and stderr logs."""
    current_run_dir, state = _load_run_state_or_exit(home, run_id)
    names = [target] if target else list(state.targets.keys())
    missing_target = False
    for name in names:
        if name not in state.targets:
            console.print(f"[yellow]unknown target:[/yellow] {name}")
            missing_target = True
            continue
        target_state = state.targets[name]
        out_lines = (
            tail_lines(current_run_dir / target_state.stdout_path, tail)
            if target_state.stdout_path is not None
            else []
        )
        err_lines = (
            tail_lines(current_run_dir / target_state.stderr_path, tail)
            if target_state.stderr_path is not None
            else []
        )
        console.rule(f"{name} :: stdout")
        console.print("\n".join(out_lines) if out_lines else "(empty)", markup=False)
        console.rule(f"{name} :: stderr")
        console.print("\n".join(err_lines) if err_lines else "(empty)", markup=False)
    if target is not None and missing_target:
        raise typer.Exit(2)


@app.command()
def cancel(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOpt = Path(".remake"),
) -> None:
    """Ask a running build to stop dispatching and abandon in-flight targets."""
    current_run_dir, state = _load_run_state_or_exit(home, run_id)
    if state.status != "RUNNING":
        console.print(f"[yellow]run already finished:[/yellow] {state.status}")
        return
    try:
        write_cancel_request(current_run_dir)
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Failed to request cancel:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc
    console.print(f"cancel requested: [bold]{run_id}[/bold]")


@app.command()
def show(
    plan_path: PlanArg,
    name: Annotated[str, typer.Argument()],
    home: HomeOpt = Path(".remake"),
    workdir: WorkdirOpt = None,
) -> None:
    """Print the cached value of a target."""
    session = _session_or_exit(plan_path, home, workdir)
    try:
        value = session.read(name)
    except PlanError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc
    except CacheError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(3) from exc
    console.print(Pretty(value))


def _cache_or_exit(session: Session) -> tuple[FingerprintCache, Path]:
    root = session.cache_root
    if not root.is_dir():
        console.print(f"[yellow]no cache at[/yellow] {root}")
        raise typer.Exit(0)
    return FingerprintCache(root), root


@app.command()
def forget(
    plan_path: PlanArg,
    names: Annotated[list[str], typer.Argument()],
    home: HomeOpt = Path(".remake"),
    workdir: WorkdirOpt = None,
) -> None:
    """Drop cache entries so the named targets rebuild next time."""
    session = _session_or_exit(plan_path, home, workdir)
    cache, root = _cache_or_exit(session)
    try:
        with cache_lock(root, retries=5, retry_interval=0.1):
            for name in names:
                if cache.forget(name):
                    console.print(f"forgot: [bold]{name}[/bold]")
                else:
                    console.print(f"[yellow]not cached:[/yellow] {name}")
    except RunConflictError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(3) from exc
    except (CacheError, OSError) as exc:
        console.print(f"[red]Failed to update cache:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc


@app.command()
def gc(
    plan_path: PlanArg,
    home: HomeOpt = Path(".remake"),
    workdir: WorkdirOpt = None,
) -> None:
    """Remove cached objects no entry refers to."""
    session = _session_or_exit(plan_path, home, workdir)
    cache, root = _cache_or_exit(session)
    try:
        with cache_lock(root, retries=5, retry_interval=0.1):
            removed = cache.gc()
    except RunConflictError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(3) from exc
    except (CacheError, OSError) as exc:
        console.print(f"[red]Failed to collect cache:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc
    console.print(f"removed {removed} unreferenced objects")


if __name__ == "__main__":
    app()
