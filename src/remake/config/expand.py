"""Expand template targets (``map``/``cross``/``combine``) into concrete targets."""

from __future__ import annotations

import ast
import itertools
import re
from dataclasses import dataclass, field, replace
from typing import Literal

from remake.config.schema import TargetSpec
from remake.util.errors import PlanError
from remake.util.ids import sanitize_name_part

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SCALAR_TYPES = (str, int, float, bool, type(None))

TransformKind = Literal["map", "cross"]


@dataclass(slots=True)
class Transform:
    kind: TransformKind
    params: dict[str, list[object]]


@dataclass(slots=True)
class TargetEntry:
    """A parsed plan entry before expansion."""

    spec: TargetSpec
    transform: Transform | None = None
    combine: str | None = None
    instances: list[tuple[str, dict[str, object]]] = field(default_factory=list)


def _combinations(name: str, transform: Transform) -> list[dict[str, object]]:
    params = list(transform.params)
    columns = [transform.params[param] for param in params]
    if transform.kind == "map":
        lengths = {len(column) for column in columns}
        if len(lengths) != 1:
            raise PlanError(f"target '{name}' map values must all have the same length")
        rows = zip(*columns)
    else:
        rows = itertools.product(*columns)
    return [dict(zip(params, row)) for row in rows]


def _instance_name(template: str, combo: dict[str, object]) -> str:
    parts = [sanitize_name_part(value) for value in combo.values()]
    return "_".join([template, *parts])


class _Substitute(ast.NodeTransformer):
    def __init__(self, replacements: dict[str, ast.expr]) -> None:
        self.replacements = replacements

    def visit_Name(self, node: ast.Name) -> ast.AST:
        if isinstance(node.ctx, ast.Load) and node.id in self.replacements:
            return ast.copy_location(self.replacements[node.id], node)
        return node


def _value_node(value: object, known_names: set[str]) -> ast.expr:
    if isinstance(value, str) and value in known_names:
        return ast.Name(id=value, ctx=ast.Load())
    return ast.Constant(value=value)


def _rewrite_expr(expr: str, replacements: dict[str, ast.expr], *, target: str) -> str:
    try:
        tree = ast.parse(expr, mode="eval")
    except SyntaxError as exc:
        raise PlanError(f"target '{target}' expr is not a valid expression: {exc.msg}") from exc
    rewritten = ast.fix_missing_locations(_Substitute(replacements).visit(tree))
    return ast.unparse(rewritten)


def _format_text(text: str, values: dict[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), text)


def _rename(names: list[str], mapping: dict[str, list[str]]) -> list[str]:
    renamed: list[str] = []
    for name in names:
        for replacement in mapping.get(name, [name]):
            if replacement not in renamed:
                renamed.append(replacement)
    return renamed


def _instantiate(
    entry: TargetEntry, name: str, combo: dict[str, object], known_names: set[str]
) -> TargetSpec:
    spec = entry.spec
    text_values = {param: str(value) for param, value in combo.items()}
    references = {
        param: [value]
        for param, value in combo.items()
        if isinstance(value, str) and value in known_names
    }
    expr = spec.expr
    if expr is not None:
        nodes = {param: _value_node(value, known_names) for param, value in combo.items()}
        expr = _rewrite_expr(expr, nodes, target=spec.name)
    cmd = [_format_text(part, text_values) for part in spec.cmd] if spec.cmd is not None else None
    return replace(
        spec,
        name=name,
        expr=expr,
        cmd=cmd,
        depends_on=_rename(spec.depends_on, references),
        inputs=[_format_text(path, text_values) for path in spec.inputs],
        outputs=[_format_text(path, text_values) for path in spec.outputs],
        cwd=_format_text(spec.cwd, text_values) if spec.cwd is not None else None,
        group=spec.name,
    )


def _combined(entry: TargetEntry, members: list[str]) -> TargetSpec:
    spec = entry.spec
    group = entry.combine
    assert group is not None
    expr = spec.expr
    if expr is not None:
        node = ast.List(elts=[ast.Name(id=m, ctx=ast.Load()) for m in members], ctx=ast.Load())
        expr = _rewrite_expr(expr, {group: node}, target=spec.name)
    cmd: list[str] | None = None
    if spec.cmd is not None:
        cmd = []
        for part in spec.cmd:
            if part == f"{{{group}}}":
                cmd.extend(members)
            else:
                cmd.append(_format_text(part, {group: " ".join(members)}))
    depends_on = _rename(spec.depends_on, {group: members})
    if spec.cmd is not None:
        depends_on = _rename([*depends_on, *members], {})
    return replace(spec, expr=expr, cmd=cmd, depends_on=depends_on)


def _validate_transform(entry: TargetEntry) -> None:
    spec = entry.spec
    transform = entry.transform
    if transform is None:
        return
    if entry.combine is not None:
        raise PlanError(f"target '{spec.name}' cannot use combine together with {transform.kind}")
    if not transform.params:
        raise PlanError(f"target '{spec.name}' {transform.kind} must define parameters")
    for param, values in transform.params.items():
        if not param.isidentifier():
            raise PlanError(f"target '{spec.name}' {transform.kind} parameter must be identifier")
        if not values:
            raise PlanError(f"target '{spec.name}' {transform.kind}.{param} must not be empty")
        if any(not isinstance(value, _SCALAR_TYPES) for value in values):
            raise PlanError(
                f"target '{spec.name}' {transform.kind}.{param} values must be scalars"
            )


def expand_targets(entries: list[TargetEntry]) -> list[TargetSpec]:
    """
    Turn plan entries into concrete targets, keeping declaration order.

    Each expanded instance is an ordinary target with its own name and fingerprint;
    ``group`` records the template it came from so ``combine`` can gather it later.
    """
    for entry in entries:
        _validate_transform(entry)

    known_names = {entry.spec.name for entry in entries if entry.transform is None}
    groups: dict[str, list[str]] = {}
    for entry in entries:
        if entry.transform is None:
            continue
        entry.instances = [
            (_instance_name(entry.spec.name, combo), combo)
            for combo in _combinations(entry.spec.name, entry.transform)
        ]
        names = [name for name, _ in entry.instances]
        groups[entry.spec.name] = names
        known_names.update(names)

    expanded: list[TargetSpec] = []
    seen: set[str] = set()

    def _add(spec: TargetSpec) -> None:
        if spec.name in seen:
            raise PlanError(f"expanded target name collides with another target: {spec.name}")
        seen.add(spec.name)
        expanded.append(spec)

    for entry in entries:
        if entry.transform is not None:
            for name, combo in entry.instances:
                _add(_instantiate(entry, name, combo, known_names))
        elif entry.combine is not None:
            members = groups.get(entry.combine)
            if members is None:
                raise PlanError(
                    f"target '{entry.spec.name}' combines unknown group '{entry.combine}'"
                )
            _add(_combined(entry, members))
        else:
            _add(entry.spec)
    return expanded
