"""
Static dependency discovery.

Expressions are scanned with ``ast``; identifiers that name other targets become
edges and ``file_in(...)`` / ``file_out(...)`` markers become declared files. The
scan is conservative: anything computed at runtime (``getattr``, ``eval``, names
built from strings) is invisible here and must be declared with ``depends_on``.
"""

from __future__ import annotations

import ast
import builtins
import inspect
import os
from dataclasses import dataclass, field

from remake.cache.hashing import function_digest
from remake.config.schema import PlanSpec
from remake.dag.build import AnalyzedTarget, DependencyGraph, build_adjacency
from remake.dag.validate import assert_acyclic
from remake.util.errors import PlanError, UnknownReferenceError

FILE_IN = "file_in"
FILE_OUT = "file_out"
_MARKERS = {FILE_IN, FILE_OUT}
_BUILTIN_NAMES = frozenset(dir(builtins))


@dataclass(slots=True)
class ExpressionRefs:
    names: list[str] = field(default_factory=list)
    file_inputs: list[str] = field(default_factory=list)
    file_outputs: list[str] = field(default_factory=list)


def _marker_paths(node: ast.Call, marker: str) -> list[str]:
    paths: list[str] = []
    for arg in node.args:
        if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
            paths.append(arg.value)
        else:
            raise PlanError(f"{marker}() arguments must be string literals")
    if node.keywords:
        raise PlanError(f"{marker}() does not accept keyword arguments")
    return paths


class _FreeNameScanner(ast.NodeVisitor):
    """
    Collect free names and file markers, honoring lambda and comprehension scopes.

    The first ``iter`` of a comprehension runs in the enclosing scope; everything
    else in it, like a lambda body, sees the names it binds.
    """

    def __init__(self, refs: ExpressionRefs) -> None:
        self.refs = refs
        self.scopes: list[set[str]] = [set()]
        self.is_comprehension: list[bool] = [False]

    def _push(self, names: set[str], *, comprehension: bool) -> None:
        self.scopes.append(names)
        self.is_comprehension.append(comprehension)

    def _pop(self) -> None:
        self.scopes.pop()
        self.is_comprehension.pop()

    def _is_bound(self, name: str) -> bool:
        return any(name in scope for scope in self.scopes)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Store):
            self.scopes[-1].add(node.id)
        elif not self._is_bound(node.id) and node.id not in self.refs.names:
            self.refs.names.append(node.id)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.visit(node.value)
        # := inside a comprehension binds in the nearest non-comprehension scope
        index = len(self.scopes) - 1
        while self.is_comprehension[index]:
            index -= 1
        self.scopes[index].add(node.target.id)

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name):
            if node.func.id == FILE_IN:
                self.refs.file_inputs.extend(_marker_paths(node, FILE_IN))
            elif node.func.id == FILE_OUT:
                self.refs.file_outputs.extend(_marker_paths(node, FILE_OUT))
        self.generic_visit(node)

    def visit_Lambda(self, node: ast.Lambda) -> None:
        args = node.args
        for default in [*args.defaults, *args.kw_defaults]:
            if default is not None:
                self.visit(default)
        params = {arg.arg for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs]}
        if args.vararg is not None:
            params.add(args.vararg.arg)
        if args.kwarg is not None:
            params.add(args.kwarg.arg)
        self._push(params, comprehension=False)
        self.visit(node.body)
        self._pop()

    def _visit_comprehension(self, generators: list[ast.comprehension], *results: ast.expr) -> None:
        self.visit(generators[0].iter)
        self._push(set(), comprehension=True)
        for index, generator in enumerate(generators):
            if index > 0:
                self.visit(generator.iter)
            self.visit(generator.target)
            for condition in generator.ifs:
                self.visit(condition)
        for result in results:
            self.visit(result)
        self._pop()

    def visit_ListComp(self, node: ast.ListComp) -> None:
        self._visit_comprehension(node.generators, node.elt)

    def visit_SetComp(self, node: ast.SetComp) -> None:
        self._visit_comprehension(node.generators, node.elt)

    def visit_GeneratorExp(self, node: ast.GeneratorExp) -> None:
        self._visit_comprehension(node.generators, node.elt)

    def visit_DictComp(self, node: ast.DictComp) -> None:
        self._visit_comprehension(node.generators, node.key, node.value)


def scan_expression(expr: str) -> ExpressionRefs:
    """Return the free identifiers and file markers of ``expr`` in first-seen order."""
    try:
        tree = ast.parse(expr, mode="eval")
    except SyntaxError as exc:
        raise PlanError(f"invalid expression {expr!r}: {exc.msg}") from exc

    refs = ExpressionRefs()
    _FreeNameScanner(refs).visit(tree)
    return refs


def _normalize_path(path: str) -> str:
    return os.path.normpath(path)


def _is_tracked_callable(value: object) -> bool:
    return inspect.isroutine(value) or inspect.isclass(value)


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def analyze_plan(plan: PlanSpec, namespace: dict[str, object] | None = None) -> DependencyGraph:
    """
    Resolve every target's upstream targets, files and user functions.

    Raises UnknownReferenceError for names that are neither targets, user namespace
    entries nor builtins, PlanError for conflicting file declarations, and CycleError
    when the resulting edges are not acyclic.
    """
    namespace = namespace or {}
    names = [target.name for target in plan.targets]
    known = set(names)
    analyzed: dict[str, AnalyzedTarget] = {}

    for target in plan.targets:
        upstream: list[str] = []
        inputs = [_normalize_path(p) for p in target.inputs]
        outputs = [_normalize_path(p) for p in target.outputs]
        digests: dict[str, str] = {}
        if target.expr is not None:
            try:
                refs = scan_expression(target.expr)
            except PlanError as exc:
                raise PlanError(f"target '{target.name}': {exc}") from exc
            inputs.extend(_normalize_path(p) for p in refs.file_inputs)
            outputs.extend(_normalize_path(p) for p in refs.file_outputs)
            for ref in refs.names:
                if ref in known:
                    upstream.append(ref)
                elif ref in namespace:
                    value = namespace[ref]
                    if _is_tracked_callable(value):
                        digests[ref] = function_digest(value)
                elif ref in _MARKERS or ref in _BUILTIN_NAMES:
                    continue
                else:
                    raise UnknownReferenceError(target.name, ref)
        for dep in target.depends_on:
            if dep not in known:
                raise UnknownReferenceError(target.name, dep)
            upstream.append(dep)
        analyzed[target.name] = AnalyzedTarget(
            spec=target,
            upstream=_dedupe(upstream),
            inputs=_dedupe(inputs),
            outputs=_dedupe(outputs),
            function_digests=digests,
        )

    producers: dict[str, str] = {}
    for name in names:
        for output in analyzed[name].outputs:
            other = producers.get(output)
            if other is not None:
                raise PlanError(f"targets '{other}' and '{name}' both declare output {output}")
            producers[output] = name

    for name in names:
        target = analyzed[name]
        for path in target.inputs:
            producer = producers.get(path)
            if producer is None:
                continue
            if producer == name:
                raise PlanError(f"target '{name}' declares {path} as both input and output")
            target.produced_inputs[path] = producer
            if producer not in target.upstream:
                target.upstream.append(producer)

    rank = {name: idx for idx, name in enumerate(names)}
    for target in analyzed.values():
        target.upstream.sort(key=rank.__getitem__)

    upstream_map = {name: analyzed[name].upstream for name in names}
    dependents, in_degree = build_adjacency(names, upstream_map)
    order = assert_acyclic(names, dependents, in_degree)
    return DependencyGraph(targets=analyzed, dependents=dependents, order=order)
