"""Single-variable conversion formulas.

A formula such as ``x * 0.1 + 4`` or ``sqrt(x) * 2`` is parsed into an
operator tree and evaluated by walking that tree. Only numeric literals, the
variable ``x``, the constants ``pi`` and ``e``, arithmetic operators and the
functions listed in ``_FUNCTIONS`` are accepted; nothing in a formula is ever
handed to the interpreter for execution. ``math.<fn>`` and ``Math.<fn>`` are
accepted as spellings of the same functions.

Validation happens once, when a formula is saved: the textual denylist and
the tree whitelist are checked, then the formula is probed at ``x = 1.0``.
Runtime evaluation still guards every call, since one probe value does not
cover the whole domain.
"""

from __future__ import annotations

import ast
import math
import re
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from sensorbridge.services.errors import ConversionError, FormulaValidationError

VARIABLE_NAME = "x"
PROBE_VALUE = 1.0
DEFAULT_MAX_LENGTH = 512
DEFAULT_MAX_NODES = 256
DEFAULT_TIMEOUT_MS = 50

CODE_SYNTAX_ERROR = "syntax_error"
CODE_PROHIBITED_TOKEN = "prohibited_token"
CODE_UNSUPPORTED_CONSTRUCT = "unsupported_construct"
CODE_MISSING_VARIABLE = "missing_variable"
CODE_EVALUATION_ERROR = "evaluation_error"
CODE_NON_FINITE_RESULT = "non_finite_result"

_PROHIBITED_TOKENS = (
    "require",
    "import",
    "eval",
    "exec",
    "compile",
    "Function",
    "constructor",
    "prototype",
    "process",
    "child_process",
    "subprocess",
    "spawn",
    "os",
    "sys",
    "fs",
    "open",
    "globals",
    "locals",
    "getattr",
    "setattr",
    "delattr",
    "builtins",
    "lambda",
    "breakpoint",
)
_PROHIBITED_PATTERN = re.compile(r"\b(" + "|".join(re.escape(token) for token in _PROHIBITED_TOKENS) + r")\b")
_MATH_NAMESPACES = frozenset({"math", "Math"})

_CONSTANTS: dict[str, float] = {
    "pi": math.pi,
    "e": math.e,
}


def _round(value: float, ndigits: float = 0.0) -> float:
    return float(round(value, int(ndigits)))


def _log(value: float, base: float | None = None) -> float:
    if base is None:
        return math.log(value)
    return math.log(value, base)


# name -> (callable, min args, max args)
_FUNCTIONS: dict[str, tuple[Callable[..., float], int, int]] = {
    "sqrt": (math.sqrt, 1, 1),
    "log": (_log, 1, 2),
    "log10": (math.log10, 1, 1),
    "log2": (math.log2, 1, 1),
    "exp": (math.exp, 1, 1),
    "pow": (math.pow, 2, 2),
    "abs": (abs, 1, 1),
    "min": (min, 2, 8),
    "max": (max, 2, 8),
    "round": (_round, 1, 2),
    "floor": (math.floor, 1, 1),
    "ceil": (math.ceil, 1, 1),
    "sin": (math.sin, 1, 1),
    "cos": (math.cos, 1, 1),
    "tan": (math.tan, 1, 1),
    "asin": (math.asin, 1, 1),
    "acos": (math.acos, 1, 1),
    "atan": (math.atan, 1, 1),
    "atan2": (math.atan2, 2, 2),
    "hypot": (math.hypot, 2, 2),
    "degrees": (math.degrees, 1, 1),
    "radians": (math.radians, 1, 1),
}

_BINARY_OPERATORS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: lambda left, right: left + right,
    ast.Sub: lambda left, right: left - right,
    ast.Mult: lambda left, right: left * right,
    ast.Div: lambda left, right: left / right,
    ast.FloorDiv: lambda left, right: left // right,
    ast.Mod: lambda left, right: left % right,
    ast.Pow: math.pow,
}

_UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[float], float]] = {
    ast.UAdd: lambda operand: +operand,
    ast.USub: lambda operand: -operand,
}


@dataclass(frozen=True)
class FormulaValidationResult:
    ok: bool
    reason: str | None = None
    code: str | None = None
    probe_value: float | None = None
    probe_result: float | None = None


class _Budget:
    __slots__ = ("_deadline", "_remaining")

    def __init__(self, *, timeout_ms: int, max_steps: int):
        self._deadline = time.monotonic() + timeout_ms / 1000.0
        self._remaining = max_steps

    def tick(self) -> None:
        self._remaining -= 1
        if self._remaining < 0:
            raise ConversionError("formula evaluation exceeded its step budget")
        if time.monotonic() > self._deadline:
            raise ConversionError("formula evaluation timed out")


class CompiledFormula:
    """A whitelisted operator tree ready for evaluation. Immutable and thread safe."""

    def __init__(self, source: str, tree: ast.Expression, node_count: int):
        self.source = source
        self._tree = tree
        self._node_count = node_count

    def evaluate(self, x: float, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> float:
        budget = _Budget(timeout_ms=timeout_ms, max_steps=self._node_count * 2 + 8)
        try:
            result = self._eval(self._tree.body, float(x), budget)
        except ConversionError:
            raise
        except (ArithmeticError, ValueError, TypeError) as exc:
            raise ConversionError(f"formula failed at x={x!r}: {exc}", raw_value=x) from exc

        if not isinstance(result, float) or not math.isfinite(result):
            raise ConversionError(
                f"formula produced a non-finite result at x={x!r}: {result!r}",
                raw_value=x,
            )
        return result

    def _eval(self, node: ast.AST, x: float, budget: _Budget) -> float:
        budget.tick()
        if isinstance(node, ast.Constant):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id == VARIABLE_NAME:
                return x
            return _CONSTANTS[node.id]
        if isinstance(node, ast.Attribute):
            return _CONSTANTS[node.attr.lower()]
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](self._eval(node.operand, x, budget))
        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, x, budget)
            right = self._eval(node.right, x, budget)
            return float(_BINARY_OPERATORS[type(node.op)](left, right))
        if isinstance(node, ast.Call):
            function, _min_args, _max_args = _FUNCTIONS[_function_name(node.func)]
            args = [self._eval(arg, x, budget) for arg in node.args]
            return float(function(*args))
        raise TypeError(f"unexpected node {type(node).__name__}")


def compile_formula(
    formula: str,
    *,
    max_length: int = DEFAULT_MAX_LENGTH,
    max_nodes: int = DEFAULT_MAX_NODES,
) -> CompiledFormula:
    return _compile_cached(formula.strip() if isinstance(formula, str) else formula, max_length, max_nodes)


@lru_cache(maxsize=512)
def _compile_cached(formula: str, max_length: int, max_nodes: int) -> CompiledFormula:
    if not isinstance(formula, str) or formula == "":
        raise FormulaValidationError("Formula is empty", code=CODE_SYNTAX_ERROR, formula=formula)
    if len(formula) > max_length:
        raise FormulaValidationError(
            f"Formula is longer than {max_length} characters",
            code=CODE_SYNTAX_ERROR,
            formula=formula,
        )

    prohibited = _find_prohibited_token(formula)
    if prohibited is not None:
        raise FormulaValidationError(
            f"Formula contains prohibited token '{prohibited}'",
            code=CODE_PROHIBITED_TOKEN,
            formula=formula,
        )

    try:
        tree = ast.parse(formula, mode="eval")
    except SyntaxError as exc:
        position = f" at column {exc.offset}" if exc.offset else ""
        raise FormulaValidationError(
            f"Syntax error in formula{position}: {exc.msg}",
            code=CODE_SYNTAX_ERROR,
            formula=formula,
        ) from exc
    except (ValueError, RecursionError, MemoryError) as exc:
        raise FormulaValidationError(
            f"Formula could not be parsed: {exc}",
            code=CODE_SYNTAX_ERROR,
            formula=formula,
        ) from exc

    node_count = 0
    uses_variable = False
    for node in ast.walk(tree):
        node_count += 1
        if node_count > max_nodes:
            raise FormulaValidationError(
                f"Formula is too complex (more than {max_nodes} elements)",
                code=CODE_UNSUPPORTED_CONSTRUCT,
                formula=formula,
            )
        if isinstance(node, ast.Name) and node.id == VARIABLE_NAME:
            uses_variable = True

    _check_node(tree.body, formula)

    if not uses_variable:
        raise FormulaValidationError(
            f"Formula must reference the variable '{VARIABLE_NAME}'",
            code=CODE_MISSING_VARIABLE,
            formula=formula,
        )

    return CompiledFormula(formula, tree, node_count)


def validate_formula(
    formula: str,
    *,
    max_length: int = DEFAULT_MAX_LENGTH,
    max_nodes: int = DEFAULT_MAX_NODES,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> FormulaValidationResult:
    try:
        compiled = compile_formula(formula, max_length=max_length, max_nodes=max_nodes)
    except FormulaValidationError as exc:
        return FormulaValidationResult(ok=False, reason=exc.reason, code=exc.code)

    try:
        result = compiled.evaluate(PROBE_VALUE, timeout_ms=timeout_ms)
    except ConversionError as exc:
        code = CODE_NON_FINITE_RESULT if "non-finite" in exc.detail else CODE_EVALUATION_ERROR
        prefix = (
            "Formula result is not a finite number"
            if code == CODE_NON_FINITE_RESULT
            else "Formula could not be evaluated"
        )
        return FormulaValidationResult(
            ok=False,
            reason=f"{prefix} at {VARIABLE_NAME}={PROBE_VALUE}: {exc.detail}",
            code=code,
            probe_value=PROBE_VALUE,
        )

    return FormulaValidationResult(ok=True, probe_value=PROBE_VALUE, probe_result=result)


def allowed_functions() -> list[str]:
    return sorted(_FUNCTIONS)


def _find_prohibited_token(formula: str) -> str | None:
    if "__" in formula:
        return "__"
    match = _PROHIBITED_PATTERN.search(formula)
    if match is None:
        return None
    return match.group(1)


def _check_node(node: ast.AST, formula: str) -> None:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise _unsupported(f"literal {node.value!r} is not a number", formula)
        return
    if isinstance(node, ast.Name):
        if node.id != VARIABLE_NAME and node.id not in _CONSTANTS:
            raise _unsupported(
                f"unknown name '{node.id}' (only '{VARIABLE_NAME}', 'pi' and 'e' are available)",
                formula,
            )
        return
    if isinstance(node, ast.Attribute):
        if not (
            isinstance(node.value, ast.Name)
            and node.value.id in _MATH_NAMESPACES
            and node.attr.lower() in _CONSTANTS
        ):
            raise _unsupported(f"attribute access '{ast.unparse(node)}' is not allowed", formula)
        return
    if isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPERATORS:
            raise _unsupported(f"operator '{type(node.op).__name__}' is not allowed", formula)
        _check_node(node.operand, formula)
        return
    if isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY_OPERATORS:
            raise _unsupported(f"operator '{type(node.op).__name__}' is not allowed", formula)
        _check_node(node.left, formula)
        _check_node(node.right, formula)
        return
    if isinstance(node, ast.Call):
        name = _function_name(node.func)
        if name is None or name not in _FUNCTIONS:
            raise _unsupported(
                f"function '{ast.unparse(node.func)}' is not allowed (available: {', '.join(allowed_functions())})",
                formula,
            )
        if node.keywords:
            raise _unsupported(f"keyword arguments to '{name}' are not allowed", formula)
        _function, min_args, max_args = _FUNCTIONS[name]
        if not min_args <= len(node.args) <= max_args:
            raise _unsupported(
                f"function '{name}' takes {min_args}..{max_args} arguments, got {len(node.args)}",
                formula,
            )
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise _unsupported("argument unpacking is not allowed", formula)
            _check_node(arg, formula)
        return
    raise _unsupported(f"'{type(node).__name__}' expressions are not allowed", formula)


def _function_name(func: ast.AST) -> str | None:
    if isinstance(func, ast.Name):
        return func.id
    if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name) and func.value.id in _MATH_NAMESPACES:
        return func.attr
    return None


def _unsupported(detail: str, formula: str) -> FormulaValidationError:
    return FormulaValidationError(
        f"Unsupported construct in formula: {detail}",
        code=CODE_UNSUPPORTED_CONSTRUCT,
        formula=formula,
    )
