from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Tuple, Union

from .errors import CompileFailure, EvalFailure
from .models import PowerEvent

logger = logging.getLogger("shutdownd.policy")

# ─────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────

INT = "int"
BOOL = "bool"
STRING = "string"

ExprType = Union[str, Tuple[str, str]]  # scalar name, or ("list", scalar)
Compiled = Callable[[Mapping[str, Any]], Any]

POLICY_SCHEMA: Dict[str, str] = {
    "powerType": INT,
    "online": BOOL,
    "scope": STRING,
}

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_WORD_SUBS = {"true": "True", "false": "False"}
_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_OPERAND_RE = re.compile(r"[A-Za-z0-9_]+(?:\.[0-9]+)?")


def _type_name(t: ExprType) -> str:
    if isinstance(t, tuple):
        return f"list({t[1]})"
    return t


# ─────────────────────────────────────────────
# Source normalisation
# ─────────────────────────────────────────────

def _string_end(text: str, i: int) -> int:
    """Index just past the string literal opening at text[i]."""
    quote = text[i]
    j = i + 1
    while j < len(text) and text[j] != quote:
        j += 2 if text[j] == "\\" else 1
    return min(j + 1, len(text))


def _group_end(text: str, i: int) -> int:
    """Index just past the bracket group opening at text[i]."""
    depth = 0
    j = i
    while j < len(text):
        ch = text[j]
        if ch in ("'", '"'):
            j = _string_end(text, j)
            continue
        if ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return j


def _operand_end(text: str, i: int) -> int:
    """
    Index just past the unary operand starting at or after text[i]: a
    literal, name, or bracket group plus any trailing call, index or member
    access. `!` binds this tightly in CEL, tighter than any binary operator.
    """
    n = len(text)
    while i < n and text[i].isspace():
        i += 1
    if i >= n:
        return i
    ch = text[i]
    if (ch == "!" and text[i : i + 2] != "!=") or ch == "-":
        return _operand_end(text, i + 1)
    if ch in ("'", '"'):
        j = _string_end(text, i)
    elif ch in "([":
        j = _group_end(text, i)
    else:
        m = _OPERAND_RE.match(text, i)
        if m is None:
            return i
        j = m.end()
    while j < n:
        if text[j] in "([":
            j = _group_end(text, j)
        elif text[j] == "." and _WORD_RE.match(text, j + 1):
            j = _WORD_RE.match(text, j + 1).end()
        else:
            break
    return j


def _normalise(text: str) -> str:
    """
    Rewrite CEL-style operators into Python spelling, leaving string
    literals alone: `&&` -> and, `||` -> or, `!x` -> (not x), true/false ->
    True/False. Newlines outside literals become spaces.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in ("'", '"'):
            j = _string_end(text, i)
            out.append(text[i:j])
            i = j
            continue
        pair = text[i : i + 2]
        if pair == "&&":
            out.append(" and ")
            i += 2
        elif pair == "||":
            out.append(" or ")
            i += 2
        elif ch == "!" and pair != "!=":
            end = _operand_end(text, i + 1)
            out.append(f" (not {_normalise(text[i + 1 : end])}) ")
            i = end
        elif ch in "\r\n":
            out.append(" ")
            i += 1
        else:
            m = _WORD_RE.match(text, i)
            if m is not None:
                word = m.group(0)
                out.append(_WORD_SUBS.get(word, word))
                i = m.end()
            else:
                out.append(ch)
                i += 1
    return "".join(out).strip()


# ─────────────────────────────────────────────
# Checker / compiler
# ─────────────────────────────────────────────

def _check_int64(value: int) -> int:
    if value < _INT64_MIN or value > _INT64_MAX:
        raise EvalFailure("integer overflow")
    return value


def _int_div(a: int, b: int) -> int:
    if b == 0:
        raise EvalFailure("division by zero")
    q = abs(a) // abs(b)
    return _check_int64(q if (a >= 0) == (b >= 0) else -q)


def _int_mod(a: int, b: int) -> int:
    if b == 0:
        raise EvalFailure("modulus by zero")
    return a - b * _int_div(a, b)


_ARITH = {
    ast.Add: lambda a, b: _check_int64(a + b),
    ast.Sub: lambda a, b: _check_int64(a - b),
    ast.Mult: lambda a, b: _check_int64(a * b),
    ast.Div: _int_div,
    ast.FloorDiv: _int_div,
    ast.Mod: _int_mod,
}

_ORDERING = {
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
}


class _Checker:
    """Walks a parsed expression, type-checks it and builds a closure tree."""

    def __init__(self, schema: Mapping[str, str]) -> None:
        self.schema = schema

    def build(self, node: ast.AST) -> Tuple[ExprType, Compiled]:
        method = getattr(self, f"_build_{type(node).__name__}", None)
        if method is None:
            raise CompileFailure(f"unsupported syntax: {type(node).__name__}")
        return method(node)

    def _build_Constant(self, node: ast.Constant) -> Tuple[ExprType, Compiled]:
        value = node.value
        if isinstance(value, bool):
            t: ExprType = BOOL
        elif isinstance(value, int):
            t = INT
        elif isinstance(value, str):
            t = STRING
        else:
            raise CompileFailure(f"unsupported literal: {value!r}")
        return t, lambda _vars: value

    def _build_Name(self, node: ast.Name) -> Tuple[ExprType, Compiled]:
        name = node.id
        if name not in self.schema:
            raise CompileFailure(f"undeclared reference to '{name}'")
        return self.schema[name], lambda vars_: vars_[name]

    def _build_BoolOp(self, node: ast.BoolOp) -> Tuple[ExprType, Compiled]:
        fns = []
        for operand in node.values:
            t, fn = self.build(operand)
            if t != BOOL:
                raise CompileFailure(f"logical operator expects bool operands, got {_type_name(t)}")
            fns.append(fn)
        if isinstance(node.op, ast.And):
            return BOOL, lambda vars_: all(fn(vars_) for fn in fns)
        return BOOL, lambda vars_: any(fn(vars_) for fn in fns)

    def _build_UnaryOp(self, node: ast.UnaryOp) -> Tuple[ExprType, Compiled]:
        t, fn = self.build(node.operand)
        if isinstance(node.op, ast.Not):
            if t != BOOL:
                raise CompileFailure(f"'!' expects a bool operand, got {_type_name(t)}")
            return BOOL, lambda vars_: not fn(vars_)
        if isinstance(node.op, (ast.USub, ast.UAdd)) and t == INT:
            if isinstance(node.op, ast.USub):
                return INT, lambda vars_: _check_int64(-fn(vars_))
            return INT, fn
        raise CompileFailure(f"unsupported unary operator on {_type_name(t)}")

    def _build_BinOp(self, node: ast.BinOp) -> Tuple[ExprType, Compiled]:
        lt, lfn = self.build(node.left)
        rt, rfn = self.build(node.right)
        if isinstance(node.op, ast.Add) and lt == rt == STRING:
            return STRING, lambda vars_: lfn(vars_) + rfn(vars_)
        op = _ARITH.get(type(node.op))
        if op is None or lt != INT or rt != INT:
            raise CompileFailure(
                f"no matching overload for {type(node.op).__name__}({_type_name(lt)}, {_type_name(rt)})"
            )
        return INT, lambda vars_: op(lfn(vars_), rfn(vars_))

    def _build_Compare(self, node: ast.Compare) -> Tuple[ExprType, Compiled]:
        if len(node.ops) != 1:
            raise CompileFailure("chained comparisons are not supported")
        op = node.ops[0]
        lt, lfn = self.build(node.left)
        rt, rfn = self.build(node.comparators[0])

        if isinstance(op, (ast.In, ast.NotIn)):
            if rt != ("list", lt):
                raise CompileFailure(f"'in' expects list({_type_name(lt)}), got {_type_name(rt)}")
            if isinstance(op, ast.In):
                return BOOL, lambda vars_: lfn(vars_) in rfn(vars_)
            return BOOL, lambda vars_: lfn(vars_) not in rfn(vars_)

        if lt != rt:
            raise CompileFailure(f"cannot compare {_type_name(lt)} with {_type_name(rt)}")
        if isinstance(op, ast.Eq):
            return BOOL, lambda vars_: lfn(vars_) == rfn(vars_)
        if isinstance(op, ast.NotEq):
            return BOOL, lambda vars_: lfn(vars_) != rfn(vars_)
        cmp = _ORDERING.get(type(op))
        if cmp is None or lt not in (INT, STRING):
            raise CompileFailure(f"unsupported comparison {type(op).__name__} on {_type_name(lt)}")
        return BOOL, lambda vars_: cmp(lfn(vars_), rfn(vars_))

    def _build_List(self, node: ast.List | ast.Tuple) -> Tuple[ExprType, Compiled]:
        if not node.elts:
            raise CompileFailure("empty list literal has no element type")
        built = [self.build(e) for e in node.elts]
        elem_type = built[0][0]
        if isinstance(elem_type, tuple) or any(t != elem_type for t, _ in built):
            raise CompileFailure("list literal elements must share one scalar type")
        fns = [fn for _, fn in built]
        return ("list", elem_type), lambda vars_: tuple(fn(vars_) for fn in fns)

    _build_Tuple = _build_List


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class PolicyExpression:
    name: str
    source: str
    result_type: ExprType
    _fn: Compiled = field(repr=False, compare=False)

    def evaluate(self, event: PowerEvent) -> bool:
        try:
            out = self._fn(event.policy_vars())
        except EvalFailure as e:
            raise EvalFailure(f"failed to evaluate {self.name} '{self.source}': {e.message}") from e
        except (ArithmeticError, TypeError, ValueError, KeyError) as e:
            raise EvalFailure(f"failed to evaluate {self.name} '{self.source}': {e}") from e
        if not isinstance(out, bool):
            raise EvalFailure(f"{self.name} '{self.source}' produced {type(out).__name__}, not bool")
        return out


def compile_policy(
    text: str,
    schema: Mapping[str, str] = POLICY_SCHEMA,
    *,
    name: str = "expression",
) -> PolicyExpression:
    """
    Parse and type-check `text` against `schema`.

    The result type must be bool. Raises CompileFailure otherwise; callers
    treat that as a startup error.
    """
    source = (text or "").strip()
    if not source:
        raise CompileFailure(f"{name} is empty")
    try:
        tree = ast.parse(_normalise(source), mode="eval")
    except SyntaxError as e:
        raise CompileFailure(f"failed to compile {name} '{source}': {e.msg}") from e

    try:
        result_type, fn = _Checker(schema).build(tree.body)
    except CompileFailure as e:
        raise CompileFailure(f"failed to compile {name} '{source}': {e.message}") from e

    if result_type != BOOL:
        raise CompileFailure(f"{name} '{source}' does not return a boolean (got {_type_name(result_type)})")

    logger.debug("Compiled %s: %s", name, source)
    return PolicyExpression(name=name, source=source, result_type=result_type, _fn=fn)


def evaluate(expr: PolicyExpression, event: PowerEvent) -> bool:
    return expr.evaluate(event)
