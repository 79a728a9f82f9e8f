# expr.py
"""
Job condition expressions.

A tiny boolean language evaluated against the run context at graph-build
time. Examples:

    branch == 'main'
    event == 'push' && !contains(message, '[skip deploy]')
    startsWith(branch, 'release/') || tag != null
    matrix.os == 'ubuntu-latest'

Expressions are parsed once into an immutable AST (the dataclasses below)
and evaluated by the pure function `evaluate`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Tuple, Union

from .errors import MALFORMED_CONDITION, config_error


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    path: Tuple[str, ...]  # ("branch",) or ("matrix", "os")


@dataclass(frozen=True)
class Not:
    operand: "Expr"


@dataclass(frozen=True)
class And:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Or:
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Compare:
    op: str  # "==" | "!="
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Call:
    func: str
    args: Tuple["Expr", ...]


Expr = Union[Literal, Name, Not, And, Or, Compare, Call]


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, str):
        return str(needle) in haystack
    return needle in haystack


def _starts_with(s: Any, prefix: Any) -> bool:
    return isinstance(s, str) and s.startswith(str(prefix))


def _ends_with(s: Any, suffix: Any) -> bool:
    return isinstance(s, str) and s.endswith(str(suffix))


FUNCTIONS: Dict[str, Callable[..., bool]] = {
    "contains": _contains,
    "startsWith": _starts_with,
    "endsWith": _ends_with,
}


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_-]*)*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    stripped = source.rstrip()
    while pos < len(stripped):
        m = _TOKEN_RE.match(stripped, pos)
        if not m or m.end() == pos:
            raise config_error(
                MALFORMED_CONDITION,
                f"Unexpected character at offset {pos}",
                expression=source,
            )
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# Parser (recursive descent)
#
#   or      := and ("||" and)*
#   and     := unary ("&&" unary)*
#   unary   := "!" unary | compare
#   compare := primary (("==" | "!=") primary)?
#   primary := literal | name | call | "(" or ")"
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def _peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            self._fail("Unexpected end of expression")
        self.pos += 1
        return tok

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok == ("op", op):
            self.pos += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            self._fail(f"Expected '{op}'")

    def _fail(self, message: str):
        raise config_error(MALFORMED_CONDITION, message, expression=self.source)

    def parse(self) -> Expr:
        if not self.tokens:
            self._fail("Empty expression")
        node = self._or()
        if self._peek() is not None:
            self._fail(f"Unexpected token {self._peek()[1]!r}")
        return node

    def _or(self) -> Expr:
        node = self._and()
        while self._accept("||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Expr:
        node = self._unary()
        while self._accept("&&"):
            node = And(node, self._unary())
        return node

    def _unary(self) -> Expr:
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self) -> Expr:
        node = self._primary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.pos += 1
            node = Compare(tok[1], node, self._primary())
        return node

    def _primary(self) -> Expr:
        kind, text = self._take()
        if kind == "string":
            body = text[1:-1]
            return Literal(re.sub(r"\\(.)", r"\1", body))
        if kind == "number":
            return Literal(float(text) if "." in text else int(text))
        if kind == "op" and text == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "name":
            if text in _KEYWORDS:
                return Literal(_KEYWORDS[text])
            if self._accept("("):
                if text not in FUNCTIONS:
                    self._fail(f"Unknown function {text!r}")
                args: List[Expr] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return Call(text, tuple(args))
            return Name(tuple(text.split(".")))
        self._fail(f"Unexpected token {text!r}")


def parse(source: str) -> Expr:
    """Parse a condition into its AST. Raises ConfigError(MalformedCondition)."""
    return _Parser(source).parse()


# ---------------------------------------------------------------------
# Evaluation (pure)
# ---------------------------------------------------------------------

def _lookup(ctx: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    cur: Any = ctx
    for part in path:
        if not isinstance(cur, Mapping) or part not in cur:
            return None
        cur = cur[part]
    return cur


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return bool(value)


def _value(node: Expr, ctx: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return _lookup(ctx, node.path)
    if isinstance(node, Not):
        return not _truthy(_value(node.operand, ctx))
    if isinstance(node, And):
        return _truthy(_value(node.left, ctx)) and _truthy(_value(node.right, ctx))
    if isinstance(node, Or):
        return _truthy(_value(node.left, ctx)) or _truthy(_value(node.right, ctx))
    if isinstance(node, Compare):
        left, right = _value(node.left, ctx), _value(node.right, ctx)
        # matrix values may be numbers while literals are strings ("3.11" vs 3.11)
        if left is not None and right is not None and type(left) is not type(right):
            left, right = str(left), str(right)
        equal = left == right
        return equal if node.op == "==" else not equal
    if isinstance(node, Call):
        args = [_value(a, ctx) for a in node.args]
        try:
            return FUNCTIONS[node.func](*args)
        except TypeError as e:
            raise config_error(
                MALFORMED_CONDITION,
                f"Bad arguments for {node.func}(): {e}",
                function=node.func,
            ) from e
    raise TypeError(f"Unknown expression node: {node!r}")


def evaluate(node: Expr, ctx: Mapping[str, Any]) -> bool:
    """Evaluate a parsed condition against a run context mapping."""
    return _truthy(_value(node, ctx))


def check(source: str | None, ctx: Mapping[str, Any]) -> bool:
    """Parse + evaluate; an absent condition is always true."""
    if source is None or not source.strip():
        return True
    return evaluate(parse(source), ctx)
