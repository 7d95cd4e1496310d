# expressions.py
"""
Condition expressions for jobs and steps.

    event == 'pull_request'
    branch =~ 'release/*' && matrix.os != 'windows-latest'
    always()
    ${{ failure() || cancelled() }}

Evaluation is a pure function of (expression, Scope). Anything the parser
does not recognise fails closed: `evaluate()` logs the problem and returns
False, it never defaults to True.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Tuple

from .errors import ConditionEvaluationError
from .model import RunContext, Status

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")
ALWAYS_RUN_FUNCTIONS = ("always", "failure", "cancelled")
CONTEXT_NAMES = ("event", "ref", "branch", "base_ref", "head_ref", "sha")

_WRAPPER = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.S)
_INTERP = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_TOKEN = re.compile(
    r"""
    \s*(?:
      (?P<op>==|!=|=~|&&|\|\||!|\(|\))
    | (?P<str>'[^']*'|"[^"]*")
    | (?P<num>-?\d+(?:\.\d+)?)
    | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)
    )""",
    re.X,
)


@dataclass(frozen=True)
class Scope:
    """
    What an expression can see.

    `statuses` are the outcomes observed so far: the dependencies of a job
    instance, or the earlier (non-skipped) steps of the same instance.
    """
    context: RunContext
    matrix: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    statuses: Tuple[Status, ...] = ()
    cancelled: bool = False

    def with_statuses(self, statuses, cancelled: bool = False) -> Scope:
        return Scope(self.context, self.matrix, self.env, tuple(statuses), cancelled)


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _strip(expr: str) -> str:
    m = _WRAPPER.match(expr)
    return m.group(1).strip() if m else expr.strip()


def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = expr.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionEvaluationError(expr, f"unexpected character at {pos}: {text[pos:pos + 10]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConditionEvaluationError(self.expr, "unexpected end of expression")
        if value is not None and tok[1] != value:
            raise ConditionEvaluationError(self.expr, f"expected {value!r}, got {tok[1]!r}")
        self.pos += 1
        return tok

    def parse(self):
        if not self.tokens:
            raise ConditionEvaluationError(self.expr, "empty expression")
        node = self._or()
        if self._peek() is not None:
            raise ConditionEvaluationError(self.expr, f"unexpected token {self._peek()[1]!r}")
        return node

    def _or(self):
        node = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            node = ("or", node, self._and())
        return node

    def _and(self):
        node = self._unary()
        while self._peek() == ("op", "&&"):
            self._take()
            node = ("and", node, self._unary())
        return node

    def _unary(self):
        if self._peek() == ("op", "!"):
            self._take()
            return ("not", self._unary())
        return self._compare()

    def _compare(self):
        left = self._primary()
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] in ("==", "!=", "=~"):
            self._take()
            return ("cmp", tok[1], left, self._primary())
        return left

    def _primary(self):
        kind, value = self._take()
        if kind == "op" and value == "(":
            node = self._or()
            self._take(")")
            return node
        if kind == "str":
            return ("lit", value[1:-1])
        if kind == "num":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "name":
            if self._peek() == ("op", "("):
                self._take()
                self._take(")")
                if value not in STATUS_FUNCTIONS:
                    raise ConditionEvaluationError(self.expr, f"unknown function {value}()")
                return ("call", value)
            if value in ("true", "false"):
                return ("lit", value == "true")
            if value == "null":
                return ("lit", None)
            if value in CONTEXT_NAMES or value.startswith(("matrix.", "env.")):
                return ("ident", value)
            raise ConditionEvaluationError(self.expr, f"unknown identifier {value!r}")
        raise ConditionEvaluationError(self.expr, f"unexpected token {value!r}")


@lru_cache(maxsize=512)
def parse(expr: str):
    """Parse an expression into a small tuple AST. Raises ConditionEvaluationError."""
    return _Parser(_strip(expr)).parse()


def _calls(node, names) -> bool:
    if node[0] == "call":
        return node[1] in names
    return any(_calls(child, names) for child in node[1:] if isinstance(child, tuple))


def uses_status_functions(expr: str | None) -> bool:
    if not expr:
        return False
    try:
        return _calls(parse(expr), STATUS_FUNCTIONS)
    except ConditionEvaluationError:
        return False


def is_always_run(expr: str | None) -> bool:
    """True when the condition may hold after a failed or cancelled dependency."""
    if not expr:
        return False
    try:
        return _calls(parse(expr), ALWAYS_RUN_FUNCTIONS)
    except ConditionEvaluationError:
        return False


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def lookup(name: str, scope: Scope) -> Any:
    if name.startswith("matrix."):
        return scope.matrix.get(name[len("matrix."):])
    if name.startswith("env."):
        return scope.env.get(name[len("env."):])
    if name == "event":
        return scope.context.event.value
    if name == "branch":
        return scope.context.branch
    if name in CONTEXT_NAMES:
        return getattr(scope.context, name)
    raise KeyError(name)


def _equal(a: Any, b: Any) -> bool:
    if a is None or b is None or isinstance(a, bool) or isinstance(b, bool):
        return a == b
    if type(a) is not type(b):
        return str(a) == str(b)
    return a == b


def _eval(node, scope: Scope) -> Any:
    tag = node[0]
    if tag == "lit":
        return node[1]
    if tag == "ident":
        return lookup(node[1], scope)
    if tag == "not":
        return not _truthy(_eval(node[1], scope))
    if tag == "and":
        return _truthy(_eval(node[1], scope)) and _truthy(_eval(node[2], scope))
    if tag == "or":
        return _truthy(_eval(node[1], scope)) or _truthy(_eval(node[2], scope))
    if tag == "cmp":
        op, left, right = node[1], _eval(node[2], scope), _eval(node[3], scope)
        if op == "==":
            return _equal(left, right)
        if op == "!=":
            return not _equal(left, right)
        if left is None or right is None:
            return False
        return fnmatch(str(left), str(right))
    if tag == "call":
        fn = node[1]
        if fn == "always":
            return True
        if fn == "cancelled":
            return scope.cancelled
        if fn == "failure":
            return any(s == Status.FAILED for s in scope.statuses)
        # success
        return not scope.cancelled and all(s == Status.SUCCEEDED for s in scope.statuses)
    raise ConditionEvaluationError(repr(node), f"unknown node {tag!r}")


def _truthy(value: Any) -> bool:
    return bool(value)


def check(expr: str | None, scope: Scope) -> bool:
    """
    Strict evaluation. A condition that calls no status function is
    implicitly guarded by success(). Raises ConditionEvaluationError.
    """
    if not expr or not _strip(expr):
        return _eval(("call", "success"), scope)
    node = parse(expr)
    if not _calls(node, STATUS_FUNCTIONS):
        node = ("and", ("call", "success"), node)
    return _truthy(_eval(node, scope))


def evaluate(expr: str | None, scope: Scope) -> bool:
    """Fail-closed evaluation: unknown predicates log and return False."""
    try:
        return check(expr, scope)
    except ConditionEvaluationError as e:
        logger.warning("condition evaluated false: %s", e)
        return False


def interpolate(text: str, scope: Scope) -> str:
    """Substitute `${{ name }}` references; unknown names render empty."""
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        try:
            value = lookup(name, scope)
        except KeyError:
            logger.warning("unknown interpolation %r in %r", name, text)
            return ""
        return "" if value is None else str(value)

    return _INTERP.sub(_sub, text)
