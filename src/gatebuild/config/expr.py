"""
Configuration expression language.

Expressions gate symbols (depends_on, default/select conditions) and build
units (activation predicates). Values are tristate: n=0, m=1, y=2.

Grammar, lowest precedence first:
    expr    := and ('||' and)*
    and     := not ('&&' not)*
    not     := '!' not | cmp
    cmp     := atom (('=' | '!=' | '<' | '<=' | '>' | '>=') atom)?
    atom    := SYMBOL | 'y' | 'm' | 'n' | "string" | NUMBER | '(' expr ')'

Declaration entries may carry a trailing condition: ``VALUE if EXPR``.
"""

import re
from dataclasses import dataclass
from typing import Any, FrozenSet, List, Optional, Protocol, Tuple

from ..errors import DeclarationError

N, M, Y = 0, 1, 2
TRISTATE_NAMES = ("n", "m", "y")
TRISTATE_VALUES = {"n": N, "m": M, "y": Y}

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>&&|\|\||!=|<=|>=|[!=<>()])
      | (?P<string>"(?:[^"\\]|\\.)*")
      | (?P<word>-?[A-Za-z0-9_]+)
    )
    """,
    re.VERBOSE,
)


class SymbolLookup(Protocol):
    """Anything expressions can be evaluated against."""

    def value(self, name: str) -> Any:
        """Current value of a symbol, or None when unset/unknown."""
        ...

    def is_tristate(self, name: str) -> bool:
        """Whether the symbol is bool/tristate (participates as n/m/y)."""
        ...


def tri_name(value: int) -> str:
    """Convert a tristate integer into 'n', 'm' or 'y'."""
    return TRISTATE_NAMES[value]


def parse_number(text: Any) -> Optional[int]:
    """Parse a decimal or 0x-prefixed hex literal, None when not numeric."""
    if isinstance(text, bool):
        return None
    if isinstance(text, int):
        return text
    if not isinstance(text, str):
        return None
    try:
        return int(text, 0)
    except ValueError:
        pass
    try:
        return int(text, 10)
    except ValueError:
        return None


class Expr:
    """Base class for expression nodes."""

    def tristate(self, lookup: SymbolLookup) -> int:
        raise NotImplementedError

    def raw(self, lookup: SymbolLookup) -> Any:
        """Value of the expression as used by string/int defaults."""
        return tri_name(self.tristate(lookup))

    def symbols(self) -> FrozenSet[str]:
        return frozenset()


@dataclass(frozen=True)
class Const(Expr):
    text: str

    def tristate(self, lookup: SymbolLookup) -> int:
        return TRISTATE_VALUES.get(self.text, N)

    def raw(self, lookup: SymbolLookup) -> Any:
        return self.text

    def __str__(self) -> str:
        if self.text in TRISTATE_VALUES or parse_number(self.text) is not None:
            return self.text
        escaped = self.text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'


@dataclass(frozen=True)
class SymbolRef(Expr):
    name: str

    def tristate(self, lookup: SymbolLookup) -> int:
        if not lookup.is_tristate(self.name):
            return N
        return TRISTATE_VALUES.get(lookup.value(self.name) or "n", N)

    def raw(self, lookup: SymbolLookup) -> Any:
        value = lookup.value(self.name)
        return "" if value is None else value

    def symbols(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def tristate(self, lookup: SymbolLookup) -> int:
        return Y - self.operand.tristate(lookup)

    def symbols(self) -> FrozenSet[str]:
        return self.operand.symbols()

    def __str__(self) -> str:
        return f"!{_wrap(self.operand)}"


@dataclass(frozen=True)
class And(Expr):
    left: Expr
    right: Expr

    def tristate(self, lookup: SymbolLookup) -> int:
        return min(self.left.tristate(lookup), self.right.tristate(lookup))

    def symbols(self) -> FrozenSet[str]:
        return self.left.symbols() | self.right.symbols()

    def __str__(self) -> str:
        return f"{_wrap(self.left, Or)} && {_wrap(self.right, Or)}"


@dataclass(frozen=True)
class Or(Expr):
    left: Expr
    right: Expr

    def tristate(self, lookup: SymbolLookup) -> int:
        return max(self.left.tristate(lookup), self.right.tristate(lookup))

    def symbols(self) -> FrozenSet[str]:
        return self.left.symbols() | self.right.symbols()

    def __str__(self) -> str:
        return f"{self.left} || {self.right}"


@dataclass(frozen=True)
class Compare(Expr):
    op: str
    left: Expr
    right: Expr

    def tristate(self, lookup: SymbolLookup) -> int:
        left = self.left.raw(lookup)
        right = self.right.raw(lookup)
        left_num = parse_number(left)
        right_num = parse_number(right)
        if left_num is not None and right_num is not None:
            a: Any = left_num
            b: Any = right_num
        else:
            a, b = str(left), str(right)

        if self.op == "=":
            result = a == b
        elif self.op == "!=":
            result = a != b
        elif self.op == "<":
            result = a < b
        elif self.op == "<=":
            result = a <= b
        elif self.op == ">":
            result = a > b
        else:
            result = a >= b
        return Y if result else N

    def symbols(self) -> FrozenSet[str]:
        return self.left.symbols() | self.right.symbols()

    def __str__(self) -> str:
        return f"{self.left} {self.op} {self.right}"


TRUE = Const("y")
FALSE = Const("n")


def _wrap(expr: Expr, *loose: type) -> str:
    if isinstance(expr, (And, Or, Compare)) and (not loose or isinstance(expr, loose)):
        return f"({expr})"
    return str(expr)


def conjunction(exprs: List[Expr]) -> Expr:
    """AND a list of expressions together (empty list is 'y')."""
    result: Optional[Expr] = None
    for expr in exprs:
        if expr == TRUE:
            continue
        result = expr if result is None else And(result, expr)
    return result if result is not None else TRUE


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise DeclarationError(f"Unexpected character at {pos} in expression: {text!r}")
        kind = match.lastgroup
        value = match.group(kind)  # type: ignore[arg-type]
        tokens.append((kind, value))  # type: ignore[arg-type]
        pos = match.end()
    return tokens


class _Parser:
    """Recursive descent parser over a token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        token = self.peek()
        if token is None:
            raise DeclarationError(f"Unexpected end of expression: {self.text!r}")
        self.pos += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.peek()
        return token is not None and token[0] == "op" and token[1] in ops

    def at_keyword(self, word: str) -> bool:
        token = self.peek()
        return token is not None and token == ("word", word)

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def parse_or(self) -> Expr:
        expr = self.parse_and()
        while self.at_op("||"):
            self.take()
            expr = Or(expr, self.parse_and())
        return expr

    def parse_and(self) -> Expr:
        expr = self.parse_not()
        while self.at_op("&&"):
            self.take()
            expr = And(expr, self.parse_not())
        return expr

    def parse_not(self) -> Expr:
        if self.at_op("!"):
            self.take()
            return Not(self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> Expr:
        left = self.parse_atom()
        if self.at_op("=", "!=", "<", "<=", ">", ">="):
            op = self.take()[1]
            return Compare(op, left, self.parse_atom())
        return left

    def parse_atom(self) -> Expr:
        kind, value = self.take()
        if kind == "op":
            if value == "(":
                expr = self.parse_or()
                if not self.at_op(")"):
                    raise DeclarationError(f"Missing ')' in expression: {self.text!r}")
                self.take()
                return expr
            raise DeclarationError(f"Unexpected '{value}' in expression: {self.text!r}")
        if kind == "string":
            return Const(re.sub(r"\\(.)", r"\1", value[1:-1]))
        if value == "if":
            raise DeclarationError(f"Unexpected 'if' in expression: {self.text!r}")
        if value in TRISTATE_VALUES or parse_number(value) is not None:
            return Const(value)
        if value[0].isdigit() or value[0] == "-":
            raise DeclarationError(f"Invalid number {value!r} in expression: {self.text!r}")
        return SymbolRef(value)

    def expect_end(self) -> None:
        if not self.at_end():
            raise DeclarationError(
                f"Unexpected trailing input {self.peek()[1]!r} in expression: {self.text!r}"  # type: ignore[index]
            )


def parse_expr(text: str) -> Expr:
    """Parse a complete expression.

    Raises:
        DeclarationError: If the text is not a valid expression
    """
    if not text or not text.strip():
        raise DeclarationError("Empty expression")
    parser = _Parser(text)
    expr = parser.parse_or()
    parser.expect_end()
    return expr


def parse_conditional(text: str) -> Tuple[Expr, Expr]:
    """Parse ``VALUE [if COND]`` into (value, condition)."""
    parser = _Parser(text)
    value = parser.parse_or()
    condition: Expr = TRUE
    if parser.at_keyword("if"):
        parser.take()
        condition = parser.parse_or()
    parser.expect_end()
    return value, condition


def parse_range(text: str) -> Tuple[Expr, Expr, Expr]:
    """Parse ``LOW HIGH [if COND]`` into (low, high, condition)."""
    parser = _Parser(text)
    low = parser.parse_atom()
    high = parser.parse_atom()
    condition: Expr = TRUE
    if parser.at_keyword("if"):
        parser.take()
        condition = parser.parse_or()
    parser.expect_end()
    return low, high, condition
