"""Cloudflare wirefilter expression building and parsing.

Only the subset doorman itself emits is understood: comparisons,
``starts_with()``/``ends_with()`` calls, set literals, boolean fields,
``not`` and flat ``and``/``or`` chains. Anything else raises
``ExpressionSyntaxError`` so callers can decide how to degrade.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Union

COMPARISON_OPERATORS = {
    "eq": "eq",
    "==": "eq",
    "ne": "ne",
    "!=": "ne",
    "contains": "contains",
    "matches": "matches",
    "~": "matches",
    "gt": "gt",
    ">": "gt",
    "ge": "ge",
    ">=": "ge",
    "lt": "lt",
    "<": "lt",
    "le": "le",
    "<=": "le",
}
FUNCTION_OPERATORS = ("starts_with", "ends_with")
AND_TOKENS = ("and", "&&")
OR_TOKENS = ("or", "||")
NOT_TOKENS = ("not", "!")

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<symbol>==|!=|>=|<=|&&|\|\||[()\[\]{},~<>!])
  | (?P<bare>[A-Za-z0-9_.:/\-]+)
    """,
    re.VERBOSE,
)
_INTEGER = re.compile(r"^-?\d+$")
_FLOAT = re.compile(r"^-?\d+\.\d+$")


class ExpressionSyntaxError(ValueError):
    """Expression is outside the supported subset."""


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: Any
    key: str | None = None


@dataclass(frozen=True)
class BooleanField:
    field: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    operands: list["Node"] = field(default_factory=list)


@dataclass(frozen=True)
class Or:
    operands: list["Node"] = field(default_factory=list)


Node = Union[Comparison, BooleanField, Not, And, Or]


@dataclass(frozen=True)
class Bare:
    """Unquoted literal such as an IP address or CIDR range."""

    text: str


def quote(value: str) -> str:
    """Quote a string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_value(value: Any, bare: bool = False) -> str:
    """Format a literal; ``bare`` leaves strings unquoted (IP addresses)."""
    if isinstance(value, (list, tuple, set)):
        return "{" + " ".join(format_value(v, bare) for v in value) + "}"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if bare:
        return str(value)
    return quote(str(value))


def field_ref(name: str, key: str | None = None) -> str:
    """Render a field reference, with a map key when given."""
    if key is None:
        return name
    return f"{name}[{quote(key)}]"


def comparison(
    name: str, operator: str, value: Any, key: str | None = None, bare: bool = False
) -> str:
    """Render a single comparison."""
    ref = field_ref(name, key)
    if operator in FUNCTION_OPERATORS:
        return f"{operator}({ref}, {format_value(value, bare)})"
    if operator == "in":
        items = value if isinstance(value, (list, tuple)) else [value]
        return f"{ref} in {format_value(list(items), bare)}"
    return f"{ref} {operator} {format_value(value, bare)}"


def negate(expression: str) -> str:
    """Wrap an expression in ``not (...)``."""
    return f"not ({expression})"


def join(expressions: list[str], logic: str) -> str:
    """Join expressions with ``and`` or ``or``."""
    return f" {logic.lower()} ".join(expressions)


def tokenize(expression: str) -> list[str]:
    """Split an expression into tokens.

    Raises:
        ExpressionSyntaxError: On characters outside the grammar.
    """
    tokens: list[str] = []
    position = 0
    while position < len(expression):
        match = _TOKEN.match(expression, position)
        if match is None:
            raise ExpressionSyntaxError(
                f"Unexpected character {expression[position]!r} at position {position}"
            )
        if match.lastgroup != "ws":
            tokens.append(match.group())
        position = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: list[str]) -> None:
        self.tokens = tokens
        self.index = 0

    def peek(self) -> str | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def take(self, expected: str | None = None) -> str:
        token = self.peek()
        if token is None:
            raise ExpressionSyntaxError("Unexpected end of expression")
        if expected is not None and token != expected:
            raise ExpressionSyntaxError(f"Expected {expected!r}, found {token!r}")
        self.index += 1
        return token

    def parse(self) -> Node:
        node = self.parse_or()
        if self.peek() is not None:
            raise ExpressionSyntaxError(f"Unexpected token {self.peek()!r}")
        return node

    def parse_or(self) -> Node:
        operands = [self.parse_and()]
        while self.peek() in OR_TOKENS:
            self.take()
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else Or(operands)

    def parse_and(self) -> Node:
        operands = [self.parse_unary()]
        while self.peek() in AND_TOKENS:
            self.take()
            operands.append(self.parse_unary())
        return operands[0] if len(operands) == 1 else And(operands)

    def parse_unary(self) -> Node:
        if self.peek() in NOT_TOKENS:
            self.take()
            return Not(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Node:
        token = self.peek()
        if token == "(":
            self.take("(")
            node = self.parse_or()
            self.take(")")
            return node
        if token in FUNCTION_OPERATORS:
            self.take()
            self.take("(")
            name, key = self.parse_field()
            self.take(",")
            value = self.parse_value()
            self.take(")")
            return Comparison(name, token, value, key)

        name, key = self.parse_field()
        operator = self.peek()
        if operator == "in":
            self.take()
            if self.peek() != "{":
                raise ExpressionSyntaxError("Expected a set literal after 'in'")
            return Comparison(name, "in", self.parse_value(), key)
        if operator in COMPARISON_OPERATORS:
            self.take()
            return Comparison(name, COMPARISON_OPERATORS[operator], self.parse_value(), key)
        if key is None:
            return BooleanField(name)
        raise ExpressionSyntaxError(f"Expected an operator after {name}")

    def parse_field(self) -> tuple[str, str | None]:
        token = self.take()
        if not re.match(r"^[a-z_][a-z0-9_.]*$", token):
            raise ExpressionSyntaxError(f"Expected a field name, found {token!r}")
        key = None
        if self.peek() == "[":
            self.take("[")
            key = self._string(self.take())
            self.take("]")
        return token, key

    def parse_value(self) -> Any:
        token = self.peek()
        if token == "{":
            self.take("{")
            items = []
            while self.peek() != "}":
                if self.peek() is None:
                    raise ExpressionSyntaxError("Unterminated set literal")
                items.append(self.parse_value())
            self.take("}")
            return items
        token = self.take()
        if token.startswith('"'):
            return self._string(token)
        if _INTEGER.match(token):
            return int(token)
        if _FLOAT.match(token):
            return float(token)
        if token in ("true", "false"):
            return token == "true"
        if re.match(r"^[0-9a-fA-F:.]+(/\d+)?$", token):
            return Bare(token)
        raise ExpressionSyntaxError(f"Unexpected value {token!r}")

    @staticmethod
    def _string(token: str) -> str:
        if not (token.startswith('"') and token.endswith('"')):
            raise ExpressionSyntaxError(f"Expected a string, found {token!r}")
        return re.sub(r"\\(.)", r"\1", token[1:-1])


def parse(expression: str) -> Node:
    """Parse an expression into a small syntax tree.

    Raises:
        ExpressionSyntaxError: If the expression is outside the subset.
    """
    if not expression.strip():
        raise ExpressionSyntaxError("Empty expression")
    return _Parser(tokenize(expression)).parse()


def literal(value: Any) -> Any:
    """Unwrap bare literals into plain strings, recursively."""
    if isinstance(value, Bare):
        return value.text
    if isinstance(value, list):
        return [literal(v) for v in value]
    return value
