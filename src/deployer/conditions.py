"""Stage condition expressions in the Azure DevOps syntax.

Supported grammar::

    expr     := literal | variable | function
    literal  := 'single quoted' | number | true | false | null
    variable := variables['Name'] | variables.Name
    function := name '(' [expr (',' expr)*] ')'

Functions: and, or, not, xor, eq, ne, gt, ge, lt, le, startsWith,
endsWith, contains, in, notIn, succeeded, failed, succeededOrFailed,
always, canceled.

String comparisons are case-insensitive. The right-hand operand of a
comparison is converted to the type of the left-hand operand.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

DEFAULT_CONDITION = "succeeded()"

# Stage results as reported by the pipeline; kept as strings here so this
# module has no dependency on the pipeline model
RESULT_SUCCEEDED = "Succeeded"
RESULT_FAILED = "Failed"

MAX_CONDITION_LENGTH = 4096
MAX_NESTING_DEPTH = 32

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<string>'(?:[^']|'')*')
    |(?P<number>-?\d+(?:\.\d+)?)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_.\-]*)
    |(?P<punct>[(),\[\]])
    """,
    re.VERBOSE,
)


class ConditionError(Exception):
    """Raised when a condition cannot be parsed or evaluated."""

    pass


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[Any, ...] = ()


# name -> (min args, max args or None for unbounded)
_ARITY: dict[str, tuple[int, int | None]] = {
    "and": (2, None),
    "or": (2, None),
    "not": (1, 1),
    "xor": (2, 2),
    "eq": (2, 2),
    "ne": (2, 2),
    "gt": (2, 2),
    "ge": (2, 2),
    "lt": (2, 2),
    "le": (2, 2),
    "startswith": (2, 2),
    "endswith": (2, 2),
    "contains": (2, 2),
    "in": (2, None),
    "notin": (2, None),
    "succeeded": (0, None),
    "failed": (0, None),
    "succeededorfailed": (0, None),
    "always": (0, 0),
    "canceled": (0, 0),
}

_STATUS_FUNCTIONS = frozenset({"succeeded", "failed", "succeededorfailed"})


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    length = len(expression)

    while position < length:
        if expression[position].isspace():
            position += 1
            continue
        match = _TOKEN_PATTERN.match(expression, position)
        if not match:
            raise ConditionError(
                f"Unexpected character '{expression[position]}' at position {position}"
            )
        kind = match.lastgroup or ""
        tokens.append(Token(kind=kind, text=match.group(), position=position))
        position = match.end()

    return tokens


class _Parser:
    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = tokenize(expression)
        self._index = 0

    def parse(self) -> Any:
        if not self._tokens:
            raise ConditionError("Condition is empty")
        node = self._expr(depth=0)
        if self._index != len(self._tokens):
            token = self._tokens[self._index]
            raise ConditionError(f"Unexpected '{token.text}' at position {token.position}")
        return node

    def _peek(self) -> Token | None:
        return self._tokens[self._index] if self._index < len(self._tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise ConditionError(f"Unexpected end of condition: {self._expression}")
        self._index += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._next()
        if token.text != text:
            raise ConditionError(
                f"Expected '{text}' at position {token.position}, found '{token.text}'"
            )

    def _expr(self, depth: int) -> Any:
        if depth > MAX_NESTING_DEPTH:
            raise ConditionError(f"Condition nesting exceeds {MAX_NESTING_DEPTH} levels")

        token = self._next()
        if token.kind == "string":
            return Literal(token.text[1:-1].replace("''", "'"))
        if token.kind == "number":
            return Literal(float(token.text) if "." in token.text else int(token.text))
        if token.kind != "ident":
            raise ConditionError(f"Unexpected '{token.text}' at position {token.position}")

        lowered = token.text.lower()
        if lowered in ("true", "false"):
            return Literal(lowered == "true")
        if lowered == "null":
            return Literal(None)
        if lowered == "variables":
            self._expect("[")
            name_token = self._next()
            if name_token.kind != "string":
                raise ConditionError(
                    f"Variable index must be a quoted name at position {name_token.position}"
                )
            self._expect("]")
            return Variable(name_token.text[1:-1].replace("''", "'"))
        if lowered.startswith("variables."):
            return Variable(token.text[len("variables."):])

        return self._call(token, depth)

    def _call(self, token: Token, depth: int) -> Call:
        name = token.text.lower()
        if name not in _ARITY:
            raise ConditionError(f"Unknown function '{token.text}' at position {token.position}")

        self._expect("(")
        args: list[Any] = []
        following = self._peek()
        if following is not None and following.text == ")":
            self._next()
        else:
            while True:
                args.append(self._expr(depth + 1))
                separator = self._next()
                if separator.text == ")":
                    break
                if separator.text != ",":
                    raise ConditionError(
                        f"Expected ',' or ')' at position {separator.position}, "
                        f"found '{separator.text}'"
                    )

        minimum, maximum = _ARITY[name]
        if len(args) < minimum or (maximum is not None and len(args) > maximum):
            if maximum is None:
                expected = f"at least {minimum}"
            elif minimum == maximum:
                expected = str(minimum)
            else:
                expected = f"{minimum} to {maximum}"
            raise ConditionError(
                f"Function '{token.text}' expects {expected} argument(s), got {len(args)}"
            )
        if name in _STATUS_FUNCTIONS and not all(
            isinstance(a, Literal) and isinstance(a.value, str) for a in args
        ):
            raise ConditionError(f"Function '{token.text}' only accepts stage names")

        return Call(name=name, args=tuple(args))


def parse_condition(expression: str | None) -> Any:
    """Parse a condition into an expression tree.

    An empty or missing condition means ``succeeded()``.

    Raises:
        ConditionError: If the expression is malformed.
    """
    text = (expression or "").strip() or DEFAULT_CONDITION
    if len(text) > MAX_CONDITION_LENGTH:
        raise ConditionError(f"Condition exceeds {MAX_CONDITION_LENGTH} characters")
    return _Parser(text).parse()


def referenced_stages(node: Any) -> set[str]:
    """Stage names passed to status functions anywhere in an expression tree."""
    if not isinstance(node, Call):
        return set()
    names: set[str] = set()
    if node.name in _STATUS_FUNCTIONS:
        names.update(a.value for a in node.args)
    for arg in node.args:
        names |= referenced_stages(arg)
    return names


@dataclass
class ConditionContext:
    """State a stage condition is evaluated against."""

    dependencies: Mapping[str, str] = field(default_factory=dict)
    variables: Mapping[str, str] = field(default_factory=dict)
    canceled: bool = False

    def variable(self, name: str) -> str | None:
        # Variable names are case-insensitive
        lowered = name.lower()
        for key, value in self.variables.items():
            if key.lower() == lowered:
                return value
        return None

    def dependency_results(self, names: tuple[str, ...]) -> list[str]:
        if not names:
            return list(self.dependencies.values())
        results = []
        for name in names:
            match = next((v for k, v in self.dependencies.items() if k.lower() == name.lower()), None)
            if match is None:
                raise ConditionError(f"'{name}' is not a dependency of this stage")
            results.append(match)
        return results


# =============================================================================
# Type conversions
# =============================================================================


def to_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value) != ""


def to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError as e:
        raise ConditionError(f"Cannot convert '{value}' to a number") from e


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool):
        return left == to_bool(right)
    if _is_number(left):
        return float(left) == to_number(right)
    if left is None:
        return right is None or to_string(right) == ""
    return to_string(left).lower() == to_string(right).lower()


def _order(left: Any, right: Any) -> int:
    if _is_number(left) or isinstance(left, bool):
        a, b = to_number(left), to_number(right)
    else:
        a, b = to_string(left).lower(), to_string(right).lower()  # type: ignore[assignment]
    return (a > b) - (a < b)


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(node: Any, context: ConditionContext) -> Any:
    """Evaluate an expression tree to a value."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Variable):
        return context.variable(node.name)
    if not isinstance(node, Call):
        raise ConditionError(f"Invalid expression node: {node!r}")

    name = node.name

    if name == "and":
        return all(to_bool(evaluate(a, context)) for a in node.args)
    if name == "or":
        return any(to_bool(evaluate(a, context)) for a in node.args)

    if name in _STATUS_FUNCTIONS or name in ("always", "canceled"):
        return _status(name, tuple(a.value for a in node.args), context)

    values = [evaluate(a, context) for a in node.args]

    if name == "not":
        return not to_bool(values[0])
    if name == "xor":
        return to_bool(values[0]) != to_bool(values[1])
    if name == "eq":
        return _equals(values[0], values[1])
    if name == "ne":
        return not _equals(values[0], values[1])
    if name == "gt":
        return _order(values[0], values[1]) > 0
    if name == "ge":
        return _order(values[0], values[1]) >= 0
    if name == "lt":
        return _order(values[0], values[1]) < 0
    if name == "le":
        return _order(values[0], values[1]) <= 0
    if name == "startswith":
        return to_string(values[0]).lower().startswith(to_string(values[1]).lower())
    if name == "endswith":
        return to_string(values[0]).lower().endswith(to_string(values[1]).lower())
    if name == "contains":
        return to_string(values[1]).lower() in to_string(values[0]).lower()
    if name == "in":
        return any(_equals(values[0], v) for v in values[1:])
    if name == "notin":
        return not any(_equals(values[0], v) for v in values[1:])

    raise ConditionError(f"Unknown function '{name}'")


def _status(name: str, stages: tuple[str, ...], context: ConditionContext) -> bool:
    if name == "always":
        return True
    if name == "canceled":
        return context.canceled
    if name == "succeededorfailed":
        # Skipped or canceled dependencies still block the stage
        results = context.dependency_results(stages)
        return not context.canceled and all(
            r in (RESULT_SUCCEEDED, RESULT_FAILED) for r in results
        )

    results = context.dependency_results(stages)
    if name == "succeeded":
        return not context.canceled and all(r == RESULT_SUCCEEDED for r in results)
    # failed
    return any(r == RESULT_FAILED for r in results)


def evaluate_condition(expression: str | None, context: ConditionContext) -> bool:
    """Parse and evaluate a condition to a boolean.

    Raises:
        ConditionError: If the condition is malformed or cannot be evaluated.
    """
    return to_bool(evaluate(parse_condition(expression), context))
