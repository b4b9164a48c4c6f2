"""
Condition Evaluator Module

Boolean guard expressions evaluated against a case/document context, e.g.

    status == completed
    inspection_report.status == approved
    customer_approval.status == rejected && customer_approval.reason == price_too_high
    revised_quotation.discount > 10
    issue.type in warranty.exclusions
    device.brand in [apple, samsung]
    always

Expressions are parsed once into a small tree of frozen dataclasses
(Always, Truthy, Comparison, AllOf, AnyOf) and cached. Evaluation is pure:
a missing field never raises, it simply makes the comparison false.
ExpressionError is raised only for malformed expressions, which the
definition store rejects at validation time.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ExpressionError


class _Missing:
    """Marker for a path that does not resolve in the context"""

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()

COMPARISON_OPERATORS = ("==", "!=", ">", "<", ">=", "<=")
KEYWORD_OPERATORS = ("in", "contains")
RESERVED_WORDS = {"always", "in", "contains", "true", "false", "null"}

_TOKEN_PATTERN = re.compile(r"""
    (?P<SPACE>\s+)
  | (?P<NUMBER>-?\d+(?:\.\d+)?(?![A-Za-z_]))
  | (?P<STRING>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<OP>&&|\|\||==|!=|>=|<=|>|<)
  | (?P<LPAREN>\()
  | (?P<RPAREN>\))
  | (?P<LBRACKET>\[)
  | (?P<RBRACKET>\])
  | (?P<COMMA>,)
  | (?P<WORD>[A-Za-z_][A-Za-z0-9_.\-]*)
""", re.VERBOSE)

_NUMERIC_TEXT = re.compile(r"^\s*-?\d+(?:\.\d+)?\s*$")


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


def resolve_path(context: Any, path: str) -> Any:
    """Walk a dotted path through mappings (and list indexes); MISSING if absent"""
    current = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str) and _NUMERIC_TEXT.match(value):
        return float(value)
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def values_equal(left: Any, right: Any) -> bool:
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return _as_text(left) == _as_text(right)


def _ordered(left: Any, operator: str, right: Any) -> bool:
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        left, right = left_number, right_number
    elif not (isinstance(left, str) and isinstance(right, str)):
        return False
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    if operator == ">=":
        return left >= right
    return left <= right


def _member(item: Any, container: Any) -> bool:
    if container is MISSING or container is None:
        return False
    if isinstance(container, Mapping):
        return any(values_equal(item, key) for key in container.keys())
    if isinstance(container, (list, tuple, set, frozenset)):
        return any(values_equal(item, candidate) for candidate in container)
    if isinstance(container, str):
        return _as_text(item) in container
    return False


# Condition tree

@dataclass(frozen=True)
class Literal:
    value: Any

    def resolve(self, context: Mapping) -> Any:
        return self.value


@dataclass(frozen=True)
class FieldRef:
    path: str

    def resolve(self, context: Mapping) -> Any:
        return resolve_path(context, self.path)


@dataclass(frozen=True)
class ListLiteral:
    values: Tuple[Any, ...]

    def resolve(self, context: Mapping) -> Any:
        return self.values


Operand = Union[Literal, FieldRef, ListLiteral]


@dataclass(frozen=True)
class Always:
    def evaluate(self, context: Mapping) -> bool:
        return True


@dataclass(frozen=True)
class Truthy:
    """Bare field path: true when the value is present and truthy"""
    path: str

    def evaluate(self, context: Mapping) -> bool:
        value = resolve_path(context, self.path)
        return value is not MISSING and bool(value)


@dataclass(frozen=True)
class Comparison:
    path: str
    operator: str
    operand: Operand

    def evaluate(self, context: Mapping) -> bool:
        left = resolve_path(context, self.path)
        if left is MISSING:
            return False
        right = self.operand.resolve(context)
        if right is MISSING:
            return False

        if self.operator == "in":
            return _member(left, right)
        if self.operator == "contains":
            return _member(right, left)

        if left is None or right is None:
            # Only explicit null checks can succeed against a null value
            if self.operator == "==":
                return left is None and right is None
            if self.operator == "!=":
                return (left is None) != (right is None)
            return False

        if self.operator == "==":
            return values_equal(left, right)
        if self.operator == "!=":
            return not values_equal(left, right)
        try:
            return _ordered(left, self.operator, right)
        except TypeError:
            return False


@dataclass(frozen=True)
class AllOf:
    items: Tuple[Any, ...]

    def evaluate(self, context: Mapping) -> bool:
        return all(item.evaluate(context) for item in self.items)


@dataclass(frozen=True)
class AnyOf:
    items: Tuple[Any, ...]

    def evaluate(self, context: Mapping) -> bool:
        return any(item.evaluate(context) for item in self.items)


Condition = Union[Always, Truthy, Comparison, AllOf, AnyOf]

ALWAYS = Always()


# Parsing

def _tokenize(expression: str) -> List[_Token]:
    tokens = []
    position = 0
    while position < len(expression):
        match = _TOKEN_PATTERN.match(expression, position)
        if not match:
            raise ExpressionError(expression, position, f"Unexpected character {expression[position]!r}")
        kind = match.lastgroup
        if kind != "SPACE":
            text = match.group(kind)
            if kind == "WORD" and text in KEYWORD_OPERATORS:
                kind = "OP"
            tokens.append(_Token(kind, text, position))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ExpressionError(self.expression, len(self.expression), "Unexpected end of expression")
        self.index += 1
        return token

    def _fail(self, token: Optional[_Token], message: str) -> ExpressionError:
        position = token.position if token else len(self.expression)
        return ExpressionError(self.expression, position, message)

    def parse(self) -> Condition:
        if not self.tokens:
            raise ExpressionError(self.expression, 0, "Empty expression")
        node = self._or()
        leftover = self._peek()
        if leftover is not None:
            raise self._fail(leftover, f"Unexpected token {leftover.text!r}")
        return node

    def _or(self) -> Condition:
        items = [self._and()]
        while self._peek() is not None and self._peek().text == "||":
            self._take()
            items.append(self._and())
        return items[0] if len(items) == 1 else AnyOf(tuple(items))

    def _and(self) -> Condition:
        items = [self._term()]
        while self._peek() is not None and self._peek().text == "&&":
            self._take()
            items.append(self._term())
        return items[0] if len(items) == 1 else AllOf(tuple(items))

    def _term(self) -> Condition:
        token = self._take()
        if token.kind == "LPAREN":
            node = self._or()
            closing = self._peek()
            if closing is None or closing.kind != "RPAREN":
                raise self._fail(closing, "Missing closing parenthesis")
            self._take()
            return node
        if token.kind == "WORD" and token.text == "always":
            return ALWAYS
        if token.kind != "WORD" or token.text in RESERVED_WORDS:
            raise self._fail(token, f"Expected a field path, found {token.text!r}")

        following = self._peek()
        if following is not None and following.kind == "OP" and following.text not in ("&&", "||"):
            operator = self._take().text
            return Comparison(token.text, operator, self._operand(operator))
        return Truthy(token.text)

    def _scalar(self, token: _Token) -> Any:
        if token.kind == "NUMBER":
            return float(token.text) if "." in token.text else int(token.text)
        if token.kind == "STRING":
            return re.sub(r"\\(.)", r"\1", token.text[1:-1])
        if token.kind == "WORD":
            return {"true": True, "false": False, "null": None}.get(token.text, token.text)
        raise self._fail(token, f"Expected a value, found {token.text!r}")

    def _operand(self, operator: str) -> Operand:
        token = self._take()
        if token.kind == "LBRACKET":
            values = []
            while True:
                item = self._take()
                if item.kind == "RBRACKET" and not values:
                    break
                values.append(self._scalar(item))
                separator = self._take()
                if separator.kind == "RBRACKET":
                    break
                if separator.kind != "COMMA":
                    raise self._fail(separator, "Expected ',' or ']' in list")
            return ListLiteral(tuple(values))
        if operator == "in" and token.kind == "WORD" and token.text not in RESERVED_WORDS:
            return FieldRef(token.text)
        return Literal(self._scalar(token))


@lru_cache(maxsize=2048)
def compile_condition(expression: str) -> Condition:
    """Parse an expression into a condition tree (cached)"""
    if not isinstance(expression, str):
        raise ExpressionError(repr(expression), 0, "Expression must be a string")
    return _Parser(expression).parse()


def validate_expression(expression: str) -> List[str]:
    """Return parse errors for expression (empty list when valid)"""
    try:
        compile_condition(expression)
    except ExpressionError as e:
        return [str(e)]
    return []


def evaluate(expression: Union[str, Condition], context: Optional[Mapping]) -> bool:
    """
    Evaluate a guard expression against a context mapping.

    Raises ExpressionError only if a string expression is malformed.
    """
    condition = compile_condition(expression) if isinstance(expression, str) else expression
    return condition.evaluate(context or {})


_RULE_OPERATORS = {
    "equals": "==",
    "eq": "==",
    "not_equals": "!=",
    "ne": "!=",
    "less_than": "<",
    "lt": "<",
    "greater_than": ">",
    "gt": ">",
    "less_than_or_equal": "<=",
    "greater_than_or_equal": ">=",
    "in": "in",
    "contains": "contains",
}


def condition_from_rule(rule: Dict[str, Any]) -> Condition:
    """Build a Comparison from the structured {field, operator, value} form"""
    field_path = rule.get("field")
    operator = rule.get("operator", "equals")
    symbol = _RULE_OPERATORS.get(operator, operator if operator in COMPARISON_OPERATORS else None)
    if not field_path or not isinstance(field_path, str):
        raise ExpressionError(repr(rule), 0, "Rule condition requires a field")
    if symbol is None:
        raise ExpressionError(repr(rule), 0, f"Unknown operator {operator!r}")
    value = rule.get("value")
    if isinstance(value, (list, tuple, set)):
        return Comparison(field_path, symbol, ListLiteral(tuple(value)))
    return Comparison(field_path, symbol, Literal(value))


def to_condition(spec: Union[str, Dict[str, Any], None]) -> Condition:
    """Compile either an expression string or a structured rule; None means always"""
    if spec is None:
        return ALWAYS
    if isinstance(spec, Mapping):
        return condition_from_rule(dict(spec))
    return compile_condition(spec)


def describe(spec: Union[str, Dict[str, Any], None]) -> str:
    """Human-readable form of a condition spec for audit metadata"""
    if spec is None:
        return "always"
    if isinstance(spec, Mapping):
        return f"{spec.get('field')} {spec.get('operator', 'equals')} {spec.get('value')!r}"
    return spec
