"""Condition language for campaign eligibility rules.

Expressions such as ``subtotal >= 100 and (segment in ["vip", "gold"] or first_order = true)``
are compiled once into an immutable tree of tagged nodes and evaluated many times
against a read-only :class:`EvaluationContext`. Nothing in the tree is executable
source; evaluation walks the nodes and performs one comparison per leaf.
"""

from __future__ import annotations

import enum
import operator
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Callable, Mapping, Union

from promo_engine.core.errors import ConditionSyntaxError


class FieldType(str, enum.Enum):
    number = "number"
    string = "string"
    boolean = "boolean"
    set = "set"


FIELDS: dict[str, FieldType] = {
    "subtotal": FieldType.number,
    "item_count": FieldType.number,
    "categories": FieldType.set,
    "products": FieldType.set,
    "tags": FieldType.set,
    "segment": FieldType.string,
    "city": FieldType.string,
    "day_of_week": FieldType.number,
    "hour_of_day": FieldType.number,
    "first_order": FieldType.boolean,
    "order_count": FieldType.number,
    "campaign_uses": FieldType.number,
}

_KEYWORDS = {"and", "or", "not", "in", "contains", "true", "false"}

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}
_ORDERING = {"<", "<=", ">", ">="}

_TOKEN_RE = re.compile(
    r"""
    (?P<number>-?\d+(?:\.\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<op>==|!=|<=|>=|=|<|>)
    |(?P<punct>[()\[\],])
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class EvaluationContext:
    """Read-only view of an order as seen by condition predicates."""

    subtotal: Decimal
    item_count: int
    categories: frozenset[str]
    products: frozenset[str]
    tags: frozenset[str]
    segment: str | None
    city: str | None
    timestamp: datetime
    first_order: bool
    order_count: int
    campaign_uses: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def value_of(self, name: str, campaign_id: str | None) -> Any:
        if name == "day_of_week":
            return self._utc_timestamp().isoweekday()
        if name == "hour_of_day":
            return self._utc_timestamp().hour
        if name == "campaign_uses":
            return int(self.campaign_uses.get(str(campaign_id), 0)) if campaign_id is not None else 0
        return getattr(self, name)

    def _utc_timestamp(self) -> datetime:
        ts = self.timestamp
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class Const:
    value: bool


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Membership:
    field: str
    values: tuple[Any, ...]
    negated: bool = False


@dataclass(frozen=True)
class Contains:
    field: str
    value: Any


@dataclass(frozen=True)
class And:
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


Node = Union[Const, Compare, Membership, Contains, And, Or, Not]


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    length = len(source)
    while pos < length:
        if source[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ConditionSyntaxError(f"Unexpected character {source[pos]!r}", position=pos)
        kind = match.lastgroup or ""
        text = match.group(kind)
        if kind == "name" and text.lower() in _KEYWORDS:
            tokens.append(Token("keyword", text.lower(), pos))
        else:
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionSyntaxError("Condition is empty")
        node = self._or_expr()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionSyntaxError(f"Unexpected token {token.value!r}", position=token.pos)
        return node

    def _peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self, expected: str) -> Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(f"Unexpected end of condition, expected {expected}", position=len(self.source))
        self.index += 1
        return token

    def _accept(self, kind: str, value: str | None = None) -> Token | None:
        token = self._peek()
        if token is not None and token.kind == kind and (value is None or token.value == value):
            self.index += 1
            return token
        return None

    def _expect(self, kind: str, value: str) -> Token:
        token = self._next(repr(value))
        if token.kind != kind or token.value != value:
            raise ConditionSyntaxError(f"Expected {value!r}, got {token.value!r}", position=token.pos)
        return token

    def _or_expr(self) -> Node:
        operands = [self._and_expr()]
        while self._accept("keyword", "or"):
            operands.append(self._and_expr())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and_expr(self) -> Node:
        operands = [self._not_expr()]
        while self._accept("keyword", "and"):
            operands.append(self._not_expr())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not_expr(self) -> Node:
        if self._accept("keyword", "not"):
            return Not(self._not_expr())
        return self._primary()

    def _primary(self) -> Node:
        if self._accept("punct", "("):
            node = self._or_expr()
            self._expect("punct", ")")
            return node
        if self._accept("keyword", "true"):
            return Const(True)
        if self._accept("keyword", "false"):
            return Const(False)
        return self._test()

    def _test(self) -> Node:
        token = self._next("a field name")
        if token.kind != "name":
            raise ConditionSyntaxError(f"Expected a field name, got {token.value!r}", position=token.pos)
        name = token.value.lower()
        field_type = FIELDS.get(name)
        if field_type is None:
            raise ConditionSyntaxError(f"Unknown field {token.value!r}", position=token.pos)

        op_token = self._next("an operator")
        if op_token.kind == "op":
            op = "==" if op_token.value == "=" else op_token.value
            if field_type == FieldType.set:
                raise ConditionSyntaxError(f"Field {name!r} is a set; use 'in' or 'contains'", position=op_token.pos)
            if op in _ORDERING and field_type != FieldType.number:
                raise ConditionSyntaxError(f"Operator {op_token.value!r} needs a numeric field", position=op_token.pos)
            return Compare(name, op, self._literal(field_type))
        if op_token.kind == "keyword" and op_token.value == "contains":
            if field_type != FieldType.set:
                raise ConditionSyntaxError(f"'contains' needs a set field, {name!r} is not", position=op_token.pos)
            return Contains(name, self._literal(field_type))
        negated = False
        if op_token.kind == "keyword" and op_token.value == "not":
            negated = True
            op_token = self._next("'in'")
        if op_token.kind == "keyword" and op_token.value == "in":
            if field_type == FieldType.boolean:
                raise ConditionSyntaxError(f"'in' is not supported for boolean field {name!r}", position=op_token.pos)
            return Membership(name, self._list(field_type), negated)
        raise ConditionSyntaxError(f"Expected an operator, got {op_token.value!r}", position=op_token.pos)

    def _list(self, field_type: FieldType) -> tuple[Any, ...]:
        self._expect("punct", "[")
        values: list[Any] = []
        if self._accept("punct", "]"):
            return ()
        while True:
            values.append(self._literal(field_type))
            if self._accept("punct", "]"):
                return tuple(values)
            self._expect("punct", ",")

    def _literal(self, field_type: FieldType) -> Any:
        token = self._next("a value")
        if token.kind == "number":
            if field_type != FieldType.number:
                raise ConditionSyntaxError(f"Expected a {field_type.value} value, got a number", position=token.pos)
            try:
                return Decimal(token.value)
            except InvalidOperation as exc:  # pragma: no cover - regex guarantees a valid literal
                raise ConditionSyntaxError(f"Invalid number {token.value!r}", position=token.pos) from exc
        if token.kind == "string":
            if field_type not in (FieldType.string, FieldType.set):
                raise ConditionSyntaxError(f"Expected a {field_type.value} value, got a string", position=token.pos)
            return _unquote(token.value)
        if token.kind == "keyword" and token.value in ("true", "false"):
            if field_type != FieldType.boolean:
                raise ConditionSyntaxError(f"Expected a {field_type.value} value, got a boolean", position=token.pos)
            return token.value == "true"
        raise ConditionSyntaxError(f"Expected a value, got {token.value!r}", position=token.pos)


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def evaluate(node: Node, ctx: EvaluationContext, campaign_id: str | None = None) -> bool:
    if isinstance(node, Compare):
        return bool(_COMPARATORS[node.op](ctx.value_of(node.field, campaign_id), node.value))
    if isinstance(node, Membership):
        actual = ctx.value_of(node.field, campaign_id)
        if FIELDS[node.field] == FieldType.set:
            hit = not frozenset(actual).isdisjoint(node.values)
        else:
            hit = actual in node.values
        return hit != node.negated
    if isinstance(node, Contains):
        return node.value in ctx.value_of(node.field, campaign_id)
    if isinstance(node, And):
        return all(evaluate(item, ctx, campaign_id) for item in node.operands)
    if isinstance(node, Or):
        return any(evaluate(item, ctx, campaign_id) for item in node.operands)
    if isinstance(node, Not):
        return not evaluate(node.operand, ctx, campaign_id)
    if isinstance(node, Const):
        return node.value
    raise TypeError(f"Unknown condition node {type(node).__name__}")


def dump(node: Node) -> dict[str, Any]:
    """JSON-friendly representation of a compiled tree."""
    if isinstance(node, Compare):
        return {"type": "compare", "field": node.field, "op": node.op, "value": _dump_value(node.value)}
    if isinstance(node, Membership):
        return {
            "type": "not_in" if node.negated else "in",
            "field": node.field,
            "values": [_dump_value(v) for v in node.values],
        }
    if isinstance(node, Contains):
        return {"type": "contains", "field": node.field, "value": _dump_value(node.value)}
    if isinstance(node, (And, Or)):
        return {"type": "and" if isinstance(node, And) else "or", "operands": [dump(item) for item in node.operands]}
    if isinstance(node, Not):
        return {"type": "not", "operand": dump(node.operand)}
    return {"type": "const", "value": node.value}


def _dump_value(value: Any) -> Any:
    return str(value) if isinstance(value, Decimal) else value


def node_size(node: Node) -> int:
    if isinstance(node, (And, Or)):
        return 1 + sum(node_size(item) for item in node.operands)
    if isinstance(node, Not):
        return 1 + node_size(node.operand)
    return 1


@dataclass(frozen=True)
class Predicate:
    source: str
    root: Node

    def __call__(self, ctx: EvaluationContext, campaign_id: str | None = None) -> bool:
        return evaluate(self.root, ctx, campaign_id)

    @property
    def size(self) -> int:
        return node_size(self.root)


@lru_cache(maxsize=2048)
def compile_condition(source: str) -> Predicate:
    """Compile condition text; raises ``ConditionSyntaxError`` on any defect."""
    text = (source or "").strip()
    return Predicate(source=text, root=_Parser(text).parse())
