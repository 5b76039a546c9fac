"""
DynamoDB expression engine for the in-memory backing store.

Parses and evaluates the expression dialect used by condition, key
condition, filter and update expressions:

    condition   := or_expr
    or_expr     := and_expr ("OR" and_expr)*
    and_expr    := not_expr ("AND" not_expr)*
    not_expr    := "NOT" not_expr | primary
    primary     := "(" condition ")"
                 | function "(" operand ("," operand)* ")"
                 | operand comparator operand
                 | operand "BETWEEN" operand "AND" operand
                 | operand "IN" "(" operand ("," operand)* ")"
    operand     := #name | :value | attribute_name

    update      := ("SET" action ("," action)* | "REMOVE" path ("," path)*)+
    action      := path "=" term (("+" | "-") term)?
    term        := operand | "if_not_exists" "(" path "," term ")"

Invariants:
    - Placeholders are resolved at parse time; an undefined placeholder
      is an error even on a branch that never evaluates
    - Comparing values of different types is false (except "<>")
    - A comparison against a missing attribute is false (except "<>")
    - Update right-hand sides are evaluated against the pre-update item

How to change safely:
    - Match DynamoDB's documented semantics, not convenience
    - Nested document paths (a.b, a[0]) are not supported
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from .attributes import AttributeMap

_TOKEN_RE = re.compile(
    r"(?P<name>#[A-Za-z0-9_]+)"
    r"|(?P<value>:[A-Za-z0-9_]+)"
    r"|(?P<op><>|<=|>=|=|<|>|\+|-)"
    r"|(?P<punct>[(),])"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_.]*)"
)

_COMPARATORS = {"=", "<>", "<", "<=", ">", ">="}
_KEYWORDS = {"AND", "OR", "NOT", "BETWEEN", "IN", "SET", "REMOVE", "ADD", "DELETE"}
_FUNCTIONS = {"attribute_exists", "attribute_not_exists", "begins_with", "contains"}


class ExpressionError(ValueError):
    """Malformed expression or invalid operand (maps to ValidationException)."""

    pass


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


def tokenize(expr: str) -> list[_Token]:
    """Split an expression into tokens."""
    tokens: list[_Token] = []
    pos = 0
    while True:
        while pos < len(expr) and expr[pos].isspace():
            pos += 1
        if pos >= len(expr):
            return tokens
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise ExpressionError(f"Invalid syntax at position {pos} in expression: {expr!r}")
        kind = m.lastgroup or ""
        tokens.append(_Token(kind, m.group(kind)))
        pos = m.end()


# Operands


@dataclass(frozen=True)
class Path:
    """Reference to a top-level attribute of the item."""

    name: str

    def resolve(self, item: AttributeMap) -> dict[str, Any] | None:
        return item.get(self.name)


@dataclass(frozen=True)
class Value:
    """Reference to an expression attribute value."""

    value: dict[str, Any]

    def resolve(self, item: AttributeMap) -> dict[str, Any] | None:
        return self.value


Operand = Path | Value


def _scalar(av: dict[str, Any]) -> tuple[str, Any]:
    """(type key, comparable value) of an AttributeValue."""
    if len(av) != 1:
        raise ExpressionError(f"Invalid attribute value: {av!r}")
    (kind, raw), = av.items()
    if kind == "N":
        try:
            return kind, Decimal(raw)
        except InvalidOperation as e:
            raise ExpressionError(f"Invalid number: {raw!r}") from e
    return kind, raw


def compare(op: str, left: dict[str, Any] | None, right: dict[str, Any] | None) -> bool:
    """Evaluate a comparator between two AttributeValues."""
    if left is None or right is None:
        return op == "<>"
    lkind, lval = _scalar(left)
    rkind, rval = _scalar(right)
    if lkind != rkind:
        return op == "<>"
    if op == "=":
        return lval == rval
    if op == "<>":
        return lval != rval
    if lkind not in ("S", "N", "B"):
        return False
    if op == "<":
        return lval < rval
    if op == "<=":
        return lval <= rval
    if op == ">":
        return lval > rval
    if op == ">=":
        return lval >= rval
    raise ExpressionError(f"Unknown comparator: {op}")


# Conditions


class Condition:
    def evaluate(self, item: AttributeMap) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class And(Condition):
    left: Condition
    right: Condition

    def evaluate(self, item: AttributeMap) -> bool:
        return self.left.evaluate(item) and self.right.evaluate(item)


@dataclass(frozen=True)
class Or(Condition):
    left: Condition
    right: Condition

    def evaluate(self, item: AttributeMap) -> bool:
        return self.left.evaluate(item) or self.right.evaluate(item)


@dataclass(frozen=True)
class Not(Condition):
    inner: Condition

    def evaluate(self, item: AttributeMap) -> bool:
        return not self.inner.evaluate(item)


@dataclass(frozen=True)
class Compare(Condition):
    op: str
    left: Operand
    right: Operand

    def evaluate(self, item: AttributeMap) -> bool:
        return compare(self.op, self.left.resolve(item), self.right.resolve(item))


@dataclass(frozen=True)
class Between(Condition):
    operand: Operand
    low: Operand
    high: Operand

    def evaluate(self, item: AttributeMap) -> bool:
        value = self.operand.resolve(item)
        return compare(">=", value, self.low.resolve(item)) and compare(
            "<=", value, self.high.resolve(item)
        )


@dataclass(frozen=True)
class In(Condition):
    operand: Operand
    candidates: tuple[Operand, ...]

    def evaluate(self, item: AttributeMap) -> bool:
        value = self.operand.resolve(item)
        return any(compare("=", value, c.resolve(item)) for c in self.candidates)


@dataclass(frozen=True)
class Function(Condition):
    name: str
    args: tuple[Operand, ...]

    def evaluate(self, item: AttributeMap) -> bool:
        first = self.args[0].resolve(item)
        if self.name == "attribute_exists":
            return first is not None
        if self.name == "attribute_not_exists":
            return first is None
        second = self.args[1].resolve(item)
        if first is None or second is None:
            return False
        if self.name == "begins_with":
            fkind, fval = _scalar(first)
            skind, sval = _scalar(second)
            return fkind == skind and fkind in ("S", "B") and fval.startswith(sval)
        if self.name == "contains":
            fkind, fval = _scalar(first)
            if fkind == "S":
                skind, sval = _scalar(second)
                return skind == "S" and sval in fval
            if fkind in ("SS", "NS"):
                return next(iter(second.values())) in fval
            if fkind == "L":
                return second in fval
            return False
        raise ExpressionError(f"Unknown function: {self.name}")


# Update actions


@dataclass(frozen=True)
class IfNotExists:
    path: Path
    default: Any

    def resolve(self, item: AttributeMap) -> dict[str, Any] | None:
        existing = self.path.resolve(item)
        return existing if existing is not None else self.default.resolve(item)


@dataclass(frozen=True)
class Arithmetic:
    op: str
    left: Any
    right: Any

    def resolve(self, item: AttributeMap) -> dict[str, Any]:
        left = self.left.resolve(item)
        right = self.right.resolve(item)
        if left is None or right is None:
            raise ExpressionError(
                "The provided expression refers to an attribute that does not exist in the item"
            )
        lkind, lval = _scalar(left)
        rkind, rval = _scalar(right)
        if lkind != "N" or rkind != "N":
            raise ExpressionError("An operand in the update expression has an incorrect data type")
        result = lval + rval if self.op == "+" else lval - rval
        return {"N": str(result)}


@dataclass
class UpdateExpression:
    """Parsed update expression."""

    set_actions: list[tuple[str, Any]] = field(default_factory=list)
    remove_paths: list[str] = field(default_factory=list)

    def apply(self, item: AttributeMap) -> AttributeMap:
        """Return a new item with the update applied."""
        resolved = [(name, term.resolve(item)) for name, term in self.set_actions]
        updated = dict(item)
        for name, value in resolved:
            if value is None:
                raise ExpressionError(
                    "The provided expression refers to an attribute that does not exist in the item"
                )
            updated[name] = value
        for name in self.remove_paths:
            updated.pop(name, None)
        return updated


# Parser


class _Parser:
    def __init__(
        self,
        expr: str,
        names: dict[str, str] | None,
        values: dict[str, dict[str, Any]] | None,
        used_names: set[str],
        used_values: set[str],
    ) -> None:
        self.expr = expr
        self.tokens = tokenize(expr)
        self.pos = 0
        self.names = names or {}
        self.values = values or {}
        self.used_names = used_names
        self.used_values = used_values

    # token helpers

    def _peek(self, offset: int = 0) -> _Token | None:
        idx = self.pos + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def _next(self) -> _Token:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"Unexpected end of expression: {self.expr!r}")
        self.pos += 1
        return tok

    def _at_keyword(self, keyword: str) -> bool:
        tok = self._peek()
        return tok is not None and tok.kind == "ident" and tok.text.upper() == keyword

    def _at_punct(self, punct: str) -> bool:
        tok = self._peek()
        return tok is not None and tok.kind == "punct" and tok.text == punct

    def _expect_punct(self, punct: str) -> None:
        tok = self._next()
        if tok.kind != "punct" or tok.text != punct:
            raise ExpressionError(f"Expected '{punct}' but got '{tok.text}' in: {self.expr!r}")

    def _expect_keyword(self, keyword: str) -> None:
        if not self._at_keyword(keyword):
            raise ExpressionError(f"Expected {keyword} in: {self.expr!r}")
        self.pos += 1

    def _done(self) -> None:
        tok = self._peek()
        if tok is not None:
            raise ExpressionError(f"Unexpected token '{tok.text}' in: {self.expr!r}")

    # operands

    def _path(self) -> Path:
        tok = self._next()
        if tok.kind == "name":
            if tok.text not in self.names:
                raise ExpressionError(
                    f"An expression attribute name used in the document path is not defined; "
                    f"attribute name: {tok.text}"
                )
            self.used_names.add(tok.text)
            return Path(self.names[tok.text])
        if tok.kind == "ident" and tok.text.upper() not in _KEYWORDS:
            return Path(tok.text)
        raise ExpressionError(f"Expected attribute path but got '{tok.text}' in: {self.expr!r}")

    def _operand(self) -> Operand:
        tok = self._peek()
        if tok is not None and tok.kind == "value":
            self.pos += 1
            if tok.text not in self.values:
                raise ExpressionError(
                    f"An expression attribute value used in expression is not defined; "
                    f"attribute value: {tok.text}"
                )
            self.used_values.add(tok.text)
            return Value(self.values[tok.text])
        return self._path()

    # conditions

    def condition(self) -> Condition:
        cond = self._or()
        self._done()
        return cond

    def _or(self) -> Condition:
        left = self._and()
        while self._at_keyword("OR"):
            self.pos += 1
            left = Or(left, self._and())
        return left

    def _and(self) -> Condition:
        left = self._not()
        while self._at_keyword("AND"):
            self.pos += 1
            left = And(left, self._not())
        return left

    def _not(self) -> Condition:
        if self._at_keyword("NOT"):
            self.pos += 1
            return Not(self._not())
        return self._primary()

    def _primary(self) -> Condition:
        if self._at_punct("("):
            self.pos += 1
            inner = self._or()
            self._expect_punct(")")
            return inner

        tok = self._peek()
        after = self._peek(1)
        if (
            tok is not None
            and tok.kind == "ident"
            and tok.text in _FUNCTIONS
            and after is not None
            and after.kind == "punct"
            and after.text == "("
        ):
            self.pos += 2
            args: list[Operand] = [self._path()]
            while self._at_punct(","):
                self.pos += 1
                args.append(self._operand())
            self._expect_punct(")")
            expected = 1 if tok.text.startswith("attribute_") else 2
            if len(args) != expected:
                raise ExpressionError(f"Wrong number of operands for {tok.text} in: {self.expr!r}")
            return Function(tok.text, tuple(args))

        left = self._operand()
        nxt = self._peek()
        if nxt is not None and nxt.kind == "op" and nxt.text in _COMPARATORS:
            self.pos += 1
            return Compare(nxt.text, left, self._operand())
        if self._at_keyword("BETWEEN"):
            self.pos += 1
            low = self._operand()
            self._expect_keyword("AND")
            return Between(left, low, self._operand())
        if self._at_keyword("IN"):
            self.pos += 1
            self._expect_punct("(")
            candidates = [self._operand()]
            while self._at_punct(","):
                self.pos += 1
                candidates.append(self._operand())
            self._expect_punct(")")
            return In(left, tuple(candidates))
        raise ExpressionError(f"Invalid condition in: {self.expr!r}")

    # updates

    def update(self) -> UpdateExpression:
        update = UpdateExpression()
        if self._peek() is None:
            raise ExpressionError("Update expression is empty")
        while self._peek() is not None:
            if self._at_keyword("SET"):
                self.pos += 1
                update.set_actions.append(self._set_action())
                while self._at_punct(","):
                    self.pos += 1
                    update.set_actions.append(self._set_action())
            elif self._at_keyword("REMOVE"):
                self.pos += 1
                update.remove_paths.append(self._path().name)
                while self._at_punct(","):
                    self.pos += 1
                    update.remove_paths.append(self._path().name)
            else:
                tok = self._next()
                raise ExpressionError(f"Unsupported update clause '{tok.text}' in: {self.expr!r}")
        return update

    def _set_action(self) -> tuple[str, Any]:
        target = self._path()
        tok = self._next()
        if tok.kind != "op" or tok.text != "=":
            raise ExpressionError(f"Expected '=' in SET action of: {self.expr!r}")
        term: Any = self._term()
        nxt = self._peek()
        if nxt is not None and nxt.kind == "op" and nxt.text in ("+", "-"):
            self.pos += 1
            term = Arithmetic(nxt.text, term, self._term())
        return target.name, term

    def _term(self) -> Any:
        tok = self._peek()
        after = self._peek(1)
        if (
            tok is not None
            and tok.kind == "ident"
            and tok.text == "if_not_exists"
            and after is not None
            and after.kind == "punct"
            and after.text == "("
        ):
            self.pos += 2
            path = self._path()
            self._expect_punct(",")
            default = self._term()
            self._expect_punct(")")
            return IfNotExists(path, default)
        return self._operand()


@dataclass
class ExpressionSet:
    """Parses the expressions of one request and tracks placeholder use.

    DynamoDB rejects requests that define names or values no expression
    uses; call check_unused() once every expression has been parsed.
    """

    names: dict[str, str] | None = None
    values: dict[str, dict[str, Any]] | None = None
    used_names: set[str] = field(default_factory=set)
    used_values: set[str] = field(default_factory=set)

    def _parser(self, expr: str) -> _Parser:
        return _Parser(expr, self.names, self.values, self.used_names, self.used_values)

    def condition(self, expr: str | None) -> Callable[[AttributeMap], bool]:
        """Parse a condition; an absent expression always passes."""
        if not expr:
            return lambda item: True
        return self._parser(expr).condition().evaluate

    def update(self, expr: str) -> UpdateExpression:
        return self._parser(expr).update()

    def check_unused(self) -> None:
        if self.names is not None and not self.names:
            raise ExpressionError("ExpressionAttributeNames must not be empty")
        if self.values is not None and not self.values:
            raise ExpressionError("ExpressionAttributeValues must not be empty")
        unused_names = set(self.names or {}) - self.used_names
        if unused_names:
            raise ExpressionError(
                f"Value provided in ExpressionAttributeNames unused in expressions: "
                f"keys: {{{', '.join(sorted(unused_names))}}}"
            )
        unused_values = set(self.values or {}) - self.used_values
        if unused_values:
            raise ExpressionError(
                f"Value provided in ExpressionAttributeValues unused in expressions: "
                f"keys: {{{', '.join(sorted(unused_values))}}}"
            )
