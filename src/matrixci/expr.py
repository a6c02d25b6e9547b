# expr.py
"""
Guard expressions and `${{ ... }}` templates.

Expressions are parsed once, at load time, into a small typed tree:

    Literal      true / false / null / 3 / 'text'
    Ref          matrix.features.check_formatting, env.NAME, steps.x.outputs.y, secrets.NAME
    IsSet        isSet(CODECOV_TOKEN)
    Not / And / Or
    Compare      a == b, a != b

Evaluation needs a scope object providing `lookup(ref)` and
`secret_is_set(name)` (see conditions.ResolutionContext).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple, Union

from .errors import SchemaError
from .model import UNDEFINED
from .secrets import SecretRef, SecretText


NAMESPACES = ("matrix", "env", "steps", "secrets")


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, (bool, int, float, str)):
        return bool(value)
    return True


def to_text(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value: Any) -> float:
    if value is UNDEFINED or value is None:
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        return float(text) if text else 0.0
    return float(value)


def loose_equal(left: Any, right: Any) -> bool:
    """
    Equality with light coercion: same-typed values compare directly,
    anything else compares numerically with null and "" counting as 0.
    Text that is not a number never equals a number.
    """
    left = None if left is UNDEFINED else left
    right = None if right is UNDEFINED else right
    if type(left) is type(right):
        return left == right
    try:
        return _as_number(left) == _as_number(right)
    except (TypeError, ValueError):
        return False


# ---------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------

class Expr:
    def evaluate(self, scope: Any) -> Any:
        raise NotImplementedError

    def refs(self) -> Iterator["Ref"]:
        return iter(())

    def secret_names(self) -> Iterator[str]:
        return iter(())


@dataclass(frozen=True)
class Literal(Expr):
    value: Any

    def evaluate(self, scope: Any) -> Any:
        return self.value

    def __str__(self) -> str:
        if isinstance(self.value, str):
            return "'" + self.value.replace("'", "''") + "'"
        if self.value is None:
            return "null"
        return to_text(self.value)


@dataclass(frozen=True)
class Ref(Expr):
    namespace: str
    path: Tuple[str, ...]

    def evaluate(self, scope: Any) -> Any:
        return scope.lookup(self)

    def refs(self) -> Iterator["Ref"]:
        yield self

    def __str__(self) -> str:
        return ".".join((self.namespace,) + self.path)


@dataclass(frozen=True)
class IsSet(Expr):
    name: str

    def evaluate(self, scope: Any) -> bool:
        return scope.secret_is_set(self.name)

    def secret_names(self) -> Iterator[str]:
        yield self.name

    def __str__(self) -> str:
        return f"isSet({self.name})"


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def evaluate(self, scope: Any) -> bool:
        return not truthy(self.operand.evaluate(scope))

    def refs(self) -> Iterator[Ref]:
        return self.operand.refs()

    def secret_names(self) -> Iterator[str]:
        return self.operand.secret_names()

    def __str__(self) -> str:
        return f"!{_wrap(self.operand)}"


@dataclass(frozen=True)
class _Binary(Expr):
    left: Expr
    right: Expr

    def refs(self) -> Iterator[Ref]:
        yield from self.left.refs()
        yield from self.right.refs()

    def secret_names(self) -> Iterator[str]:
        yield from self.left.secret_names()
        yield from self.right.secret_names()


@dataclass(frozen=True)
class And(_Binary):
    def evaluate(self, scope: Any) -> bool:
        return truthy(self.left.evaluate(scope)) and truthy(self.right.evaluate(scope))

    def __str__(self) -> str:
        return f"{_wrap(self.left)} && {_wrap(self.right)}"


@dataclass(frozen=True)
class Or(_Binary):
    def evaluate(self, scope: Any) -> bool:
        return truthy(self.left.evaluate(scope)) or truthy(self.right.evaluate(scope))

    def __str__(self) -> str:
        return f"{_wrap(self.left)} || {_wrap(self.right)}"


@dataclass(frozen=True)
class Compare(_Binary):
    op: str = "=="

    def evaluate(self, scope: Any) -> bool:
        equal = loose_equal(self.left.evaluate(scope), self.right.evaluate(scope))
        return equal if self.op == "==" else not equal

    def __str__(self) -> str:
        return f"{_wrap(self.left)} {self.op} {_wrap(self.right)}"


def _wrap(expr: Expr) -> str:
    if isinstance(expr, _Binary):
        return f"({expr})"
    return str(expr)


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
      (?P<number>-?\d+(?:\.\d+)?)
    | (?P<string>'(?:[^']|'')*')
    | (?P<op>&&|\|\||==|!=|!|\(|\))
    | (?P<name>[A-Za-z_][A-Za-z0-9_-]*(?:\.[A-Za-z_][A-Za-z0-9_-]*)*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None or m.end() == pos:
            raise SchemaError(f"unexpected character {source[pos:].strip()[:1]!r} in expression {source!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise SchemaError(f"unexpected end of expression {self.source!r}")
        self.pos += 1
        return tok

    def expect(self, value: str) -> None:
        kind, text = self.take()
        if text != value:
            raise SchemaError(f"expected {value!r} but found {text!r} in expression {self.source!r}")

    def at_op(self, *ops: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "op" and tok[1] in ops

    def parse(self) -> Expr:
        expr = self.parse_or()
        if self.peek() is not None:
            raise SchemaError(f"unexpected {self.peek()[1]!r} in expression {self.source!r}")
        return expr

    def parse_or(self) -> Expr:
        expr = self.parse_and()
        while self.at_op("||"):
            self.take()
            expr = Or(expr, self.parse_and())
        return expr

    def parse_and(self) -> Expr:
        expr = self.parse_unary()
        while self.at_op("&&"):
            self.take()
            expr = And(expr, self.parse_unary())
        return expr

    def parse_unary(self) -> Expr:
        if self.at_op("!"):
            self.take()
            return Not(self.parse_unary())
        return self.parse_compare()

    def parse_compare(self) -> Expr:
        left = self.parse_primary()
        if self.at_op("==", "!="):
            _, op = self.take()
            return Compare(left, self.parse_primary(), op)
        return left

    def parse_primary(self) -> Expr:
        kind, text = self.take()
        if kind == "op" and text == "(":
            expr = self.parse_or()
            self.expect(")")
            return expr
        if kind == "number":
            return Literal(float(text) if "." in text else int(text))
        if kind == "string":
            return Literal(text[1:-1].replace("''", "'"))
        if kind == "name":
            lowered = text.lower()
            if lowered in _KEYWORDS:
                return Literal(_KEYWORDS[lowered])
            if lowered == "isset" and self.at_op("("):
                self.take()
                _, name = self.take()
                self.expect(")")
                if name.startswith("secrets."):
                    name = name[len("secrets."):]
                if not name or "." in name:
                    raise SchemaError(f"isSet() takes a secret name, got {name!r}")
                return IsSet(name)
            head, *rest = text.split(".")
            return Ref(head, tuple(rest))
        raise SchemaError(f"unexpected {text!r} in expression {self.source!r}")


_TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def parse_expression(source: Union[str, bool]) -> Expr:
    """Parse a guard. Accepts bare (`a && b`) or wrapped (`${{ a && b }}`) form."""
    if isinstance(source, bool):
        return Literal(source)
    text = str(source).strip()
    m = _TEMPLATE_RE.fullmatch(text)
    if m is not None:
        text = m.group(1).strip()
    if not text:
        raise SchemaError("empty expression")
    return _Parser(text).parse()


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Template:
    """A value with zero or more embedded `${{ expr }}` segments."""
    source: Any
    parts: Tuple[Union[str, Expr], ...]

    @property
    def is_single_expression(self) -> bool:
        return len(self.parts) == 1 and isinstance(self.parts[0], Expr)

    def expressions(self) -> Iterator[Expr]:
        return (p for p in self.parts if isinstance(p, Expr))

    def refs(self) -> Iterator[Ref]:
        for e in self.expressions():
            yield from e.refs()

    def render(self, scope: Any) -> Any:
        """
        Substitute every segment. A template that is exactly one expression
        keeps the value's type. A field the current variant does not carry
        renders as empty text. Text with embedded secrets comes back as a
        SecretText, which prints masked.
        """
        if not isinstance(self.source, str):
            return self.source
        if self.is_single_expression:
            value = self.parts[0].evaluate(scope)
            return "" if value is UNDEFINED else value
        out: List[Union[str, SecretRef]] = []
        for part in self.parts:
            value = part if isinstance(part, str) else part.evaluate(scope)
            if isinstance(value, SecretRef):
                out.append(value)
            elif out and isinstance(out[-1], str):
                out[-1] += to_text(value)
            else:
                out.append(to_text(value))
        if any(isinstance(p, SecretRef) for p in out):
            return SecretText(tuple(out))
        return "".join(out)

    def __str__(self) -> str:
        return to_text(self.source)


def parse_template(source: Any) -> Template:
    if not isinstance(source, str):
        return Template(source, (Literal(source),) if source is not None else ())
    parts: List[Union[str, Expr]] = []
    pos = 0
    for m in _TEMPLATE_RE.finditer(source):
        if m.start() > pos:
            parts.append(source[pos:m.start()])
        inner = m.group(1).strip()
        if not inner:
            raise SchemaError(f"empty ${{{{ }}}} in {source!r}")
        parts.append(_Parser(inner).parse())
        pos = m.end()
    if pos < len(source):
        parts.append(source[pos:])
    return Template(source, tuple(parts))
