"""
Tokenizer and recursive-descent parser for module formulas.

parse_formula() returns an immutable AST and is cached by formula text, so
the workspace-wide recompute does not re-tokenize the same formula once per
instance. Syntax errors carry position-agnostic messages meant for the editor.

Precedence, loosest first:
    expression := term (('+' | '-') term)*
    term       := unary (('*' | '/') unary)*
    unary      := ('-' | '+') unary | power
    power      := primary ('^' unary)?
    primary    := NUMBER | NAME | NAME '(' [expression (',' expression)*] ')' | '(' expression ')'
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterator, NamedTuple, Optional, Union

from ..config import settings
from ..errors import FormulaSyntaxError

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
  | (?P<op>[-+*/^(),])
    """,
    re.VERBOSE,
)


class Token(NamedTuple):
    kind: str   # number | name | op | end
    text: str


class IdentifierToken(NamedTuple):
    text: str
    base: str
    property: Optional[str]
    is_call: bool

    @property
    def has_dot(self) -> bool:
        return self.property is not None


# --- AST ---

@dataclass(frozen=True)
class Num:
    value: float
    text: str

    def source(self) -> str:
        return self.text


@dataclass(frozen=True)
class Name:
    name: str

    @property
    def base(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def property(self) -> Optional[str]:
        parts = self.name.split(".", 1)
        return parts[1] if len(parts) == 2 else None

    def source(self) -> str:
        return self.name


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"

    def source(self) -> str:
        return f"{self.op}{_wrap(self.operand)}"


@dataclass(frozen=True)
class BinOp:
    op: str
    left: "Node"
    right: "Node"

    def source(self) -> str:
        return f"{_wrap(self.left)} {self.op} {_wrap(self.right)}"


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple

    def source(self) -> str:
        return f"{self.name}({', '.join(a.source() for a in self.args)})"


Node = Union[Num, Name, UnaryOp, BinOp, Call]


def _wrap(node: Node) -> str:
    if isinstance(node, BinOp):
        return f"({node.source()})"
    return node.source()


# --- Tokenizer ---

def tokenize(formula: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(formula):
        match = _TOKEN_RE.match(formula, pos)
        if match is None:
            raise FormulaSyntaxError(
                f"Unexpected character '{formula[pos]}'. Check your formula syntax.",
                subject=formula[pos],
            )
        kind = match.lastgroup
        text = match.group()
        pos = match.end()
        if kind == "ws":
            continue
        if kind == "name" and text.count(".") > 1:
            raise FormulaSyntaxError(
                f"Identifier '{text}' may contain only one '.' (variable.property)",
                subject=text,
            )
        tokens.append(Token(kind, text))
    tokens.append(Token("end", ""))
    return tokens


def scan_identifiers(formula: str) -> list[IdentifierToken]:
    """
    Lenient identifier scan for analysis of half-typed formulas.

    Skips characters the tokenizer would reject and never raises. Numbers are
    consumed as numbers, so the `e3` in `1e3` is not reported as an identifier.
    """
    raw: list[tuple[str, str]] = []
    pos = 0
    while pos < len(formula):
        match = _TOKEN_RE.match(formula, pos)
        if match is None:
            pos += 1
            continue
        pos = match.end()
        if match.lastgroup != "ws":
            raw.append((match.lastgroup, match.group()))

    identifiers: list[IdentifierToken] = []
    for i, (kind, text) in enumerate(raw):
        if kind != "name":
            continue
        is_call = i + 1 < len(raw) and raw[i + 1] == ("op", "(")
        base, _, prop = text.partition(".")
        # a second dot is a syntax error; keep only the first segment as the property
        prop = prop.split(".", 1)[0] if prop else None
        identifiers.append(IdentifierToken(text, base, prop, is_call))
    return identifiers


# --- Parser ---

class _Parser:

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0
        self.nesting = 0

    def peek(self) -> Token:
        return self.tokens[self.pos]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.peek()
        return token.kind == "op" and token.text in ops

    def parse(self) -> Node:
        if self.peek().kind == "end":
            raise FormulaSyntaxError("Formula is empty")
        node = self.expression()
        token = self.peek()
        if token.kind != "end":
            raise self.unexpected(token)
        return node

    def expression(self) -> Node:
        node = self.term()
        while self.at_op("+", "-"):
            op = self.advance().text
            node = BinOp(op, node, self.term())
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.at_op("*", "/"):
            op = self.advance().text
            node = BinOp(op, node, self.unary())
        return node

    def unary(self) -> Node:
        # every nested level (parentheses, signs, exponents) passes through here
        self.nesting += 1
        if self.nesting > settings.MAX_FORMULA_NESTING:
            raise FormulaSyntaxError("Formula is nested too deeply")
        try:
            if self.at_op("-", "+"):
                op = self.advance().text
                operand = self.unary()
                if op == "+":
                    return operand
                return UnaryOp(op, operand)
            return self.power()
        finally:
            self.nesting -= 1

    def power(self) -> Node:
        node = self.primary()
        if self.at_op("^"):
            self.advance()
            node = BinOp("^", node, self.unary())
        return node

    def primary(self) -> Node:
        token = self.advance()
        if token.kind == "number":
            return Num(float(token.text), token.text)
        if token.kind == "name":
            if self.at_op("("):
                if "." in token.text:
                    raise FormulaSyntaxError(
                        f"Property reference '{token.text}' cannot be called like a function",
                        subject=token.text,
                    )
                self.advance()
                return Call(token.text, self.arguments())
            return Name(token.text)
        if token.kind == "op" and token.text == "(":
            node = self.expression()
            if not self.at_op(")"):
                if self.peek().kind == "end":
                    raise FormulaSyntaxError(
                        "Missing closing parenthesis. Check that all opening parentheses "
                        "'(' have matching closing ones ')'."
                    )
                raise self.unexpected(self.peek())
            self.advance()
            return node
        raise self.unexpected(token)

    def arguments(self) -> tuple:
        args = []
        if self.at_op(")"):
            self.advance()
            return tuple(args)
        while True:
            args.append(self.expression())
            if self.at_op(","):
                self.advance()
                continue
            if self.at_op(")"):
                self.advance()
                return tuple(args)
            if self.peek().kind == "end":
                raise FormulaSyntaxError(
                    "Missing closing parenthesis. Check that all opening parentheses "
                    "'(' have matching closing ones ')'."
                )
            raise self.unexpected(self.peek())

    def unexpected(self, token: Token) -> FormulaSyntaxError:
        if token.kind == "end":
            return FormulaSyntaxError(
                "Formula is incomplete. Check for missing values or operators at the end."
            )
        if token.kind == "number":
            return FormulaSyntaxError(
                f"Unexpected number '{token.text}'. Check for missing operators (+, -, *, /) between values.",
                subject=token.text,
            )
        if token.kind == "name":
            return FormulaSyntaxError(
                f"Unexpected variable or function '{token.text}'. Check for missing operators "
                f"or invalid function names.",
                subject=token.text,
            )
        if token.text == ")":
            return FormulaSyntaxError(
                "Unexpected closing parenthesis. Check for extra ')' or missing opening '('.",
                subject=")",
            )
        return FormulaSyntaxError(
            f"Unexpected '{token.text}'. Check for missing values before or after operators.",
            subject=token.text,
        )


def _children(node: Node) -> tuple:
    if isinstance(node, UnaryOp):
        return (node.operand,)
    if isinstance(node, BinOp):
        return (node.left, node.right)
    if isinstance(node, Call):
        return node.args
    return ()


def tree_height(node: Node) -> int:
    """Height of an AST, computed without recursion."""
    height = 0
    stack = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        height = max(height, depth)
        stack.extend((child, depth + 1) for child in _children(current))
    return height


def _parse(formula: str) -> Node:
    tree = _Parser(tokenize(formula)).parse()
    if tree_height(tree) > settings.MAX_FORMULA_DEPTH:
        raise FormulaSyntaxError("Formula is too long or nested too deeply")
    return tree


_parse_cached = lru_cache(maxsize=settings.FORMULA_CACHE_SIZE)(_parse)


def parse_formula(formula: str) -> Node:
    """Parse formula text into an AST. Raises FormulaSyntaxError."""
    if formula is None:
        raise FormulaSyntaxError("Formula is empty")
    return _parse_cached(formula.strip())


def walk(node: Node) -> Iterator[Node]:
    """Pre-order traversal of an AST."""
    yield node
    for child in _children(node):
        yield from walk(child)


def referenced_names(node: Node) -> list[str]:
    """Identifier references in source order, duplicates removed. Call names excluded."""
    seen: dict[str, None] = {}
    for child in walk(node):
        if isinstance(child, Name):
            seen.setdefault(child.name, None)
    return list(seen)


def function_calls(node: Node) -> list[Call]:
    return [child for child in walk(node) if isinstance(child, Call)]
