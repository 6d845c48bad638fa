"""Formula parser: tokenizer + recursive descent to an AST.

Precedence, lowest to highest::

    1. comparison      (=, <>, <, >, <=, >=)
    2. concatenation   (&)
    3. additive        (+, -)
    4. multiplicative  (*, /)
    5. exponent        (^, left associative)
    6. unary sign      (-x, +x; binds tighter than ^ so -2^2 = 4)
    7. postfix         (x%, f(args)(args))
    8. primary

Positions are 0-based offsets into the full formula text, ``=`` included.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from forgecalc.calc._ast import (
    ArrayLiteral,
    BinaryOp,
    FunctionCall,
    LambdaCall,
    LambdaDef,
    LetBinding,
    Literal,
    Node,
    Reference,
    UnaryOp,
    walk,
)
from forgecalc.calc._errors import FormulaSyntaxError
from forgecalc.calc._values import ErrorValue

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*")
_ERROR_RE = re.compile(r"#(?:N/A|DIV/0!|VALUE!|REF!|NAME\?|NUM!)", re.IGNORECASE)
_OPERATORS = ("<>", "<=", ">=", "=", "<", ">", "+", "-", "*", "/", "^", "&", "%")
_PUNCTUATION = {
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ",": "COMMA",
    ";": "SEMI",
}

_COMPARISON_OPS = frozenset({"=", "<>", "<", ">", "<=", ">="})
_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER, STRING, ERROR, NAME, OP, EOF or a punctuation kind
    value: str
    pos: int


def tokenize(text: str, start: int = 1) -> list[Token]:
    """Split formula text (from *start*) into tokens, ending with EOF."""
    tokens: list[Token] = []
    i = start
    length = len(text)
    while i < length:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == '"':
            value, end = _read_string(text, i)
            tokens.append(Token("STRING", value, i))
            i = end
            continue
        m = _NUMBER_RE.match(text, i)
        if m is not None:
            tokens.append(Token("NUMBER", m.group(), i))
            i = m.end()
            continue
        m = _NAME_RE.match(text, i)
        if m is not None:
            if text[m.end():m.end() + 1] == ".":
                raise FormulaSyntaxError("Invalid name", i, text)
            tokens.append(Token("NAME", m.group(), i))
            i = m.end()
            continue
        if ch == "#":
            m = _ERROR_RE.match(text, i)
            if m is None:
                raise FormulaSyntaxError("Unknown error literal", i, text)
            tokens.append(Token("ERROR", m.group().upper(), i))
            i = m.end()
            continue
        if ch in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[ch], ch, i))
            i += 1
            continue
        for op in _OPERATORS:
            if text.startswith(op, i):
                tokens.append(Token("OP", op, i))
                i += len(op)
                break
        else:
            raise FormulaSyntaxError(f"Unexpected character {ch!r}", i, text)
    tokens.append(Token("EOF", "", length))
    return tokens


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read a ``"..."`` literal starting at *start*; ``""`` is an escaped quote."""
    chars: list[str] = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == '"':
            if i + 1 < len(text) and text[i + 1] == '"':
                chars.append('"')
                i += 2
                continue
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise FormulaSyntaxError("Unterminated string literal", start, text)


# ---------------------------------------------------------------------------
# Recursive descent
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str, tokens: list[Token]) -> None:
        self.text = text
        self.tokens = tokens
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        tok = self.tokens[self.index]
        if tok.kind != "EOF":
            self.index += 1
        return tok

    def error(self, message: str, tok: Token | None = None) -> FormulaSyntaxError:
        tok = tok or self.peek()
        return FormulaSyntaxError(message, tok.pos, self.text)

    def expect(self, kind: str, what: str) -> Token:
        tok = self.peek()
        if tok.kind != kind:
            if tok.kind == "EOF":
                raise self.error(f"Unexpected end of formula, expected {what}", tok)
            raise self.error(f"Expected {what}, found {tok.value!r}", tok)
        return self.advance()

    def at_op(self, *ops: str) -> bool:
        tok = self.peek()
        return tok.kind == "OP" and tok.value in ops

    # -- precedence levels --------------------------------------------------

    def expression(self) -> Node:
        return self.comparison()

    def comparison(self) -> Node:
        left = self.concatenation()
        while self.peek().kind == "OP" and self.peek().value in _COMPARISON_OPS:
            op = self.advance().value
            right = self.concatenation()
            left = BinaryOp(op, left, right, _pos(left))
        return left

    def concatenation(self) -> Node:
        left = self.additive()
        while self.at_op("&"):
            self.advance()
            right = self.additive()
            left = BinaryOp("&", left, right, _pos(left))
        return left

    def additive(self) -> Node:
        left = self.multiplicative()
        while self.at_op("+", "-"):
            op = self.advance().value
            right = self.multiplicative()
            left = BinaryOp(op, left, right, _pos(left))
        return left

    def multiplicative(self) -> Node:
        left = self.power()
        while self.at_op("*", "/"):
            op = self.advance().value
            right = self.power()
            left = BinaryOp(op, left, right, _pos(left))
        return left

    def power(self) -> Node:
        left = self.unary()
        while self.at_op("^"):
            self.advance()
            right = self.unary()
            left = BinaryOp("^", left, right, _pos(left))
        return left

    def unary(self) -> Node:
        if self.at_op("+", "-"):
            tok = self.advance()
            operand = self.unary()
            return UnaryOp(tok.value, operand, tok.pos)
        return self.postfix()

    def postfix(self) -> Node:
        node = self.primary()
        while True:
            if self.at_op("%"):
                self.advance()
                node = UnaryOp("%", node, _pos(node))
            elif self.peek().kind == "LPAREN":
                self.advance()
                node = LambdaCall(node, self.arguments(), _pos(node))
            else:
                return node

    # -- primaries ------------------------------------------------------------

    def primary(self) -> Node:
        tok = self.peek()
        if tok.kind == "NUMBER":
            self.advance()
            return Literal(float(tok.value), tok.pos)
        if tok.kind == "STRING":
            self.advance()
            return Literal(tok.value, tok.pos)
        if tok.kind == "ERROR":
            self.advance()
            return Literal(ErrorValue.of(tok.value), tok.pos)
        if tok.kind == "LPAREN":
            self.advance()
            inner = self.expression()
            self.expect("RPAREN", "')'")
            return inner
        if tok.kind == "LBRACE":
            return self.array_literal()
        if tok.kind == "NAME":
            return self.name()
        if tok.kind == "EOF":
            raise self.error("Unexpected end of formula")
        raise self.error(f"Unexpected {tok.value!r}")

    def name(self) -> Node:
        tok = self.advance()
        upper = tok.value.upper()
        if self.peek().kind == "LPAREN":
            self.advance()
            if upper == "LET":
                return self.let_form(tok)
            if upper == "LAMBDA":
                return self.lambda_form(tok)
            return FunctionCall(tok.value, self.arguments(), tok.pos)
        if upper in ("TRUE", "FALSE"):
            return Literal(upper == "TRUE", tok.pos)
        offset = self.row_offset() if self.peek().kind == "LBRACKET" else None
        return Reference(tok.value, offset, tok.pos)

    def row_offset(self) -> int:
        self.advance()
        sign = 1
        if self.at_op("+", "-"):
            sign = -1 if self.advance().value == "-" else 1
        tok = self.expect("NUMBER", "a row offset")
        if not tok.value.isdigit():
            raise self.error("Row offset must be an integer", tok)
        self.expect("RBRACKET", "']'")
        return sign * int(tok.value)

    def arguments(self) -> tuple[Node, ...]:
        """Parse call arguments after ``(``; an omitted argument is a blank."""
        if self.peek().kind == "RPAREN":
            self.advance()
            return ()
        args: list[Node] = []
        while True:
            tok = self.peek()
            if tok.kind in ("COMMA", "RPAREN"):
                args.append(Literal(None, tok.pos))
            else:
                args.append(self.expression())
            sep = self.peek()
            if sep.kind == "RPAREN":
                self.advance()
                return tuple(args)
            if sep.kind != "COMMA":
                if sep.kind == "EOF":
                    raise self.error("Unexpected end of formula, expected ')'", sep)
                raise self.error(f"Expected ',' or ')', found {sep.value!r}", sep)
            self.advance()

    def array_literal(self) -> Node:
        start = self.advance()
        rows: list[tuple[Node, ...]] = []
        current: list[Node] = []
        while True:
            current.append(self.expression())
            tok = self.advance()
            if tok.kind == "COMMA":
                continue
            if tok.kind == "SEMI":
                rows.append(tuple(current))
                current = []
                continue
            if tok.kind == "RBRACE":
                rows.append(tuple(current))
                break
            raise self.error("Expected ',', ';' or '}' in array literal", tok)
        width = len(rows[0])
        if any(len(r) != width for r in rows):
            raise FormulaSyntaxError("Array literal rows must have equal length", start.pos, self.text)
        return ArrayLiteral(tuple(rows), start.pos)

    # -- special forms ------------------------------------------------------

    def let_form(self, tok: Token) -> Node:
        args = self.arguments()
        if len(args) < 3 or len(args) % 2 == 0:
            raise self.error("LET requires name/value pairs followed by a body", tok)
        names = self._binding_names(args[:-1:2], "LET")
        return LetBinding(names, tuple(args[1:-1:2]), args[-1], tok.pos)

    def lambda_form(self, tok: Token) -> Node:
        args = self.arguments()
        if not args:
            raise self.error("LAMBDA requires a body", tok)
        params = self._binding_names(args[:-1], "LAMBDA")
        return LambdaDef(params, args[-1], tok.pos)

    def _binding_names(self, nodes: tuple[Node, ...], form: str) -> tuple[str, ...]:
        names: list[str] = []
        for node in nodes:
            if (
                not isinstance(node, Reference)
                or node.offset is not None
                or not _IDENTIFIER_RE.fullmatch(node.path)
            ):
                raise FormulaSyntaxError(
                    f"{form} names must be plain identifiers", _pos(node), self.text
                )
            if node.path in names:
                raise FormulaSyntaxError(
                    f"Duplicate {form} name {node.path!r}", node.pos, self.text
                )
            names.append(node.path)
        return tuple(names)


def _pos(node: Node) -> int:
    return node.pos


class FormulaParser:
    """Parses formula text (``=...``) into an AST.

    Usage::

        ast = FormulaParser().parse("=ROUND(price * 1.1, 2)")
    """

    def parse(self, text: str) -> Node:
        if not text.startswith("="):
            raise FormulaSyntaxError("Formula must start with '='", 0, text)
        tokens = tokenize(text)
        if tokens[0].kind == "EOF":
            raise FormulaSyntaxError("Empty formula", len(text), text)
        parser = _Parser(text, tokens)
        node = parser.expression()
        tail = parser.peek()
        if tail.kind != "EOF":
            raise parser.error(f"Unexpected {tail.value!r}", tail)
        return node


# ---------------------------------------------------------------------------
# Reference / function extraction
# ---------------------------------------------------------------------------


def all_references(formula: str) -> list[str]:
    """Return the model references in *formula*, in order, without duplicates.

    LET names and LAMBDA parameters are excluded where they are in scope.
    """
    refs: list[str] = []
    _collect_refs(FormulaParser().parse(formula), frozenset(), refs)
    return refs


def _collect_refs(node: Node, local: frozenset[str], out: list[str]) -> None:
    if isinstance(node, Reference):
        if node.path not in local and node.path not in out:
            out.append(node.path)
    elif isinstance(node, LetBinding):
        scope = local
        for name, value in zip(node.names, node.values):
            _collect_refs(value, scope, out)
            scope = scope | {name}
        _collect_refs(node.body, scope, out)
    elif isinstance(node, LambdaDef):
        _collect_refs(node.body, local | set(node.params), out)
    elif isinstance(node, FunctionCall):
        for arg in node.args:
            _collect_refs(arg, local, out)
    elif isinstance(node, LambdaCall):
        _collect_refs(node.target, local, out)
        for arg in node.args:
            _collect_refs(arg, local, out)
    elif isinstance(node, UnaryOp):
        _collect_refs(node.operand, local, out)
    elif isinstance(node, BinaryOp):
        _collect_refs(node.left, local, out)
        _collect_refs(node.right, local, out)
    elif isinstance(node, ArrayLiteral):
        for row in node.rows:
            for item in row:
                _collect_refs(item, local, out)


def parse_functions(formula: str) -> list[str]:
    """Extract all function names used in a formula (upper case, in order)."""
    funcs: list[str] = []
    for node in walk(FormulaParser().parse(formula)):
        name: str | None = None
        if isinstance(node, FunctionCall):
            name = node.name.upper()
        elif isinstance(node, LetBinding):
            name = "LET"
        elif isinstance(node, LambdaDef):
            name = "LAMBDA"
        if name is not None and name not in funcs:
            funcs.append(name)
    return funcs
