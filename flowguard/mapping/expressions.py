"""
Restricted expression language for field mappings.

Expressions are tokenized, parsed by recursive descent into an immutable AST
and evaluated against an explicit scope. Nothing on host objects is
reachable: member access reads dict keys, list indexes and ``length`` on
lists and strings, and calls resolve only to registered helper functions.

Grammar, lowest precedence first::

    conditional    := nullish ("?" conditional ":" conditional)?
    nullish        := or ("??" or)*
    or             := and ("||" and)*
    and            := equality ("&&" equality)*
    equality       := relational (("===" | "!==" | "==" | "!=") relational)*
    relational     := additive (("<" | "<=" | ">" | ">=") additive)*
    additive       := multiplicative (("+" | "-") multiplicative)*
    multiplicative := unary (("*" | "/" | "%") unary)*
    unary          := ("!" | "-" | "+") unary | postfix
    postfix        := primary ("." IDENT | "[" conditional "]" | "(" arguments ")")*
    arguments      := (argument ("," argument)*)?
    argument       := lambda | conditional
    lambda         := (IDENT | "(" (IDENT ("," IDENT)*)? ")") "=>" conditional
    primary        := NUMBER | STRING | IDENT | "(" conditional ")" | "[" items "]"
"""

import inspect
import json
import math
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Mapping, Optional, Union

from flowguard.core.exceptions import (
    ExpressionError,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
)

Function = Callable[..., Any]


# ==================== Tokens ====================

class TokenKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    IDENT = "ident"
    OPERATOR = "operator"
    EOF = "eof"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Any
    position: int


# Longest operators first so that "===" is not read as "==" followed by "="
OPERATORS: tuple[str, ...] = (
    "===", "!==",
    "==", "!=", "<=", ">=", "=>", "&&", "||", "??",
    "<", ">", "+", "-", "*", "/", "%", "!", "?", ":", ".", ",", "(", ")", "[", "]",
)

KEYWORDS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
}

_NUMBER_PATTERN = re.compile(r"(?:\d+(?:\.\d+)?|\.\d+)(?:[eE][+-]?\d+)?")
_IDENT_PATTERN = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
}


def _read_string(expression: str, start: int) -> tuple[str, int]:
    """Read a quoted string literal starting at ``start``; return (value, end)."""
    quote = expression[start]
    chars: list[str] = []
    pos = start + 1

    while pos < len(expression):
        char = expression[pos]
        if char == quote:
            return "".join(chars), pos + 1
        if char == "\\":
            pos += 1
            if pos >= len(expression):
                break
            escape = expression[pos]
            if escape == "u":
                digits = expression[pos + 1:pos + 5]
                if len(digits) != 4 or not all(c in "0123456789abcdefABCDEF" for c in digits):
                    raise ExpressionSyntaxError("Invalid unicode escape", expression, pos - 1)
                chars.append(chr(int(digits, 16)))
                pos += 5
                continue
            chars.append(_ESCAPES.get(escape, escape))
            pos += 1
            continue
        chars.append(char)
        pos += 1

    raise ExpressionSyntaxError("Unterminated string literal", expression, start)


def tokenize(expression: str) -> list[Token]:
    """Split an expression into tokens, ending with an EOF token."""
    tokens: list[Token] = []
    pos = 0

    while pos < len(expression):
        char = expression[pos]

        if char.isspace():
            pos += 1
            continue

        number = _NUMBER_PATTERN.match(expression, pos)
        if number and (char.isdigit() or char == "."):
            text = number.group()
            value: Union[int, float] = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token(TokenKind.NUMBER, value, pos))
            pos = number.end()
            continue

        if char in ("'", '"'):
            value, end = _read_string(expression, pos)
            tokens.append(Token(TokenKind.STRING, value, pos))
            pos = end
            continue

        ident = _IDENT_PATTERN.match(expression, pos)
        if ident:
            tokens.append(Token(TokenKind.IDENT, ident.group(), pos))
            pos = ident.end()
            continue

        for operator in OPERATORS:
            if expression.startswith(operator, pos):
                tokens.append(Token(TokenKind.OPERATOR, operator, pos))
                pos += len(operator)
                break
        else:
            raise ExpressionSyntaxError(f"Unexpected character {char!r}", expression, pos)

    tokens.append(Token(TokenKind.EOF, None, len(expression)))
    return tokens


# ==================== AST ====================

class Expr:
    """Base class of AST nodes."""


@dataclass(frozen=True)
class Literal(Expr):
    value: Any


@dataclass(frozen=True)
class ArrayLiteral(Expr):
    items: tuple[Expr, ...]


@dataclass(frozen=True)
class Identifier(Expr):
    name: str


@dataclass(frozen=True)
class Member(Expr):
    target: Expr
    name: str


@dataclass(frozen=True)
class Index(Expr):
    target: Expr
    index: Expr


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Lambda(Expr):
    params: tuple[str, ...]
    body: Expr


@dataclass(frozen=True)
class Unary(Expr):
    operator: str
    operand: Expr


@dataclass(frozen=True)
class Binary(Expr):
    operator: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Logical(Expr):
    operator: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Conditional(Expr):
    test: Expr
    consequent: Expr
    alternate: Expr


def children(node: Expr) -> tuple[Expr, ...]:
    """Direct child nodes of an AST node."""
    if isinstance(node, ArrayLiteral):
        return node.items
    if isinstance(node, Member):
        return (node.target,)
    if isinstance(node, Index):
        return (node.target, node.index)
    if isinstance(node, Call):
        return node.args
    if isinstance(node, Lambda):
        return (node.body,)
    if isinstance(node, Unary):
        return (node.operand,)
    if isinstance(node, (Binary, Logical)):
        return (node.left, node.right)
    if isinstance(node, Conditional):
        return (node.test, node.consequent, node.alternate)
    return ()


# ==================== Parser ====================

class Parser:
    """Recursive-descent parser producing an immutable AST."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.pos = 0

    def parse(self) -> Expr:
        if self._peek().kind is TokenKind.EOF:
            raise ExpressionSyntaxError("Empty expression", self.expression, 0)

        node = self._parse_conditional()

        token = self._peek()
        if token.kind is not TokenKind.EOF:
            raise self._error(f"Unexpected token {token.value!r}", token)
        return node

    # ---------- token helpers ----------

    def _peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def _advance(self) -> Token:
        token = self._peek()
        if token.kind is not TokenKind.EOF:
            self.pos += 1
        return token

    @staticmethod
    def _is_operator(token: Token, *values: str) -> bool:
        return token.kind is TokenKind.OPERATOR and token.value in values

    def _match(self, *values: str) -> Optional[Token]:
        if self._is_operator(self._peek(), *values):
            return self._advance()
        return None

    def _expect(self, value: str) -> Token:
        token = self._peek()
        if not self._is_operator(token, value):
            found = "end of expression" if token.kind is TokenKind.EOF else repr(token.value)
            raise self._error(f"Expected '{value}' but found {found}", token)
        return self._advance()

    def _error(self, message: str, token: Token) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(message, self.expression, token.position)

    # ---------- precedence levels ----------

    def _parse_conditional(self) -> Expr:
        test = self._parse_nullish()
        if self._match("?"):
            consequent = self._parse_conditional()
            self._expect(":")
            alternate = self._parse_conditional()
            return Conditional(test, consequent, alternate)
        return test

    def _parse_chain(self, operators: tuple[str, ...], operand: Callable[[], Expr], node_type: type) -> Expr:
        left = operand()
        while True:
            token = self._match(*operators)
            if token is None:
                return left
            left = node_type(token.value, left, operand())

    def _parse_nullish(self) -> Expr:
        return self._parse_chain(("??",), self._parse_or, Logical)

    def _parse_or(self) -> Expr:
        return self._parse_chain(("||",), self._parse_and, Logical)

    def _parse_and(self) -> Expr:
        return self._parse_chain(("&&",), self._parse_equality, Logical)

    def _parse_equality(self) -> Expr:
        return self._parse_chain(("===", "!==", "==", "!="), self._parse_relational, Binary)

    def _parse_relational(self) -> Expr:
        return self._parse_chain(("<", "<=", ">", ">="), self._parse_additive, Binary)

    def _parse_additive(self) -> Expr:
        return self._parse_chain(("+", "-"), self._parse_multiplicative, Binary)

    def _parse_multiplicative(self) -> Expr:
        return self._parse_chain(("*", "/", "%"), self._parse_unary, Binary)

    def _parse_unary(self) -> Expr:
        token = self._match("!", "-", "+")
        if token:
            return Unary(token.value, self._parse_unary())
        return self._parse_postfix()

    def _parse_postfix(self) -> Expr:
        node = self._parse_primary()

        while True:
            if self._match("."):
                token = self._advance()
                if token.kind is not TokenKind.IDENT:
                    raise self._error("Expected property name after '.'", token)
                node = Member(node, token.value)
            elif self._match("["):
                index = self._parse_conditional()
                self._expect("]")
                node = Index(node, index)
            elif self._is_operator(self._peek(), "("):
                name = self._callee_name(node)
                if name is None:
                    raise self._error("Only named helper functions can be called", self._peek())
                self._advance()
                node = Call(name, self._parse_arguments())
            else:
                return node

    @classmethod
    def _callee_name(cls, node: Expr) -> Optional[str]:
        if isinstance(node, Identifier):
            return node.name
        if isinstance(node, Member):
            base = cls._callee_name(node.target)
            return f"{base}.{node.name}" if base else None
        return None

    def _parse_arguments(self) -> tuple[Expr, ...]:
        args: list[Expr] = []
        if self._match(")"):
            return ()
        while True:
            args.append(self._parse_lambda() if self._lambda_ahead() else self._parse_conditional())
            if self._match(")"):
                return tuple(args)
            self._expect(",")

    def _lambda_ahead(self) -> bool:
        """Look ahead for ``x =>`` or ``(a, b) =>`` without consuming tokens."""
        token = self._peek()
        if token.kind is TokenKind.IDENT:
            return self._is_operator(self._peek(1), "=>")
        if not self._is_operator(token, "("):
            return False

        offset = 1
        if self._is_operator(self._peek(offset), ")"):
            return self._is_operator(self._peek(offset + 1), "=>")
        while True:
            if self._peek(offset).kind is not TokenKind.IDENT:
                return False
            offset += 1
            token = self._peek(offset)
            if self._is_operator(token, ")"):
                return self._is_operator(self._peek(offset + 1), "=>")
            if not self._is_operator(token, ","):
                return False
            offset += 1

    def _parse_lambda(self) -> Lambda:
        params: list[str] = []
        if self._match("("):
            if not self._match(")"):
                while True:
                    params.append(self._advance().value)
                    if self._match(")"):
                        break
                    self._expect(",")
        else:
            params.append(self._advance().value)

        self._expect("=>")
        return Lambda(tuple(params), self._parse_conditional())

    def _parse_primary(self) -> Expr:
        token = self._peek()

        if self._lambda_ahead():
            raise self._error("Arrow functions are only allowed as helper arguments", token)

        if token.kind in (TokenKind.NUMBER, TokenKind.STRING):
            self._advance()
            return Literal(token.value)

        if token.kind is TokenKind.IDENT:
            self._advance()
            if token.value in KEYWORDS:
                return Literal(KEYWORDS[token.value])
            return Identifier(token.value)

        if self._match("("):
            node = self._parse_conditional()
            self._expect(")")
            return node

        if self._match("["):
            items: list[Expr] = []
            if not self._match("]"):
                while True:
                    items.append(self._parse_conditional())
                    if self._match("]"):
                        break
                    self._expect(",")
            return ArrayLiteral(tuple(items))

        if token.kind is TokenKind.EOF:
            raise self._error("Unexpected end of expression", token)
        raise self._error(f"Unexpected token {token.value!r}", token)


@lru_cache(maxsize=512)
def parse(expression: str) -> Expr:
    """Parse an expression string into an AST. Results are cached."""
    return Parser(expression).parse()


# ==================== References ====================

def _static_chain(node: Expr) -> Optional[list[str]]:
    """Flatten ``a.b["c"][0]`` into path segments; None if any index is computed."""
    if isinstance(node, Identifier):
        return [node.name]
    if isinstance(node, Member):
        chain = _static_chain(node.target)
        return chain + [node.name] if chain is not None else None
    if isinstance(node, Index) and isinstance(node.index, Literal):
        chain = _static_chain(node.target)
        return chain + [stringify(node.index.value)] if chain is not None else None
    return None


def referenced_nodes(node: Expr) -> list[tuple[str, str]]:
    """
    Collect ``nodes.<id>.<path>`` reads in an AST.

    Returns (node_id, path) pairs in first-seen order. Computed indexes end
    the static part of a chain; the rest is still searched.
    """
    found: dict[tuple[str, str], None] = {}

    def visit(current: Expr) -> None:
        if isinstance(current, (Member, Index)):
            chain = _static_chain(current)
            if chain is not None and len(chain) >= 2 and chain[0] == "nodes":
                found.setdefault((chain[1], ".".join(chain[2:])), None)
                return
        for child in children(current):
            visit(child)

    visit(node)
    return list(found)


# ==================== Value semantics ====================

def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_truthy(value: Any) -> bool:
    """Truthiness where empty lists and dicts are truthy and NaN is falsy."""
    if value is None or value is False:
        return False
    if is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def normalize_number(value: Union[int, float]) -> Union[int, float]:
    """Collapse integral floats to int so ``10 / 2`` yields ``5``."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def stringify(value: Any) -> str:
    """Render a value the way string concatenation and templates show it."""
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float):
        return str(normalize_number(value))
    if isinstance(value, list):
        return ",".join("" if item is None else stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)


def parse_number(value: str) -> Optional[Union[int, float]]:
    """Parse a numeric string, returning None when it is not a number."""
    text = value.strip()
    if text == "":
        return 0
    try:
        return normalize_number(float(text))
    except ValueError:
        return None


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "function" if callable(value) else type(value).__name__


def get_member(target: Any, key: Any) -> Any:
    """Read a dict key, list index or ``length``. Anything else is None."""
    if target is None:
        return None

    if isinstance(target, dict):
        if isinstance(key, str):
            return target.get(key)
        if is_number(key) and float(key).is_integer():
            return target.get(str(int(key)))
        return None

    if isinstance(target, (list, str)):
        if key == "length":
            return len(target)
        if isinstance(key, str) and key.isdigit():
            key = int(key)
        if is_number(key) and float(key).is_integer():
            index = int(key)
            return target[index] if 0 <= index < len(target) else None

    return None


# ==================== Evaluator ====================

class Scope:
    """Variable bindings and callable helpers visible to an expression."""

    def __init__(
        self,
        variables: Mapping[str, Any],
        functions: Mapping[str, Function],
        parent: Optional["Scope"] = None,
    ):
        self.variables = variables
        self.functions = functions
        self.parent = parent

    def lookup(self, name: str) -> Any:
        if name in self.variables:
            return self.variables[name]
        if self.parent is not None:
            return self.parent.lookup(name)
        if name in self.functions:
            return self.functions[name]
        raise ExpressionEvaluationError(f"'{name}' is not defined")

    def child(self, variables: Mapping[str, Any]) -> "Scope":
        return Scope(variables, self.functions, self)


class LambdaFunction:
    """An arrow function closed over the scope it was written in."""

    def __init__(self, node: Lambda, scope: Scope):
        self.node = node
        self.scope = scope

    async def __call__(self, *args: Any) -> Any:
        bindings = {
            name: args[i] if i < len(args) else None
            for i, name in enumerate(self.node.params)
        }
        return await _evaluate(self.node.body, self.scope.child(bindings))


def _as_number(value: Any, operator: str) -> Union[int, float]:
    if isinstance(value, bool):
        return int(value)
    if is_number(value):
        return value
    raise ExpressionEvaluationError(
        f"Operator '{operator}' expects numbers, got {type_name(value)}"
    )


def _equals(left: Any, right: Any, strict: bool) -> bool:
    if not strict:
        if isinstance(left, bool):
            left = int(left)
        if isinstance(right, bool):
            right = int(right)
        if is_number(left) and isinstance(right, str):
            return parse_number(right) == left
        if isinstance(left, str) and is_number(right):
            return parse_number(left) == right
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _compare(operator: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if not (is_number(left) and is_number(right)) and not (
        isinstance(left, str) and isinstance(right, str)
    ):
        raise ExpressionEvaluationError(
            f"Cannot compare {type_name(left)} with {type_name(right)}"
        )
    if operator == "<":
        return left < right
    if operator == "<=":
        return left <= right
    if operator == ">":
        return left > right
    return left >= right


def _apply_binary(operator: str, left: Any, right: Any) -> Any:
    if operator == "+":
        if isinstance(left, str) or isinstance(right, str):
            return stringify(left) + stringify(right)
        return normalize_number(_as_number(left, operator) + _as_number(right, operator))

    if operator in ("-", "*", "/", "%"):
        a, b = _as_number(left, operator), _as_number(right, operator)
        if operator == "-":
            return normalize_number(a - b)
        if operator == "*":
            return normalize_number(a * b)
        if b == 0:
            raise ExpressionEvaluationError("Division by zero")
        if operator == "/":
            return normalize_number(a / b)
        return normalize_number(math.fmod(a, b))

    if operator in ("===", "=="):
        return _equals(left, right, strict=operator == "===")
    if operator in ("!==", "!="):
        return not _equals(left, right, strict=operator == "!==")

    return _compare(operator, left, right)


def _apply_unary(operator: str, value: Any) -> Any:
    if operator == "!":
        return not is_truthy(value)
    if operator == "+" and isinstance(value, str):
        number = parse_number(value)
        if number is None:
            raise ExpressionEvaluationError(f"Cannot convert {value!r} to a number")
        return number
    number = _as_number(value, operator)
    return -number if operator == "-" else number


async def _call(node: Call, scope: Scope) -> Any:
    func = scope.functions.get(node.name)
    if func is None:
        raise ExpressionEvaluationError(f"Unknown function '{node.name}'")

    args = [await _evaluate(arg, scope) for arg in node.args]
    try:
        result = func(*args)
        if inspect.isawaitable(result):
            result = await result
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionEvaluationError(f"Function '{node.name}' failed: {e}") from e
    return result


async def _evaluate(node: Expr, scope: Scope) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Identifier):
        return scope.lookup(node.name)

    if isinstance(node, ArrayLiteral):
        return [await _evaluate(item, scope) for item in node.items]

    if isinstance(node, Member):
        return get_member(await _evaluate(node.target, scope), node.name)

    if isinstance(node, Index):
        target = await _evaluate(node.target, scope)
        return get_member(target, await _evaluate(node.index, scope))

    if isinstance(node, Call):
        return await _call(node, scope)

    if isinstance(node, Lambda):
        return LambdaFunction(node, scope)

    if isinstance(node, Unary):
        return _apply_unary(node.operator, await _evaluate(node.operand, scope))

    if isinstance(node, Logical):
        left = await _evaluate(node.left, scope)
        if node.operator == "&&":
            return await _evaluate(node.right, scope) if is_truthy(left) else left
        if node.operator == "||":
            return left if is_truthy(left) else await _evaluate(node.right, scope)
        return left if left is not None else await _evaluate(node.right, scope)

    if isinstance(node, Binary):
        left = await _evaluate(node.left, scope)
        right = await _evaluate(node.right, scope)
        return _apply_binary(node.operator, left, right)

    if isinstance(node, Conditional):
        test = await _evaluate(node.test, scope)
        branch = node.consequent if is_truthy(test) else node.alternate
        return await _evaluate(branch, scope)

    raise ExpressionEvaluationError(f"Unsupported expression node: {type(node).__name__}")


async def evaluate(
    expression: Union[str, Expr],
    variables: Mapping[str, Any],
    functions: Mapping[str, Function],
) -> Any:
    """
    Evaluate an expression.

    Args:
        expression: Source text or an already parsed AST
        variables: Names readable by the expression
        functions: Helpers callable by name (sync or async)

    Raises:
        ExpressionSyntaxError: If the source cannot be parsed
        ExpressionEvaluationError: If evaluation fails
    """
    node = parse(expression) if isinstance(expression, str) else expression
    return await _evaluate(node, Scope(variables, functions))
