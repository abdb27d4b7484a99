"""
Defines the core data types for the CRISP language runtime.

This module provides the syntax tree node variants produced by the parser,
source locations used for diagnostics, the fixed-point number representation
used for on-chain amounts, and the action descriptors the interpreter emits.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from fractions import Fraction
from typing import Any, ClassVar, List, NamedTuple, Optional, Tuple, Union

# =================================================================
# Source locations
# =================================================================

class Position(NamedTuple):
    """A 1-based (line, column) pair inside a script."""
    line: int
    column: int


@dataclass(frozen=True)
class Location:
    """The span of source text consumed by a node."""
    start: Position
    end: Position
    start_offset: int
    end_offset: int

    @property
    def line(self) -> int:
        return self.start.line

    @property
    def column(self) -> int:
        return self.start.column

    def contains(self, pos: Position) -> bool:
        return self.start <= pos <= self.end

    def to_dict(self) -> dict:
        return {
            'line': self.start.line,
            'col': self.start.column,
            'end_line': self.end.line,
            'end_col': self.end.column,
            'offset': self.start_offset,
            'end_offset': self.end_offset,
        }

    def __str__(self) -> str:
        return f"{self.start.line}:{self.start.column},{self.end.line}:{self.end.column}"


# =================================================================
# Numbers
# =================================================================

TIME_UNITS = {
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
    'w': 604800,
    'mo': 2592000,
    'y': 31536000,
}

_NUMBER_RE = re.compile(r'^(-?)(\d+)(?:\.(\d+))?(?:e(\d+))?(mo|s|m|h|d|w|y)?$')


@dataclass(frozen=True)
class FixedPoint:
    """An exact decimal number: ``mantissa * 10 ** exponent``.

    Numeric literals are never converted to floats so that amounts such as
    ``10.50e18`` keep every digit.
    """
    mantissa: int
    exponent: int = 0

    @classmethod
    def parse(cls, text: str) -> Tuple['FixedPoint', Optional[str]]:
        """Parses a numeric literal, returning the number and its time unit (if any)."""
        m = _NUMBER_RE.match(text)
        if not m:
            raise ValueError(f"invalid number literal {text!r}")
        sign, whole, frac, exp, unit = m.groups()
        frac = frac or ''
        mantissa = int(whole + frac)
        if sign:
            mantissa = -mantissa
        exponent = int(exp or 0) - len(frac)
        return cls(mantissa, exponent).normalized(), unit

    def normalized(self) -> 'FixedPoint':
        """Strips trailing zeros from the mantissa into the exponent."""
        mantissa, exponent = self.mantissa, self.exponent
        while mantissa and mantissa % 10 == 0 and exponent < 0:
            mantissa //= 10
            exponent += 1
        return FixedPoint(mantissa, exponent)

    @classmethod
    def from_python(cls, value: Union[int, Decimal]) -> 'FixedPoint':
        if isinstance(value, Decimal):
            sign, digits, exponent = value.as_tuple()
            mantissa = int(''.join(map(str, digits)) or '0')
            return cls(-mantissa if sign else mantissa, exponent).normalized()
        return cls(int(value))

    def scale(self, factor: int) -> 'FixedPoint':
        return FixedPoint(self.mantissa * factor, self.exponent).normalized()

    def _aligned(self, other: 'FixedPoint') -> Tuple[int, int, int]:
        exponent = min(self.exponent, other.exponent)
        return (
            self.mantissa * 10 ** (self.exponent - exponent),
            other.mantissa * 10 ** (other.exponent - exponent),
            exponent,
        )

    def __add__(self, other: 'FixedPoint') -> 'FixedPoint':
        a, b, exponent = self._aligned(other)
        return FixedPoint(a + b, exponent).normalized()

    def __sub__(self, other: 'FixedPoint') -> 'FixedPoint':
        a, b, exponent = self._aligned(other)
        return FixedPoint(a - b, exponent).normalized()

    def __mul__(self, other: 'FixedPoint') -> 'FixedPoint':
        return FixedPoint(self.mantissa * other.mantissa, self.exponent + other.exponent).normalized()

    def __pow__(self, n: int) -> 'FixedPoint':
        return FixedPoint(self.mantissa ** n, self.exponent * n).normalized()

    def divide(self, other: 'FixedPoint', places: int) -> 'FixedPoint':
        """Exact quotient when it terminates, otherwise truncated toward zero at ``places`` decimals."""
        a, b, _ = self._aligned(other)
        q = Fraction(a, b)
        den = q.denominator
        twos = fives = 0
        while den % 2 == 0:
            den //= 2
            twos += 1
        while den % 5 == 0:
            den //= 5
            fives += 1
        digits = max(twos, fives) if den == 1 else places
        return FixedPoint(int(q * 10 ** digits), -digits).normalized()

    def truncate(self) -> int:
        """The integer part, rounded toward zero."""
        if self.exponent >= 0:
            return self.mantissa * 10 ** self.exponent
        q = abs(self.mantissa) // 10 ** -self.exponent
        return -q if self.mantissa < 0 else q

    @property
    def is_integral(self) -> bool:
        return self.exponent >= 0 or self.mantissa % (10 ** -self.exponent) == 0

    def to_python(self) -> Union[int, Decimal]:
        """Returns an ``int`` when the value is integral, otherwise an exact ``Decimal``."""
        if self.exponent >= 0:
            return self.mantissa * 10 ** self.exponent
        if self.is_integral:
            return self.mantissa // 10 ** -self.exponent
        sign = 1 if self.mantissa < 0 else 0
        digits = tuple(int(d) for d in str(abs(self.mantissa)))
        return Decimal((sign, digits, self.exponent))

    def __str__(self) -> str:
        if self.exponent == 0:
            return str(self.mantissa)
        return f"{self.mantissa}e{self.exponent}"


# =================================================================
# Syntax tree
# =================================================================

@dataclass(frozen=True)
class Node:
    """Base of the closed set of syntax tree variants.

    ``loc`` is only used for diagnostics, so it takes no part in equality:
    two nodes parsed from different positions compare equal when their
    structure does.
    """
    kind: ClassVar[str] = "Node"
    loc: Optional[Location] = field(default=None, compare=False, repr=False, kw_only=True)


@dataclass(frozen=True)
class Program(Node):
    kind: ClassVar[str] = "Program"
    body: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class BlockExpression(Node):
    kind: ClassVar[str] = "BlockExpression"
    body: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class CommandOpt(Node):
    kind: ClassVar[str] = "CommandOpt"
    name: str
    value: Node


@dataclass(frozen=True)
class CommandExpression(Node):
    kind: ClassVar[str] = "CommandExpression"
    name: str
    args: Tuple[Node, ...] = ()
    opts: Tuple[CommandOpt, ...] = ()
    module: Optional[str] = None

    def get_opt(self, name: str) -> Optional[CommandOpt]:
        for opt in self.opts:
            if opt.name == name:
                return opt
        return None

    @property
    def full_name(self) -> str:
        return f"{self.module}:{self.name}" if self.module else self.name


@dataclass(frozen=True)
class HelperFunctionExpression(Node):
    kind: ClassVar[str] = "HelperFunctionExpression"
    name: str
    args: Tuple[Node, ...] = ()


class Literal(Node):
    """Marker base for literal variants."""


@dataclass(frozen=True)
class StringLiteral(Literal):
    kind: ClassVar[str] = "StringLiteral"
    value: str


@dataclass(frozen=True)
class NumberLiteral(Literal):
    kind: ClassVar[str] = "NumberLiteral"
    value: FixedPoint
    unit: Optional[str] = None


@dataclass(frozen=True)
class BoolLiteral(Literal):
    kind: ClassVar[str] = "BoolLiteral"
    value: bool


@dataclass(frozen=True)
class AddressLiteral(Literal):
    kind: ClassVar[str] = "AddressLiteral"
    value: str


@dataclass(frozen=True)
class BytesLiteral(Literal):
    kind: ClassVar[str] = "BytesLiteral"
    value: str


@dataclass(frozen=True)
class ArrayExpression(Node):
    kind: ClassVar[str] = "ArrayExpression"
    elements: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class ArithmeticExpression(Node):
    kind: ClassVar[str] = "ArithmeticExpression"
    operator: str
    left: Node
    right: Node


@dataclass(frozen=True)
class VariableIdentifier(Node):
    kind: ClassVar[str] = "VariableIdentifier"
    name: str


@dataclass(frozen=True)
class ProbableIdentifier(Node):
    kind: ClassVar[str] = "ProbableIdentifier"
    value: str


def iter_nodes(node: Node):
    """Yields ``node`` and every node below it, depth-first and left to right."""
    yield node
    match node:
        case Program(body=body) | BlockExpression(body=body):
            for child in body:
                yield from iter_nodes(child)
        case CommandExpression(args=args, opts=opts):
            for child in args:
                yield from iter_nodes(child)
            for opt in opts:
                yield from iter_nodes(opt)
        case CommandOpt(value=value):
            yield from iter_nodes(value)
        case HelperFunctionExpression(args=args):
            for child in args:
                yield from iter_nodes(child)
        case ArrayExpression(elements=elements):
            for child in elements:
                yield from iter_nodes(child)
        case ArithmeticExpression(left=left, right=right):
            yield from iter_nodes(left)
            yield from iter_nodes(right)


# =================================================================
# Addresses
# =================================================================

ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
ZERO_ADDRESS = '0x' + '0' * 40


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def same_address(a: Any, b: Any) -> bool:
    return is_address(a) and is_address(b) and a.lower() == b.lower()


class Placeholder:
    """A value the eager evaluator could not compute yet.

    Eager mode binds placeholders for values that only exist once a script
    really runs (results of helpers that were never resolved, contracts that
    have not been created). They are a distinct type so that nothing ever
    mistakes one for a real address.
    """
    def __init__(self, source: str):
        self.source = source

    def __repr__(self) -> str:
        return f"<Placeholder {self.source}>"

    def __eq__(self, other):
        return isinstance(other, Placeholder) and self.source == other.source

    def __hash__(self):
        return hash(('placeholder', self.source))


# =================================================================
# Actions
# =================================================================

@dataclass
class TransactionAction:
    """An unsent contract call."""
    to: str
    data: str
    value: int = 0

    def to_dict(self) -> dict:
        out = {'to': self.to, 'data': self.data}
        if self.value:
            out['value'] = self.value
        return out


@dataclass
class BatchAction:
    """An ordered group of actions executed as one unit.

    ``transaction`` is the outer call that carries the inner actions (for
    instance a forwarding path); when it is ``None`` the inner actions are
    meant to be submitted together in order.
    """
    actions: List['Action'] = field(default_factory=list)
    transaction: Optional[TransactionAction] = None

    def to_dict(self) -> dict:
        out: dict = {'batch': [a.to_dict() for a in self.actions]}
        if self.transaction is not None:
            out['transaction'] = self.transaction.to_dict()
        return out


Action = Union[TransactionAction, BatchAction]
