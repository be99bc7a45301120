# cadence/dims.py

from __future__ import annotations

import operator
from typing import Callable, Dict, FrozenSet, Optional, Union

from .errors import ShapeComputationError, UnresolvedSymbolError
from .symbols import Symbol, SymbolValues

DimLike = Union[int, Symbol, "Dim"]


class Dim:
    """
    Dimension expression: an integer constant, a symbol, or arithmetic over them.

    Supports ``+``, ``-``, ``*``, floor division ``//``, exact division ``/``
    and ``ceil_div``. Expressions are immutable; constants fold eagerly.
    """

    def eval(self, values: SymbolValues) -> int:
        raise NotImplementedError

    def symbols(self) -> FrozenSet[Symbol]:
        raise NotImplementedError

    def eval_size(self, values: SymbolValues) -> int:
        """Evaluate to a concrete size; negative results are rejected."""
        value = self.eval(values)
        if value < 0:
            raise ShapeComputationError(f"Dimension {self} resolved to negative size {value}")
        return value

    def is_concrete(self) -> bool:
        return not self.symbols()

    def to_int(self) -> int:
        return self.eval(SymbolValues())

    # --- arithmetic --------------------------------------------------------

    def __add__(self, other: DimLike) -> "Dim":
        return _binary("+", self, to_dim(other))

    def __radd__(self, other: DimLike) -> "Dim":
        return _binary("+", to_dim(other), self)

    def __sub__(self, other: DimLike) -> "Dim":
        return _binary("-", self, to_dim(other))

    def __rsub__(self, other: DimLike) -> "Dim":
        return _binary("-", to_dim(other), self)

    def __mul__(self, other: DimLike) -> "Dim":
        return _binary("*", self, to_dim(other))

    def __rmul__(self, other: DimLike) -> "Dim":
        return _binary("*", to_dim(other), self)

    def __floordiv__(self, other: DimLike) -> "Dim":
        return _binary("//", self, to_dim(other))

    def __truediv__(self, other: DimLike) -> "Dim":
        return _binary("/", self, to_dim(other))

    def ceil_div(self, other: DimLike) -> "Dim":
        return _binary("ceil", self, to_dim(other))


class ConstDim(Dim):
    __slots__ = ("value",)

    def __init__(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"ConstDim requires an int, got {type(value).__name__}")
        self.value = value

    def eval(self, values: SymbolValues) -> int:
        return self.value

    def symbols(self) -> FrozenSet[Symbol]:
        return frozenset()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, int) and not isinstance(other, bool):
            return self.value == other
        return isinstance(other, ConstDim) and other.value == self.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __repr__(self) -> str:
        return str(self.value)


class SymbolDim(Dim):
    __slots__ = ("symbol",)

    def __init__(self, symbol: Symbol) -> None:
        self.symbol = symbol

    def eval(self, values: SymbolValues) -> int:
        value = values.get(self.symbol)
        if value is None:
            raise UnresolvedSymbolError(self.symbol)
        return value

    def symbols(self) -> FrozenSet[Symbol]:
        return frozenset([self.symbol])

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Symbol):
            return other == self.symbol
        return isinstance(other, SymbolDim) and other.symbol == self.symbol

    def __hash__(self) -> int:
        return hash(self.symbol)

    def __repr__(self) -> str:
        return str(self.symbol)


def _floor(a: int, b: int) -> int:
    return a // b


def _exact(a: int, b: int) -> int:
    if a % b:
        raise ShapeComputationError(f"{a} is not divisible by {b}")
    return a // b


def _ceil(a: int, b: int) -> int:
    return -(-a // b)


_OPS: Dict[str, Callable[[int, int], int]] = {
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "//": _floor,
    "/": _exact,
    "ceil": _ceil,
}

_DIVISIONS = ("//", "/", "ceil")


class BinaryDim(Dim):
    __slots__ = ("op", "lhs", "rhs")

    def __init__(self, op: str, lhs: Dim, rhs: Dim) -> None:
        if op not in _OPS:
            raise ValueError(f"Unsupported dimension operator {op!r}")
        self.op = op
        self.lhs = lhs
        self.rhs = rhs

    def eval(self, values: SymbolValues) -> int:
        lhs = self.lhs.eval(values)
        rhs = self.rhs.eval(values)
        if self.op in _DIVISIONS and rhs == 0:
            raise ShapeComputationError(f"Division by zero in dimension {self}")
        try:
            return _OPS[self.op](lhs, rhs)
        except ShapeComputationError as exc:
            raise ShapeComputationError(f"Dimension {self} is not integral: {exc.message}") from None

    def symbols(self) -> FrozenSet[Symbol]:
        return self.lhs.symbols() | self.rhs.symbols()

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, BinaryDim)
            and other.op == self.op
            and other.lhs == self.lhs
            and other.rhs == self.rhs
        )

    def __hash__(self) -> int:
        return hash((self.op, self.lhs, self.rhs))

    def __repr__(self) -> str:
        if self.op == "ceil":
            return f"ceil({self.lhs!r}/{self.rhs!r})"
        return f"({self.lhs!r}{self.op}{self.rhs!r})"


def _binary(op: str, lhs: Dim, rhs: Dim) -> Dim:
    if isinstance(lhs, ConstDim) and isinstance(rhs, ConstDim):
        return ConstDim(BinaryDim(op, lhs, rhs).to_int())
    return BinaryDim(op, lhs, rhs)


def to_dim(value: DimLike) -> Dim:
    if isinstance(value, Dim):
        return value
    if isinstance(value, Symbol):
        return SymbolDim(value)
    if isinstance(value, bool):
        raise TypeError("Booleans are not dimensions")
    if isinstance(value, int):
        return ConstDim(value)
    # numpy integers and 0-d integer tensors
    try:
        return ConstDim(operator.index(value))  # type: ignore[arg-type]
    except TypeError:
        raise TypeError(f"Can not convert {value!r} to a dimension") from None


def try_eval(dim: Dim, values: SymbolValues) -> Optional[int]:
    """Evaluate ``dim`` or return None when a symbol is still unbound."""
    try:
        return dim.eval(values)
    except UnresolvedSymbolError:
        return None
