# cadence/symbols.py

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import BindingSyntaxError

LOGGER = logging.getLogger("cadence.symbols")

I64_MIN = -(2**63)
I64_MAX = 2**63 - 1

STREAM_SYMBOL_NAME = "S"

# Optional sign and ASCII digits, nothing else.
_INTEGER = re.compile(r"[+-]?[0-9]+")


class Symbol:
    """
    Free integer variable used inside dimension expressions.

    Identifiers are exactly one character long (batch size ``N``, stream
    position ``S``, ...). Two symbols with the same character are equal.
    """

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        if not isinstance(name, str) or len(name) != 1:
            raise ValueError(f"Symbol identifiers are single characters, got {name!r}")
        self.name = name

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Symbol) and other.name == self.name

    def __hash__(self) -> int:
        return hash(("Symbol", self.name))

    def __repr__(self) -> str:
        return f"Symbol({self.name!r})"

    def __str__(self) -> str:
        return self.name

    # Arithmetic builds dimension expressions; see cadence.dims.
    def to_dim(self):
        from .dims import SymbolDim

        return SymbolDim(self)

    def __add__(self, other):
        return self.to_dim() + other

    def __radd__(self, other):
        return other + self.to_dim()

    def __sub__(self, other):
        return self.to_dim() - other

    def __rsub__(self, other):
        return other - self.to_dim()

    def __mul__(self, other):
        return self.to_dim() * other

    def __rmul__(self, other):
        return other * self.to_dim()

    def __floordiv__(self, other):
        return self.to_dim() // other

    def __truediv__(self, other):
        return self.to_dim() / other


def stream_symbol() -> Symbol:
    """The symbol standing for the full length of a stream along its axis."""
    return Symbol(STREAM_SYMBOL_NAME)


class SymbolValues:
    """
    Symbol table: Symbol -> bound signed 64-bit integer.

    Rebinding a symbol overwrites the previous value (last write wins).
    """

    def __init__(self, values: Optional[Dict[Symbol, int]] = None) -> None:
        self._values: Dict[Symbol, int] = {}
        if values:
            for symbol, value in values.items():
                self.bind(symbol, value)

    def bind(self, symbol: Symbol, value: int) -> None:
        if not isinstance(symbol, Symbol):
            symbol = Symbol(symbol)
        previous = self._values.get(symbol)
        if previous is not None and previous != value:
            LOGGER.debug("Rebinding %s: %d -> %d", symbol, previous, value)
        self._values[symbol] = int(value)

    def with_value(self, symbol: Symbol, value: int) -> "SymbolValues":
        values = self.copy()
        values.bind(symbol, value)
        return values

    def copy(self) -> "SymbolValues":
        return SymbolValues(dict(self._values))

    def get(self, symbol: Symbol) -> Optional[int]:
        return self._values.get(symbol)

    def __getitem__(self, symbol: Symbol) -> int:
        return self._values[symbol]

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._values

    def __iter__(self) -> Iterator[Symbol]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def items(self) -> Iterable[Tuple[Symbol, int]]:
        return self._values.items()

    def __repr__(self) -> str:
        inner = ", ".join(f"{symbol}={value}" for symbol, value in self._values.items())
        return f"SymbolValues({inner})"


def parse_binding(text: str) -> Tuple[Symbol, int]:
    """
    Parse a ``<symbol>=<integer>`` token, e.g. ``S=12``.

    Splits on the first ``=``. The identifier must be a single character and the
    value a signed 64-bit integer.
    """
    name, sep, raw_value = text.partition("=")
    if not sep:
        raise BindingSyntaxError(f"Expected S=12 form, got {text!r}", binding=text)
    name = name.strip()
    raw_value = raw_value.strip()
    if not name:
        raise BindingSyntaxError(f"Missing symbol name in {text!r}", binding=text)
    if len(name) != 1:
        raise BindingSyntaxError(
            f"Symbol names are single characters, got {name!r}", binding=text
        )
    if not raw_value:
        raise BindingSyntaxError(f"Missing value in {text!r}", binding=text)
    if _INTEGER.fullmatch(raw_value) is None:
        raise BindingSyntaxError(
            f"Can not parse symbol value {raw_value!r} as an integer", binding=text
        )
    value = int(raw_value)
    if not I64_MIN <= value <= I64_MAX:
        raise BindingSyntaxError(
            f"Symbol value {value} does not fit a signed 64-bit integer", binding=text
        )
    return Symbol(name), value


def apply_bindings(values: SymbolValues, texts: Iterable[str]) -> List[Tuple[Symbol, int]]:
    """
    Bind every ``symbol=value`` token into ``values``.

    All tokens are parsed before the first one is applied, so a malformed token
    leaves the table untouched. Duplicates are applied in order: the last wins.
    """
    parsed = [parse_binding(text) for text in texts]
    for symbol, value in parsed:
        values.bind(symbol, value)
    return parsed
