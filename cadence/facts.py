# cadence/facts.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import torch

from .dims import Dim, DimLike, to_dim
from .symbols import SymbolValues


def _dims(shape: Sequence[DimLike]) -> Tuple[Dim, ...]:
    return tuple(to_dim(d) for d in shape)


def _fmt_shape(shape: Sequence[Dim]) -> str:
    return ",".join(repr(d) for d in shape)


@dataclass(frozen=True, init=False)
class TypedFact:
    """
    Regular-mode tensor descriptor: element type plus symbolic shape.
    """

    dtype: torch.dtype
    shape: Tuple[Dim, ...]

    def __init__(self, dtype: torch.dtype, shape: Sequence[DimLike]) -> None:
        object.__setattr__(self, "dtype", dtype)
        object.__setattr__(self, "shape", _dims(shape))

    @property
    def rank(self) -> int:
        return len(self.shape)

    def resolve_shape(self, values: SymbolValues) -> Tuple[int, ...]:
        return tuple(d.eval_size(values) for d in self.shape)

    def __repr__(self) -> str:
        return f"{_fmt_shape(self.shape)},{self.dtype}"


@dataclass(frozen=True, init=False)
class PulsedFact:
    """
    Pulsed-mode tensor descriptor.

    ``shape`` is the per-call (pulse-sized) shape; ``axis`` the streaming axis;
    ``dim`` the full-stream length along that axis as an expression of the
    stream symbol; ``delay`` the number of leading positions along the axis that
    carry no valid data yet.
    """

    dtype: torch.dtype
    shape: Tuple[Dim, ...]
    axis: int
    dim: Dim
    delay: int

    def __init__(
        self,
        dtype: torch.dtype,
        shape: Sequence[DimLike],
        axis: int,
        dim: DimLike,
        delay: int = 0,
    ) -> None:
        dims = _dims(shape)
        if not 0 <= axis < len(dims):
            raise ValueError(f"Streaming axis {axis} out of range for rank {len(dims)}")
        if not dims[axis].is_concrete():
            raise ValueError("Pulse size along the streaming axis must be a concrete integer")
        if dims[axis].to_int() <= 0:
            raise ValueError("Pulse size must be positive")
        if delay < 0:
            raise ValueError("delay must be >= 0")
        object.__setattr__(self, "dtype", dtype)
        object.__setattr__(self, "shape", dims)
        object.__setattr__(self, "axis", int(axis))
        object.__setattr__(self, "dim", to_dim(dim))
        object.__setattr__(self, "delay", int(delay))

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def pulse(self) -> int:
        return self.shape[self.axis].to_int()

    def resolve_shape(self, values: SymbolValues) -> Tuple[int, ...]:
        return tuple(d.eval_size(values) for d in self.shape)

    def __repr__(self) -> str:
        return (
            f"{_fmt_shape(self.shape)},{self.dtype} "
            f"[pulse axis={self.axis} dim={self.dim!r} delay={self.delay}]"
        )
