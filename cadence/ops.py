# cadence/ops.py

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .dims import Dim, DimLike, to_dim

if TYPE_CHECKING:
    from .plan import SessionState

Tensors = Tuple[torch.Tensor, ...]


class OpState:
    """
    Mutable per-run buffers of a stateful operator.

    Owned by the ExecutionState; successive calls (turns or pulses) see the
    buffers left behind by the previous call.
    """

    def eval(self, session: "SessionState", op: "Op", inputs: Sequence[torch.Tensor]) -> Tensors:
        raise NotImplementedError


class Op:
    """
    Operator prototype evaluated once per node per run.

    Stateless operators implement ``eval``; operators needing the session
    (symbol values, inputs) override ``eval_with_session``; stateful operators
    return a fresh ``OpState`` from ``state``.
    """

    output_count: int = 1

    @property
    def name(self) -> str:
        return type(self).__name__

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        raise NotImplementedError(f"{self.name} has no stateless evaluation")

    def eval_with_session(self, session: "SessionState", inputs: Sequence[torch.Tensor]) -> Tensors:
        return self.eval(inputs)

    def state(self, session: "SessionState", node_id: int) -> Optional[OpState]:
        return None

    def __repr__(self) -> str:
        return self.name


def _expect_op(op: Op, kind: type) -> None:
    if not isinstance(op, kind):
        raise TypeError(f"{kind.__name__} state evaluated with {op!r}")


def _single(inputs: Sequence[torch.Tensor], op: Op) -> torch.Tensor:
    if len(inputs) != 1:
        raise ValueError(f"{op.name} expects 1 input, got {len(inputs)}")
    return inputs[0]


# ---------------------------------------------------------------------------
# Graph plumbing
# ---------------------------------------------------------------------------


class _SourceState(OpState):
    def __init__(self, node_id: int) -> None:
        self.node_id = node_id

    def eval(self, session: "SessionState", op: Op, inputs: Sequence[torch.Tensor]) -> Tensors:
        if self.node_id not in session.inputs:
            raise RuntimeError(f"No value provided for source node #{self.node_id}")
        return (session.inputs[self.node_id],)


class Source(Op):
    """Model input placeholder; yields the value provided for this run."""

    def state(self, session: "SessionState", node_id: int) -> Optional[OpState]:
        return _SourceState(node_id)


class Const(Op):
    def __init__(self, value: torch.Tensor) -> None:
        self.value = value

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return (self.value,)

    def __repr__(self) -> str:
        return f"Const({tuple(self.value.shape)}, {self.value.dtype})"


class Fill(Op):
    """
    Tensor of ``value`` whose shape is evaluated against the session symbols.
    """

    def __init__(
        self,
        shape: Sequence[DimLike],
        value: float = 0.0,
        dtype: torch.dtype = torch.float32,
    ) -> None:
        self.shape: Tuple[Dim, ...] = tuple(to_dim(d) for d in shape)
        self.value = value
        self.dtype = dtype

    def eval_with_session(self, session: "SessionState", inputs: Sequence[torch.Tensor]) -> Tensors:
        shape = tuple(d.eval_size(session.resolved_symbols) for d in self.shape)
        return (torch.full(shape, self.value, dtype=self.dtype),)

    def __repr__(self) -> str:
        return f"Fill({','.join(repr(d) for d in self.shape)})"


# ---------------------------------------------------------------------------
# Stateless arithmetic
# ---------------------------------------------------------------------------


class Elementwise(Op):
    """
    Broadcasting binary operation between two inputs.
    """

    _OPS = {
        "add": torch.add,
        "sub": torch.sub,
        "mul": torch.mul,
        "div": torch.div,
        "max": torch.maximum,
        "min": torch.minimum,
    }

    def __init__(self, op: str) -> None:
        if op not in self._OPS:
            raise ValueError(f"Unsupported Elementwise op {op}")
        self.op = op

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        if len(inputs) != 2:
            raise ValueError(f"Elementwise({self.op}) expects 2 inputs, got {len(inputs)}")
        a, b = inputs
        return (self._OPS[self.op](a, b),)

    def __repr__(self) -> str:
        return f"Elementwise({self.op})"


class Activation(Op):
    """
    Unary elementwise function.
    """

    def __init__(self, act: str) -> None:
        self.act = act
        self._fn = self._resolve(act)

    @staticmethod
    def _resolve(act: str):
        if act == "relu":
            return F.relu
        if act == "tanh":
            return torch.tanh
        if act == "sigmoid":
            return torch.sigmoid
        if act == "identity":
            return lambda x: x
        if act == "exp":
            return torch.exp
        if act == "log":
            return torch.log
        if act == "sqrt":
            return torch.sqrt
        if act == "neg":
            return torch.neg
        if act == "abs":
            return torch.abs
        raise ValueError(f"Unsupported activation {act}")

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return (self._fn(_single(inputs, self)),)

    def __repr__(self) -> str:
        return f"Activation({self.act})"


class Linear(Op):
    """Affine map over the last axis: ``x @ weight.T + bias``."""

    def __init__(self, weight: torch.Tensor, bias: Optional[torch.Tensor] = None) -> None:
        if weight.dim() != 2:
            raise ValueError("Linear weight must be rank-2 (out_features, in_features).")
        if bias is not None and bias.shape != (weight.shape[0],):
            raise ValueError("Linear bias must have shape (out_features,).")
        self.weight = weight
        self.bias = bias

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return (F.linear(_single(inputs, self), self.weight, self.bias),)

    def __repr__(self) -> str:
        out_features, in_features = self.weight.shape
        return f"Linear({in_features}->{out_features})"


class Cast(Op):
    def __init__(self, dtype: torch.dtype) -> None:
        self.dtype = dtype

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return (_single(inputs, self).to(self.dtype),)

    def __repr__(self) -> str:
        return f"Cast({self.dtype})"


class Quantize(Op):
    """Per-tensor affine quantization to qint8, quint8 or qint32."""

    def __init__(self, scale: float, zero_point: int, dtype: torch.dtype = torch.qint8) -> None:
        if dtype not in (torch.qint8, torch.quint8, torch.qint32):
            raise ValueError(f"Unsupported quantized dtype {dtype}")
        self.scale = float(scale)
        self.zero_point = int(zero_point)
        self.dtype = dtype

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        x = _single(inputs, self)
        return (torch.quantize_per_tensor(x.float(), self.scale, self.zero_point, self.dtype),)

    def __repr__(self) -> str:
        return f"Quantize({self.dtype}, scale={self.scale}, zero_point={self.zero_point})"


class Dequantize(Op):
    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return (_single(inputs, self).dequantize(),)


def _valid_filter(x: torch.Tensor, weights: torch.Tensor, axis: int) -> torch.Tensor:
    size = weights.shape[0]
    moved = x.movedim(axis, -1)
    if moved.shape[-1] < size:
        raise ValueError(
            f"Window of {size} does not fit an axis of length {moved.shape[-1]}"
        )
    windows = moved.unfold(-1, size, 1)
    filtered = (windows * weights.to(x.dtype)).sum(dim=-1)
    return filtered.movedim(-1, axis)


class WindowFilter(Op):
    """
    Finite impulse response filter along ``axis`` without padding.

    ``out[j] = sum_i weights[i] * x[j + i]``; an axis of length ``n`` yields
    ``n - len(weights) + 1`` positions.
    """

    def __init__(self, axis: int, weights: torch.Tensor) -> None:
        if weights.dim() != 1 or weights.numel() == 0:
            raise ValueError("WindowFilter weights must be a non-empty rank-1 tensor.")
        self.axis = axis
        self.weights = weights

    def eval(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return (_valid_filter(_single(inputs, self), self.weights, self.axis),)

    def __repr__(self) -> str:
        return f"WindowFilter(axis={self.axis}, size={self.weights.numel()})"


# ---------------------------------------------------------------------------
# Stateful operators
# ---------------------------------------------------------------------------


class _AccumulateState(OpState):
    def __init__(self) -> None:
        self.carry: Optional[torch.Tensor] = None

    def eval(self, session: "SessionState", op: Op, inputs: Sequence[torch.Tensor]) -> Tensors:
        _expect_op(op, Accumulate)
        x = _single(inputs, op)
        summed = torch.cumsum(x, dim=op.axis)
        if self.carry is not None:
            summed = summed + self.carry
        if x.shape[op.axis] > 0:
            self.carry = summed.narrow(op.axis, x.shape[op.axis] - 1, 1).clone()
        return (summed,)


class Accumulate(Op):
    """
    Running sum along ``axis`` that continues from one call to the next.
    """

    def __init__(self, axis: int) -> None:
        self.axis = axis

    def state(self, session: "SessionState", node_id: int) -> Optional[OpState]:
        return _AccumulateState()

    def __repr__(self) -> str:
        return f"Accumulate(axis={self.axis})"


class _RecurrentState(OpState):
    def __init__(self) -> None:
        self.hidden: Optional[torch.Tensor] = None

    def eval(self, session: "SessionState", op: Op, inputs: Sequence[torch.Tensor]) -> Tensors:
        _expect_op(op, Recurrent)
        x = _single(inputs, op)
        if x.dim() != 3:
            raise ValueError("Recurrent expects a [B, T, D] tensor.")
        batch_size = x.shape[0]
        if self.hidden is None:
            self.hidden = op.init_state(batch_size, dtype=x.dtype)
        elif self.hidden.shape[0] != batch_size:
            raise ValueError(
                f"Recurrent state holds batch {self.hidden.shape[0]}, got {batch_size}"
            )
        outputs = []
        hidden = self.hidden
        for t in range(x.shape[1]):
            hidden = op.cell(x[:, t, :], hidden)
            outputs.append(hidden)
        self.hidden = hidden
        if outputs:
            return (torch.stack(outputs, dim=1),)
        return (x.new_zeros(batch_size, 0, op.hidden),)


class Recurrent(Op):
    """
    GRU cell stepped over the time axis of a ``[B, T, D]`` input.

    The hidden state persists across calls, so feeding a sequence in several
    chunks yields the same outputs as feeding it whole.
    """

    def __init__(self, cell: nn.GRUCell) -> None:
        self.cell = cell.eval()
        self.hidden = cell.hidden_size

    def init_state(self, batch_size: int, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        return torch.zeros(batch_size, self.hidden, dtype=dtype)

    def state(self, session: "SessionState", node_id: int) -> Optional[OpState]:
        return _RecurrentState()

    def __repr__(self) -> str:
        return f"Recurrent({self.cell.input_size}->{self.hidden})"


class _DelayState(OpState):
    def __init__(self) -> None:
        self.buffer: Optional[torch.Tensor] = None

    def eval(self, session: "SessionState", op: Op, inputs: Sequence[torch.Tensor]) -> Tensors:
        _expect_op(op, Delay)
        x = _single(inputs, op)
        if op.delay == 0:
            return (x,)
        if self.buffer is None:
            shape = list(x.shape)
            shape[op.axis] = op.delay
            self.buffer = x.new_zeros(shape)
        joined = torch.cat([self.buffer, x], dim=op.axis)
        pulse = x.shape[op.axis]
        self.buffer = joined.narrow(op.axis, pulse, op.delay).clone()
        return (joined.narrow(op.axis, 0, pulse),)


class Delay(Op):
    """
    Pulse-level delay line: shifts the stream by ``delay`` positions along
    ``axis``, emitting zeros until real data comes through.
    """

    def __init__(self, axis: int, delay: int) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.axis = axis
        self.delay = delay

    def state(self, session: "SessionState", node_id: int) -> Optional[OpState]:
        return _DelayState()

    def __repr__(self) -> str:
        return f"Delay(axis={self.axis}, delay={self.delay})"


class _PulsedWindowFilterState(OpState):
    def __init__(self) -> None:
        self.history: Optional[torch.Tensor] = None

    def eval(self, session: "SessionState", op: Op, inputs: Sequence[torch.Tensor]) -> Tensors:
        _expect_op(op, PulsedWindowFilter)
        x = _single(inputs, op)
        overlap = op.weights.numel() - 1
        if overlap == 0:
            return (_valid_filter(x, op.weights, op.axis),)
        if self.history is None:
            shape = list(x.shape)
            shape[op.axis] = overlap
            self.history = x.new_zeros(shape)
        joined = torch.cat([self.history, x], dim=op.axis)
        self.history = joined.narrow(op.axis, joined.shape[op.axis] - overlap, overlap).clone()
        return (_valid_filter(joined, op.weights, op.axis),)


class PulsedWindowFilter(Op):
    """
    Streaming counterpart of ``WindowFilter``.

    Keeps the last ``len(weights) - 1`` positions of the previous pulse so each
    pulse yields exactly as many positions as it consumed. The first
    ``len(weights) - 1`` emitted positions cover missing history: the output
    fact must declare that many as delay.
    """

    def __init__(self, axis: int, weights: torch.Tensor) -> None:
        if weights.dim() != 1 or weights.numel() == 0:
            raise ValueError("PulsedWindowFilter weights must be a non-empty rank-1 tensor.")
        self.axis = axis
        self.weights = weights

    @property
    def delay(self) -> int:
        return self.weights.numel() - 1

    def state(self, session: "SessionState", node_id: int) -> Optional[OpState]:
        return _PulsedWindowFilterState()

    def __repr__(self) -> str:
        return f"PulsedWindowFilter(axis={self.axis}, size={self.weights.numel()})"
