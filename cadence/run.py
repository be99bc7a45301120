# cadence/run.py

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Sequence, TextIO, Tuple, Union

import torch

from .archive import NpzWriter
from .errors import CadenceError, ShapeComputationError
from .facts import PulsedFact
from .instrument import ArchiveRecorder, FloatSanityCheck, InstrumentedEval, StepTracer
from .model import Model, PulsedModel, TypedModel, as_pulsed
from .ops import Tensors
from .plan import SimplePlan, SimpleState
from .symbols import SymbolValues, apply_bindings, stream_symbol
from .tensors import order_inputs

LOGGER = logging.getLogger("cadence.run")

PathLike = Union[str, Path]
Turn = Union[Sequence[torch.Tensor], Mapping[str, torch.Tensor]]

# Extra output pulses allocated past output_dim + delay.
OUTPUT_HEADROOM_PULSES = 4


@dataclass(frozen=True)
class RunConfig:
    """
    Optional behaviours of a run.

    steps: trace every node's inputs and outputs.
    assert_sane_floats: abort on the first non-finite floating output.
    save_steps: capture every node output into this ``.npz`` archive.
    bindings: ``symbol=value`` tokens applied before evaluation.
    """

    steps: bool = False
    assert_sane_floats: bool = False
    save_steps: Optional[PathLike] = None
    bindings: Tuple[str, ...] = ()


@contextmanager
def _capture_archive(path: Optional[PathLike]) -> Iterator[Optional[NpzWriter]]:
    if path is None:
        yield None
        return
    with NpzWriter(path) as writer:
        yield writer


def build_hook(
    config: RunConfig,
    writer: Optional[NpzWriter] = None,
    trace_stream: Optional[TextIO] = None,
) -> InstrumentedEval:
    return InstrumentedEval(
        tracer=StepTracer(trace_stream) if config.steps else None,
        recorder=ArchiveRecorder(writer) if writer is not None else None,
        sanity=FloatSanityCheck() if config.assert_sane_floats else None,
    )


def run_regular(
    model: TypedModel,
    turns: Sequence[Turn],
    config: Optional[RunConfig] = None,
    *,
    trace_stream: Optional[TextIO] = None,
) -> Tensors:
    """
    Evaluate ``model`` once per turn, in order, through the instrumented hook.

    One execution state serves every turn, so recurrent buffers filled in turn
    ``k`` are visible in turn ``k + 1``. Returns the outputs of the last turn.
    """
    config = config or RunConfig()
    plan = SimplePlan(model)
    state = SimpleState(plan)
    apply_bindings(state.session_state.resolved_symbols, config.bindings)
    turns = [order_inputs(model, turn) for turn in turns]
    multiturn = len(turns) > 1
    LOGGER.info("Regular run: %d node(s), %d turn(s)", len(plan.order), len(turns))

    results: Tensors = ()
    with _capture_archive(config.save_steps) as writer:
        hook = build_hook(config, writer, trace_stream)
        for turn, inputs in enumerate(turns):
            hook.begin_turn(turn, multiturn)
            try:
                results = state.run_plan_with_eval(inputs, hook)
            except CadenceError as exc:
                raise exc.add_context(turn=turn)
            LOGGER.debug("Turn %d produced %d output(s)", turn, len(results))
    return results


@dataclass(frozen=True)
class PulseLayout:
    """
    Offset arithmetic of a pulsed replay along the streaming axes.
    """

    input_dim: int
    pulse: int
    output_dim: int
    output_pulse: int
    delay: int

    @property
    def pulses(self) -> int:
        return math.ceil(self.input_dim / self.pulse)

    @property
    def buffer_len(self) -> int:
        return self.output_dim + self.delay + OUTPUT_HEADROOM_PULSES * self.output_pulse

    def input_range(self, ix: int) -> Tuple[int, int]:
        start = ix * self.pulse
        return start, min(start + self.pulse, self.input_dim)

    def output_range(self, ix: int) -> Tuple[int, int]:
        return self.output_pulse * ix, self.output_pulse * (ix + 1)


def pulse_layout(
    input_dim: int,
    pulse: int,
    output_dim: int,
    output_pulse: int,
    delay: int,
) -> PulseLayout:
    if pulse <= 0 or output_pulse <= 0:
        raise ValueError("Pulse sizes must be positive")
    if input_dim < 0 or output_dim < 0 or delay < 0:
        raise ValueError("Lengths and delay must be >= 0")
    return PulseLayout(input_dim, pulse, output_dim, output_pulse, delay)


def resolve_output_dim(fact: PulsedFact, input_dim: int, symbols: Optional[SymbolValues] = None) -> int:
    """
    Full output length along the streaming axis for an input of ``input_dim``.
    """
    stream = stream_symbol()
    if stream not in fact.dim.symbols():
        raise ShapeComputationError(
            f"Output length {fact.dim!r} does not depend on stream symbol {stream}"
        )
    values = (symbols or SymbolValues()).with_value(stream, input_dim)
    return fact.dim.eval_size(values)


def pad_chunk(chunk: torch.Tensor, axis: int, pulse: int) -> torch.Tensor:
    """Right-pad ``chunk`` with zeros along ``axis`` up to ``pulse`` positions."""
    length = chunk.shape[axis]
    if length >= pulse:
        return chunk
    shape = list(chunk.shape)
    shape[axis] = pulse
    padded = chunk.new_zeros(shape)
    padded.narrow(axis, 0, length).copy_(chunk)
    return padded


def run_pulsed(
    model: PulsedModel,
    input: torch.Tensor,
    config: Optional[RunConfig] = None,
) -> Tensors:
    """
    Replay a finite input through a pulsed model as if it were a live stream.

    The input is cut into pulses along the streaming axis (the last one padded
    with zeros), fed in order through one persistent execution state, and the
    output pulses are laid end to end. The leading ``delay`` positions are
    dropped and the result truncated to the resolved output length.
    """
    config = config or RunConfig()
    if len(model.input_outlets) != 1 or len(model.output_outlets) != 1:
        raise ValueError("Pulsed replay supports models with exactly one input and one output.")
    if config.steps or config.save_steps is not None or config.assert_sane_floats:
        LOGGER.warning("Step tracing, capture and sanity checks apply to regular models only")

    input_fact = model.input_fact(0)
    output_fact = model.output_fact(0)
    if input.dim() != input_fact.rank:
        raise ShapeComputationError(
            f"Input rank {input.dim()} does not match pulsed fact rank {input_fact.rank}"
        )

    plan = SimplePlan(model)
    state = SimpleState(plan)
    symbols = state.session_state.resolved_symbols
    apply_bindings(symbols, config.bindings)

    in_axis = input_fact.axis
    out_axis = output_fact.axis
    layout = pulse_layout(
        input_dim=input.shape[in_axis],
        pulse=input_fact.pulse,
        output_dim=resolve_output_dim(output_fact, input.shape[in_axis], symbols),
        output_pulse=output_fact.pulse,
        delay=output_fact.delay,
    )
    LOGGER.info(
        "Pulsed run: input_dim=%d pulse=%d pulses=%d output_dim=%d delay=%d",
        layout.input_dim,
        layout.pulse,
        layout.pulses,
        layout.output_dim,
        layout.delay,
    )

    output_values = symbols.with_value(stream_symbol(), layout.input_dim)
    chunk_shape: List[int] = list(output_fact.resolve_shape(output_values))
    buffer_shape = list(chunk_shape)
    buffer_shape[out_axis] = layout.buffer_len
    result = torch.zeros(buffer_shape, dtype=output_fact.dtype)

    for ix in range(layout.pulses):
        start, stop = layout.input_range(ix)
        chunk = pad_chunk(input.narrow(in_axis, start, stop - start), in_axis, layout.pulse)
        try:
            outputs = state.run((chunk,))
            result_chunk = outputs[0]
            if list(result_chunk.shape) != chunk_shape:
                raise ShapeComputationError(
                    f"Output pulse has shape {tuple(result_chunk.shape)}, "
                    f"expected {tuple(chunk_shape)}"
                )
            out_start, out_stop = layout.output_range(ix)
            if out_stop > layout.buffer_len:
                raise ShapeComputationError(
                    f"Output pulse [{out_start}, {out_stop}) overflows buffer of {layout.buffer_len}"
                )
            result.narrow(out_axis, out_start, layout.output_pulse).copy_(result_chunk)
        except CadenceError as exc:
            raise exc.add_context(pulse=ix)
        LOGGER.debug("Pulse %d: input [%d, %d) -> output [%d, %d)", ix, start, stop, out_start, out_stop)

    trimmed = result.narrow(out_axis, layout.delay, layout.buffer_len - layout.delay)
    trimmed = trimmed.narrow(out_axis, 0, layout.output_dim)
    return (trimmed.contiguous(),)


def run_model(
    model: Model,
    turns: Sequence[Turn],
    config: Optional[RunConfig] = None,
    *,
    trace_stream: Optional[TextIO] = None,
) -> Tensors:
    """
    Run ``model`` on ``turns`` along the path matching its variant.
    """
    pulsed = as_pulsed(model)
    if pulsed is None:
        return run_regular(model, turns, config, trace_stream=trace_stream)
    if not turns:
        raise ValueError("A pulsed replay needs one input stream.")
    if len(turns) > 1:
        LOGGER.warning("Pulsed replay uses the first of %d input turns", len(turns))
    (stream,) = order_inputs(pulsed, turns[0])
    return run_pulsed(pulsed, stream, config)
