# cadence/instrument.py

from __future__ import annotations

import logging
import sys
from typing import Dict, Optional, Sequence, TextIO, Tuple

import torch

from .archive import NpzWriter, capture_key
from .errors import SanityViolation, UnsupportedCaptureType
from .model import Node
from .ops import OpState, Tensors
from .plan import EvalFn, SessionState, eval_node

LOGGER = logging.getLogger("cadence.instrument")

_PREVIEW = 8


def describe_tensor(tensor: torch.Tensor, preview: int = _PREVIEW) -> str:
    """One-line rendering: shape, dtype, and the first few values."""
    shape = ",".join(str(d) for d in tensor.shape)
    if preview <= 0:
        return f"{shape},{tensor.dtype}"
    data = tensor.int_repr() if tensor.is_quantized else tensor
    flat = data.detach().reshape(-1)
    values = ", ".join(_fmt_value(v) for v in flat[:preview].tolist())
    if flat.numel() > preview:
        values += ", ..."
    return f"{shape},{tensor.dtype} [{values}]"


def _fmt_value(value: object) -> str:
    if isinstance(value, float):
        return f"{value:.6g}"
    return str(value)


class StepTracer:
    """
    Print every node's inputs before evaluation and outputs after it.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def _write(self, line: str) -> None:
        print(line, file=self.stream if self.stream is not None else sys.stderr)

    def inputs(self, node: Node, inputs: Sequence[torch.Tensor]) -> None:
        for ix, tensor in enumerate(inputs):
            self._write(f"{node} {ix}<< {describe_tensor(tensor)}")

    def outputs(self, node: Node, outputs: Sequence[torch.Tensor]) -> None:
        for ix, tensor in enumerate(outputs):
            self._write(f"{node} {ix}>> {describe_tensor(tensor)}")


class ArchiveRecorder:
    """
    Copy every node output into a capture archive.

    Keys follow ``capture_key``; the turn prefix is only used when the run has
    more than one turn. Unsupported element types are skipped with a warning.
    """

    def __init__(self, writer: NpzWriter) -> None:
        self.writer = writer
        self.turn: Optional[int] = None
        self.skipped: Dict[str, torch.dtype] = {}

    def record(self, node: Node, outputs: Sequence[torch.Tensor]) -> None:
        for ix, tensor in enumerate(outputs):
            key = capture_key(node.name, ix, self.turn)
            try:
                self.writer.add_tensor(key, tensor)
            except UnsupportedCaptureType:
                LOGGER.warning(
                    "Not writing %s, %s, unsupported type", key, describe_tensor(tensor)
                )
                self.skipped[key] = tensor.dtype


class FloatSanityCheck:
    """
    Abort on the first non-finite element of any floating output.
    """

    def __init__(self) -> None:
        self.checked = 0

    def check(self, node: Node, outputs: Sequence[torch.Tensor]) -> None:
        for ix, tensor in enumerate(outputs):
            if not tensor.is_floating_point():
                continue
            self.checked += 1
            finite = torch.isfinite(tensor).reshape(-1)
            if bool(finite.all()):
                continue
            position = int((~finite).nonzero()[0].item())
            value = float(tensor.reshape(-1)[position].item())
            LOGGER.debug("Non-finite output %d of %s: %s", ix, node, tensor)
            raise SanityViolation(
                f"Found {value} in output {ix} of {node}",
                node=node,
                output=ix,
                position=position,
                value=value,
            )


class InstrumentedEval:
    """
    Evaluation hook layering tracing, capture and sanity checking around the
    plain evaluator.

    The evaluator's results are returned untouched; observers only read them.
    """

    def __init__(
        self,
        *,
        tracer: Optional[StepTracer] = None,
        recorder: Optional[ArchiveRecorder] = None,
        sanity: Optional[FloatSanityCheck] = None,
        evaluator: EvalFn = eval_node,
    ) -> None:
        self.tracer = tracer
        self.recorder = recorder
        self.sanity = sanity
        self.evaluator = evaluator

    def begin_turn(self, turn: int, multiturn: bool) -> None:
        if self.recorder is not None:
            self.recorder.turn = turn if multiturn else None

    def __call__(
        self,
        session_state: SessionState,
        op_state: Optional[OpState],
        node: Node,
        inputs: Tuple[torch.Tensor, ...],
    ) -> Tensors:
        if self.tracer is not None:
            self.tracer.inputs(node, inputs)
        outputs = tuple(self.evaluator(session_state, op_state, node, inputs))
        if self.tracer is not None:
            self.tracer.outputs(node, outputs)
        if self.recorder is not None:
            self.recorder.record(node, outputs)
        if self.sanity is not None:
            self.sanity.check(node, outputs)
        return outputs
