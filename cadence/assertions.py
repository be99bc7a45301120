# cadence/assertions.py

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

import torch

from .errors import AssertionMismatch
from .model import Model

LOGGER = logging.getLogger("cadence.assertions")

DTYPE_NAMES: Dict[str, torch.dtype] = {
    "f16": torch.float16,
    "f32": torch.float32,
    "f64": torch.float64,
    "i8": torch.int8,
    "i16": torch.int16,
    "i32": torch.int32,
    "i64": torch.int64,
    "u8": torch.uint8,
    "bool": torch.bool,
    "qi8": torch.qint8,
    "qu8": torch.quint8,
    "qi32": torch.qint32,
}

OutputFact = Tuple[Tuple[int, ...], torch.dtype]


def check_output_count(outputs: Sequence[torch.Tensor], expected: int) -> None:
    if len(outputs) != expected:
        raise AssertionMismatch(
            f"Wrong number of outputs, expected {expected}, found {len(outputs)}"
        )


def _comparable(tensor: torch.Tensor) -> torch.Tensor:
    if tensor.is_quantized:
        tensor = tensor.dequantize()
    return tensor.detach().to(torch.float64)


def check_outputs(
    outputs: Sequence[torch.Tensor],
    expected: Sequence[torch.Tensor],
    *,
    rtol: float = 1e-4,
    atol: float = 1e-4,
) -> None:
    """
    Compare every output with its reference; shapes must match exactly and
    values within ``rtol``/``atol``.
    """
    check_output_count(outputs, len(expected))
    for ix, (got, want) in enumerate(zip(outputs, expected)):
        if tuple(got.shape) != tuple(want.shape):
            raise AssertionMismatch(
                f"Output {ix} has shape {tuple(got.shape)}, expected {tuple(want.shape)}",
                output=ix,
            )
        got64, want64 = _comparable(got), _comparable(want)
        if torch.allclose(got64, want64, rtol=rtol, atol=atol, equal_nan=True):
            LOGGER.info("Output %d matches reference", ix)
            continue
        diff = (got64 - want64).abs()
        diff = torch.where(torch.isnan(diff), torch.full_like(diff, float("inf")), diff)
        position = int(diff.reshape(-1).argmax().item())
        raise AssertionMismatch(
            f"Output {ix} differs from reference: max abs diff {diff.max().item():.6g}",
            output=ix,
            position=position,
            got=got64.reshape(-1)[position].item(),
            expected=want64.reshape(-1)[position].item(),
        )


def parse_output_fact(text: str) -> OutputFact:
    """
    Parse ``2,10,f32`` into ``((2, 10), torch.float32)``. The element type comes
    last; a bare type such as ``f32`` denotes a scalar.
    """
    tokens = [token.strip() for token in text.split(",")]
    if not tokens or not tokens[-1]:
        raise ValueError(f"Output fact {text!r} lacks an element type")
    type_name = tokens[-1].lower()
    if type_name not in DTYPE_NAMES:
        raise ValueError(f"Unknown element type {tokens[-1]!r} in {text!r}")
    try:
        shape = tuple(int(token) for token in tokens[:-1])
    except ValueError as exc:
        raise ValueError(f"Output fact {text!r} has a non-integer dimension") from exc
    return shape, DTYPE_NAMES[type_name]


def check_output_facts(outputs: Sequence[torch.Tensor], facts: Sequence[str]) -> None:
    check_output_count(outputs, len(facts))
    for ix, (tensor, text) in enumerate(zip(outputs, facts)):
        shape, dtype = parse_output_fact(text)
        if tensor.dtype != dtype or tuple(tensor.shape) != shape:
            raise AssertionMismatch(
                f"Output {ix} is {tuple(tensor.shape)},{tensor.dtype}; expected {text}",
                output=ix,
            )


def count_op(model: Model, op_name: str) -> int:
    """Number of nodes in ``model`` whose operator is named ``op_name``."""
    return sum(1 for node in model.nodes if node.op.name == op_name)


def parse_op_count(text: str) -> Tuple[str, int]:
    name, sep, count = text.partition("=")
    name, count = name.strip(), count.strip()
    if not sep or not name or not count:
        raise ValueError(f"Operator count {text!r} must look like OP=N")
    try:
        return name, int(count)
    except ValueError as exc:
        raise ValueError(f"Operator count {text!r} has a non-integer count") from exc


def check_op_counts(model: Model, specs: Iterable[str]) -> List[Tuple[str, int]]:
    checked = []
    for spec in specs:
        name, expected = parse_op_count(spec)
        found = count_op(model, name)
        if found != expected:
            raise AssertionMismatch(
                f"Wrong number of {name} operators: expected {expected}, got {found}"
            )
        checked.append((name, found))
    return checked
