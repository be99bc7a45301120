# cadence/tensors.py

"""
Helpers for getting tensors in and out of a run.

Input files map onto model inputs by source-node name. A single ``.npy`` feeds
a single-input model; ``.npz`` and ``.h5`` files hold one array per input,
optionally grouped into turns (``turn_0/x``, ``turn_1/x``, ...). When no file
is given, random inputs can be synthesized from the input facts.
"""

from __future__ import annotations

import logging
import re
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, TextIO, Tuple, Union

import numpy as np
import torch

from .facts import PulsedFact, TypedFact
from .instrument import describe_tensor
from .model import Model
from .symbols import SymbolValues

try:
    import h5py  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    h5py = None  # type: ignore

LOGGER = logging.getLogger("cadence.tensors")

PathLike = Union[str, Path]
TurnInputs = Tuple[torch.Tensor, ...]

_TURN_KEY = re.compile(r"^turn_(\d+)/(.+)$")
_OUTPUT_KEY = re.compile(r"^output_(\d+)$")


def order_inputs(
    model: Model,
    turn: Union[torch.Tensor, Sequence[torch.Tensor], Mapping[str, torch.Tensor]],
) -> TurnInputs:
    """
    Normalize one turn of inputs to a tuple in model input order.

    Accepts a bare tensor (single-input models), a sequence already in order,
    or a mapping from source-node name to tensor.
    """
    if isinstance(turn, torch.Tensor):
        return (turn,)
    if isinstance(turn, Mapping):
        names = model.input_names()
        missing = [name for name in names if name not in turn]
        if missing:
            raise KeyError(f"Missing value for input(s) {missing}")
        extra = sorted(set(turn) - set(names))
        if extra:
            raise KeyError(f"Unknown input name(s) {extra}; model inputs are {names}")
        return tuple(turn[name] for name in names)
    return tuple(turn)


def _to_tensor(array: np.ndarray) -> torch.Tensor:
    return torch.from_numpy(np.ascontiguousarray(array))


def _group_turns(arrays: Mapping[str, np.ndarray]) -> List[Dict[str, torch.Tensor]]:
    turned: Dict[int, Dict[str, torch.Tensor]] = {}
    flat: Dict[str, torch.Tensor] = {}
    for key, array in arrays.items():
        match = _TURN_KEY.match(key)
        if match is None:
            flat[key] = _to_tensor(array)
        else:
            turned.setdefault(int(match.group(1)), {})[match.group(2)] = _to_tensor(array)
    if turned and flat:
        raise ValueError("Input file mixes turn-prefixed and plain keys.")
    if not turned:
        return [flat]
    indices = sorted(turned)
    if indices != list(range(len(indices))):
        raise ValueError(f"Turn indices must be contiguous from 0, got {indices}")
    return [turned[ix] for ix in indices]


def _read_h5(path: Path) -> Dict[str, np.ndarray]:
    if h5py is None:
        raise RuntimeError("h5py is required to read .h5 input files. Install h5py or use .npz.")
    arrays: Dict[str, np.ndarray] = {}
    with h5py.File(path, "r") as handle:

        def _visit(name: str, item) -> None:
            if isinstance(item, h5py.Dataset):
                arrays[name] = item[...]

        handle.visititems(_visit)
    return arrays


def load_inputs(path: PathLike, model: Model) -> List[TurnInputs]:
    """
    Read every turn of inputs stored at ``path``, each ordered as the model
    inputs.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        if len(model.input_outlets) != 1:
            raise ValueError(f"{path} holds one array but the model has {len(model.input_outlets)} inputs")
        turns: List[Dict[str, torch.Tensor]] = [{model.input_names()[0]: _to_tensor(np.load(path))}]
    elif suffix == ".npz":
        with np.load(path, allow_pickle=False) as data:
            turns = _group_turns({key: data[key] for key in data.files})
    elif suffix in (".h5", ".hdf5"):
        turns = _group_turns(_read_h5(path))
    else:
        raise ValueError(f"Unsupported input file type {path.suffix!r} (expected .npy, .npz or .h5)")
    LOGGER.info("Loaded %d turn(s) of inputs from %s", len(turns), path)
    return [order_inputs(model, turn) for turn in turns]


def _concrete_input_shape(fact: Union[TypedFact, PulsedFact], symbols: SymbolValues) -> Tuple[int, ...]:
    if isinstance(fact, PulsedFact):
        dims = list(fact.shape)
        dims[fact.axis] = fact.dim
        return tuple(d.eval_size(symbols) for d in dims)
    return fact.resolve_shape(symbols)


def random_tensor(shape: Sequence[int], dtype: torch.dtype, generator: torch.Generator) -> torch.Tensor:
    """Random values suited to ``dtype``."""
    if dtype.is_floating_point:
        return torch.randn(tuple(shape), generator=generator).to(dtype)
    if dtype == torch.bool:
        return torch.randint(0, 2, tuple(shape), generator=generator).bool()
    if dtype in (torch.qint8, torch.quint8, torch.qint32):
        base = torch.randn(tuple(shape), generator=generator)
        zero_point = 128 if dtype == torch.quint8 else 0
        return torch.quantize_per_tensor(base, 0.05, zero_point, dtype)
    if dtype == torch.uint8:
        return torch.randint(0, 256, tuple(shape), generator=generator, dtype=dtype)
    return torch.randint(-100, 100, tuple(shape), generator=generator, dtype=dtype)


def make_inputs(
    model: Model,
    symbols: Optional[SymbolValues] = None,
    *,
    seed: int = 0,
) -> TurnInputs:
    """
    Synthesize one turn of random inputs matching the model's input facts.

    Every symbolic dimension must be bound in ``symbols``; pulsed inputs are
    sized by their full-stream length, so the stream symbol must be bound too.
    """
    symbols = symbols or SymbolValues()
    generator = torch.Generator().manual_seed(seed)
    inputs = []
    for ix in range(len(model.input_outlets)):
        fact = model.input_fact(ix)
        shape = _concrete_input_shape(fact, symbols)
        LOGGER.debug("Random input %d: shape=%s dtype=%s", ix, shape, fact.dtype)
        inputs.append(random_tensor(shape, fact.dtype, generator))
    return tuple(inputs)


def retrieve_or_make_inputs(
    model: Model,
    path: Optional[PathLike] = None,
    *,
    allow_random: bool = False,
    symbols: Optional[SymbolValues] = None,
    seed: int = 0,
) -> List[TurnInputs]:
    if path is not None:
        return load_inputs(path, model)
    if not model.input_outlets:
        return [()]
    if allow_random:
        LOGGER.warning("No input file given, using random inputs (seed=%d)", seed)
        return [make_inputs(model, symbols, seed=seed)]
    raise ValueError("No input data supplied; pass an input file or allow random input.")


def load_expected_outputs(path: PathLike, model: Optional[Model] = None) -> List[torch.Tensor]:
    """
    Reference outputs for comparison.

    ``.npy`` holds the single output; ``.npz`` holds ``output_0``, ``output_1``
    ... or, when ``model`` is given, arrays named after the output nodes.
    """
    path = Path(path)
    if path.suffix.lower() == ".npy":
        return [_to_tensor(np.load(path))]
    with np.load(path, allow_pickle=False) as data:
        arrays = {key: data[key] for key in data.files}
    positional = {}
    for key, array in arrays.items():
        match = _OUTPUT_KEY.match(key)
        if match is not None:
            positional[int(match.group(1))] = array
    if positional:
        return [_to_tensor(positional[ix]) for ix in sorted(positional)]
    if model is None:
        raise KeyError(f"{path} has no output_<i> keys")
    names = [model.node_name(outlet.node) for outlet in model.output_outlets]
    missing = [name for name in names if name not in arrays]
    if missing:
        raise KeyError(f"{path} lacks expected output(s) {missing}")
    return [_to_tensor(arrays[name]) for name in names]


def dump_tensor(label: str, tensor: torch.Tensor, stream: Optional[TextIO] = None) -> None:
    out = stream if stream is not None else sys.stdout
    print(f"{label} {describe_tensor(tensor, preview=0)}", file=out)
    print(tensor.int_repr() if tensor.is_quantized else tensor, file=out)
    print(file=out)
