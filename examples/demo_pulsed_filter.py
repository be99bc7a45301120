"""
Pulsed smoothing filter replayed over a finite signal.

The same 3-tap filter is built twice: once as a regular model over the whole
signal and once as a pulsed model consuming 4 samples per call. The pulsed
replay must reproduce the regular output exactly.

    cadence examples/demo_pulsed_filter.py --allow-random-input run --set S=10 --dump
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import cadence
from cadence import ops

MODEL = {
    "channels": 2,
    "pulse": 4,
    "weights": [0.25, 0.5, 0.25],
}


def _weights() -> torch.Tensor:
    return torch.tensor(MODEL["weights"], dtype=torch.float32)


def build_regular() -> cadence.TypedModel:
    S = cadence.stream_symbol()
    taps = len(MODEL["weights"])
    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [MODEL["channels"], S]))
    (y,) = model.wire_node("smooth", ops.WindowFilter(axis=1, weights=_weights()), [x])
    model.set_output_outlets([y], [cadence.TypedFact(torch.float32, [MODEL["channels"], S - (taps - 1)])])
    return model


def build() -> cadence.PulsedModel:
    S = cadence.stream_symbol()
    taps = len(MODEL["weights"])
    pulse = MODEL["pulse"]
    model = cadence.PulsedModel()
    x = model.add_source(
        "x", cadence.PulsedFact(torch.float32, [MODEL["channels"], pulse], axis=1, dim=S)
    )
    smooth = ops.PulsedWindowFilter(axis=1, weights=_weights())
    (y,) = model.wire_node("smooth", smooth, [x])
    model.set_output_outlets(
        [y],
        [
            cadence.PulsedFact(
                torch.float32,
                [MODEL["channels"], pulse],
                axis=1,
                dim=S - (taps - 1),
                delay=smooth.delay,
            )
        ],
    )
    return model


def main() -> None:
    cadence.configure_logging()
    torch.manual_seed(0)
    signal = torch.randn(MODEL["channels"], 10)

    (regular,) = cadence.run_regular(build_regular(), [(signal,)])
    (pulsed,) = cadence.run_pulsed(build(), signal)

    print(f"regular: {tuple(regular.shape)}  pulsed: {tuple(pulsed.shape)}")
    print(f"max abs diff: {(regular - pulsed).abs().max().item():.3g}")


if __name__ == "__main__":
    main()
