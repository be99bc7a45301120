"""
Recurrent encoder run over several turns with every step captured.

The GRU hidden state and the running sum both carry over from one turn to the
next, so ``turn_1/*`` in the archive continues where ``turn_0/*`` stopped.

    cadence examples/demo_recurrent_turns.py --input turns.npz run --save-steps steps.npz
"""

from __future__ import annotations

import os
import sys

import numpy as np
import torch
import torch.nn as nn

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import cadence
from cadence import ops

MODEL = {
    "batch": 1,
    "features": 3,
    "hidden": 8,
    "seed": 7,
}


def build() -> cadence.TypedModel:
    torch.manual_seed(MODEL["seed"])
    T = cadence.Symbol("T")
    model = cadence.TypedModel()
    x = model.add_source(
        "x", cadence.TypedFact(torch.float32, [MODEL["batch"], T, MODEL["features"]])
    )
    (h,) = model.wire_node("gru", ops.Recurrent(nn.GRUCell(MODEL["features"], MODEL["hidden"])), [x])
    (act,) = model.wire_node("tanh", ops.Activation("tanh"), [h])
    (total,) = model.wire_node("running", ops.Accumulate(axis=1), [act])
    model.set_output_outlets(
        [total], [cadence.TypedFact(torch.float32, [MODEL["batch"], T, MODEL["hidden"]])]
    )
    return model


def main() -> None:
    cadence.configure_logging()
    generator = torch.Generator().manual_seed(0)
    turns = [
        (torch.randn(MODEL["batch"], 5, MODEL["features"], generator=generator),)
        for _ in range(3)
    ]
    config = cadence.RunConfig(save_steps="steps.npz", assert_sane_floats=True)
    (last,) = cadence.run_regular(build(), turns, config)
    print(f"last turn output: {tuple(last.shape)}")
    with np.load("steps.npz") as archive:
        for key in archive.files:
            print(f"  {key}: {archive[key].shape}")


if __name__ == "__main__":
    main()
