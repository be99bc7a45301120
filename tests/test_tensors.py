import io
import os
import sys

import numpy as np
import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import cadence
from cadence import ops
from cadence.archive import NpzWriter, capture_array, capture_key
from cadence.errors import CaptureIOError, UnresolvedSymbolError, UnsupportedCaptureType
from cadence.tensors import (
    dump_tensor,
    load_expected_outputs,
    load_inputs,
    make_inputs,
    order_inputs,
    retrieve_or_make_inputs,
)


def _two_input_model():
    N = cadence.Symbol("N")
    model = cadence.TypedModel()
    a = model.add_source("a", cadence.TypedFact(torch.float32, [N]))
    b = model.add_source("b", cadence.TypedFact(torch.int32, [N]))
    (y,) = model.wire_node("sum", ops.Elementwise("add"), [a, b])
    model.set_output_outlets([y], [cadence.TypedFact(torch.float32, [N])])
    return model


def test_capture_keys():
    assert capture_key("conv", 0) == "conv"
    assert capture_key("conv", 2) == "conv:2"
    assert capture_key("conv", 1, turn=3) == "turn_3/conv:1"


def test_capture_array_types():
    assert capture_array(torch.ones(2, dtype=torch.uint8)).dtype == np.uint8
    assert capture_array(torch.ones(2, dtype=torch.float64)).dtype == np.float64
    with pytest.raises(UnsupportedCaptureType):
        capture_array(torch.ones(2, dtype=torch.int64))
    with pytest.raises(UnsupportedCaptureType):
        capture_array(torch.ones(2, dtype=torch.bool))


def test_npz_writer_rejects_duplicates_and_writes_after_close(tmp_path):
    path = tmp_path / "out.npz"
    with NpzWriter(path) as writer:
        writer.add_array("a", np.arange(3))
        with pytest.raises(CaptureIOError):
            writer.add_array("a", np.arange(3))
    assert writer.closed
    writer.close()
    with pytest.raises(CaptureIOError):
        writer.add_array("b", np.arange(3))
    with np.load(path) as data:
        assert data.files == ["a"]


def test_npz_writer_creation_failure(tmp_path):
    with pytest.raises(CaptureIOError):
        NpzWriter(tmp_path / "missing" / "dir" / "out.npz")


def test_order_inputs_by_name():
    model = _two_input_model()
    a, b = torch.zeros(2), torch.zeros(2, dtype=torch.int32)
    assert order_inputs(model, {"b": b, "a": a}) == (a, b)
    with pytest.raises(KeyError):
        order_inputs(model, {"a": a})
    with pytest.raises(KeyError):
        order_inputs(model, {"a": a, "b": b, "c": a})


def test_load_inputs_from_npz_with_turns(tmp_path):
    path = tmp_path / "turns.npz"
    np.savez(
        path,
        **{
            "turn_0/a": np.ones(2, dtype=np.float32),
            "turn_0/b": np.ones(2, dtype=np.int32),
            "turn_1/a": np.zeros(3, dtype=np.float32),
            "turn_1/b": np.zeros(3, dtype=np.int32),
        },
    )
    turns = load_inputs(path, _two_input_model())
    assert len(turns) == 2
    assert turns[1][0].shape == (3,)
    assert turns[0][1].dtype == torch.int32

    outputs = cadence.run_regular(_two_input_model(), turns)
    assert torch.equal(outputs[0], torch.zeros(3))


def test_load_inputs_from_npy_and_plain_npz(tmp_path):
    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [2]))
    model.set_output_outlets([x], [cadence.TypedFact(torch.float32, [2])])

    npy = tmp_path / "x.npy"
    np.save(npy, np.array([1.0, 2.0], dtype=np.float32))
    (turn,) = load_inputs(npy, model)
    assert torch.equal(turn[0], torch.tensor([1.0, 2.0]))

    npz = tmp_path / "x.npz"
    np.savez(npz, x=np.array([3.0, 4.0], dtype=np.float32))
    (turn,) = load_inputs(npz, model)
    assert torch.equal(turn[0], torch.tensor([3.0, 4.0]))

    with pytest.raises(ValueError):
        load_inputs(tmp_path / "x.csv", model)


def test_make_inputs_needs_bound_symbols():
    model = _two_input_model()
    with pytest.raises(UnresolvedSymbolError):
        make_inputs(model)
    symbols = cadence.SymbolValues({cadence.Symbol("N"): 5})
    a, b = make_inputs(model, symbols, seed=1)
    assert a.shape == (5,) and a.dtype == torch.float32
    assert b.shape == (5,) and b.dtype == torch.int32
    again, _ = make_inputs(model, symbols, seed=1)
    assert torch.equal(a, again)


def test_random_pulsed_inputs_use_full_stream_length():
    S = cadence.stream_symbol()
    model = cadence.PulsedModel()
    x = model.add_source("x", cadence.PulsedFact(torch.float32, [2, 4], axis=1, dim=S))
    model.set_output_outlets([x], [cadence.PulsedFact(torch.float32, [2, 4], axis=1, dim=S)])
    (x_in,) = make_inputs(model, cadence.SymbolValues({S: 11}))
    assert x_in.shape == (2, 11)


def test_retrieve_or_make_inputs():
    model = _two_input_model()
    with pytest.raises(ValueError):
        retrieve_or_make_inputs(model)
    symbols = cadence.SymbolValues({cadence.Symbol("N"): 2})
    (turn,) = retrieve_or_make_inputs(model, allow_random=True, symbols=symbols)
    assert len(turn) == 2


def test_load_expected_outputs(tmp_path):
    positional = tmp_path / "expected.npz"
    np.savez(positional, output_1=np.zeros(1), output_0=np.ones(2))
    first, second = load_expected_outputs(positional)
    assert first.shape == (2,) and second.shape == (1,)

    named = tmp_path / "named.npz"
    np.savez(named, sum=np.ones(3))
    (out,) = load_expected_outputs(named, _two_input_model())
    assert out.shape == (3,)
    with pytest.raises(KeyError):
        load_expected_outputs(named)


def test_dump_tensor():
    stream = io.StringIO()
    dump_tensor("output #0", torch.tensor([1.0, 2.0]), stream)
    text = stream.getvalue()
    assert text.startswith("output #0 2,torch.float32\n")
    assert "tensor([1., 2.])" in text
