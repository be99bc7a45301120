import io
import logging
import os
import sys

import numpy as np
import pytest
import torch
import torch.nn as nn

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import cadence
from cadence import ops
from cadence.errors import BindingSyntaxError, SanityViolation


def _running_sum_model():
    T = cadence.Symbol("T")
    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [T]))
    (y,) = model.wire_node("sum", ops.Accumulate(axis=0), [x])
    (z,) = model.wire_node("scaled", ops.Elementwise("mul"), [y, y])
    model.set_output_outlets([z], [cadence.TypedFact(torch.float32, [T])])
    return model


def _log_model():
    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [3]))
    (y,) = model.wire_node("log", ops.Activation("log"), [x])
    (z,) = model.wire_node("after", ops.Activation("neg"), [y])
    model.set_output_outlets([z], [cadence.TypedFact(torch.float32, [3])])
    return model


def test_single_turn_capture_uses_bare_node_names(tmp_path):
    archive = tmp_path / "steps.npz"
    config = cadence.RunConfig(save_steps=archive)
    cadence.run_regular(_running_sum_model(), [(torch.ones(3),)], config)

    with np.load(archive) as data:
        assert sorted(data.files) == ["scaled", "sum", "x"]
        np.testing.assert_allclose(data["sum"], [1.0, 2.0, 3.0])


def test_multi_output_node_slots_are_suffixed(tmp_path):
    class Split(ops.Op):
        output_count = 2

        def eval(self, inputs):
            (x,) = inputs
            return x[:1], x[1:]

    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [3]))
    head, tail = model.wire_node("split", Split(), [x])
    model.set_output_outlets([head, tail], [cadence.TypedFact(torch.float32, [1]), cadence.TypedFact(torch.float32, [2])])

    archive = tmp_path / "steps.npz"
    outputs = cadence.run_regular(model, [(torch.arange(3.0),)], cadence.RunConfig(save_steps=archive))
    assert len(outputs) == 2
    with np.load(archive) as data:
        assert sorted(data.files) == ["split", "split:1", "x"]
        np.testing.assert_allclose(data["split:1"], [1.0, 2.0])


def test_multi_turn_capture_prefixes_turns_and_carries_state(tmp_path):
    archive = tmp_path / "steps.npz"
    turns = [(torch.ones(3),), (torch.ones(3),)]
    (last,) = cadence.run_regular(_running_sum_model(), turns, cadence.RunConfig(save_steps=archive))

    with np.load(archive) as data:
        assert set(data.files) == {
            "turn_0/x",
            "turn_0/sum",
            "turn_0/scaled",
            "turn_1/x",
            "turn_1/sum",
            "turn_1/scaled",
        }
        np.testing.assert_allclose(data["turn_0/sum"], [1.0, 2.0, 3.0])
        np.testing.assert_allclose(data["turn_1/sum"], [4.0, 5.0, 6.0])
    assert torch.equal(last, torch.tensor([16.0, 25.0, 36.0]))


def test_recurrent_state_carries_across_turns():
    torch.manual_seed(0)
    cell = nn.GRUCell(2, 4)
    model = cadence.TypedModel()
    T = cadence.Symbol("T")
    x = model.add_source("x", cadence.TypedFact(torch.float32, [1, T, 2]))
    (h,) = model.wire_node("gru", ops.Recurrent(cell), [x])
    model.set_output_outlets([h], [cadence.TypedFact(torch.float32, [1, T, 4])])

    seq = torch.randn(1, 6, 2)
    (whole,) = cadence.run_regular(model, [(seq,)])
    (second_half,) = cadence.run_regular(model, [(seq[:, :3],), (seq[:, 3:],)])
    torch.testing.assert_close(second_half, whole[:, 3:])


def test_sanity_check_aborts_on_non_finite_values():
    with pytest.raises(SanityViolation) as info:
        cadence.run_regular(
            _log_model(),
            [(torch.tensor([1.0, -1.0, 2.0]),)],
            cadence.RunConfig(assert_sane_floats=True),
        )
    err = info.value
    assert "in output 0 of" in str(err)
    assert '"log"' in str(err)
    assert err.context["position"] == 1
    assert err.context["turn"] == 0


def test_without_sanity_check_non_finite_values_pass_through():
    (out,) = cadence.run_regular(_log_model(), [(torch.tensor([1.0, -1.0, 2.0]),)])
    assert torch.isnan(out[1])
    assert out[0] == 0.0


def test_archive_is_readable_after_an_aborted_run(tmp_path):
    archive = tmp_path / "partial.npz"
    config = cadence.RunConfig(save_steps=archive, assert_sane_floats=True)
    with pytest.raises(SanityViolation):
        cadence.run_regular(_log_model(), [(torch.tensor([1.0, -1.0, 2.0]),)], config)

    with np.load(archive) as data:
        assert sorted(data.files) == ["log", "x"]
        assert np.isnan(data["log"][1])


def test_unsupported_capture_type_is_skipped_with_warning(tmp_path, caplog):
    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [2]))
    (wide,) = model.wire_node("wide", ops.Cast(torch.int64), [x])
    (back,) = model.wire_node("back", ops.Cast(torch.float32), [wide])
    model.set_output_outlets([back], [cadence.TypedFact(torch.float32, [2])])

    archive = tmp_path / "steps.npz"
    with caplog.at_level(logging.WARNING, logger="cadence.instrument"):
        (out,) = cadence.run_regular(model, [(torch.tensor([1.0, 2.0]),)], cadence.RunConfig(save_steps=archive))

    assert torch.equal(out, torch.tensor([1.0, 2.0]))
    assert any("Not writing wide" in record.getMessage() for record in caplog.records)
    with np.load(archive) as data:
        assert sorted(data.files) == ["back", "x"]


def test_quantized_outputs_are_captured_as_integers(tmp_path):
    model = cadence.TypedModel()
    x = model.add_source("x", cadence.TypedFact(torch.float32, [3]))
    (q,) = model.wire_node("q", ops.Quantize(0.5, 0, torch.qint8), [x])
    (dq,) = model.wire_node("dq", ops.Dequantize(), [q])
    model.set_output_outlets([dq], [cadence.TypedFact(torch.float32, [3])])

    archive = tmp_path / "steps.npz"
    cadence.run_regular(model, [(torch.tensor([0.5, 1.0, -1.5]),)], cadence.RunConfig(save_steps=archive))
    with np.load(archive) as data:
        assert data["q"].dtype == np.int8
        assert data["q"].tolist() == [1, 2, -3]


def test_step_trace_prints_inputs_and_outputs():
    stream = io.StringIO()
    cadence.run_regular(
        _running_sum_model(),
        [(torch.ones(2),)],
        cadence.RunConfig(steps=True),
        trace_stream=stream,
    )
    lines = stream.getvalue().splitlines()
    assert any(line.startswith('#1 "sum"') and " 0<< " in line for line in lines)
    assert any(line.startswith('#1 "sum"') and " 0>> 2,torch.float32 [1, 2]" in line for line in lines)
    assert any(line.startswith('#2 "scaled"') and " 1<< " in line for line in lines)


def test_bindings_are_parsed_before_anything_runs(tmp_path):
    archive = tmp_path / "never.npz"
    with pytest.raises(BindingSyntaxError):
        cadence.run_regular(
            _running_sum_model(),
            [(torch.ones(3),)],
            cadence.RunConfig(save_steps=archive, bindings=("T=3", "T")),
        )
    assert not archive.exists()


def test_bindings_constrain_input_shapes():
    config = cadence.RunConfig(bindings=("T=4",))
    with pytest.raises(cadence.ShapeComputationError):
        cadence.run_regular(_running_sum_model(), [(torch.ones(3),)], config)
    (out,) = cadence.run_regular(_running_sum_model(), [(torch.ones(4),)], config)
    assert out.shape == (4,)


def test_inputs_by_name_and_no_turns():
    model = _running_sum_model()
    (out,) = cadence.run_regular(model, [{"x": torch.ones(2)}])
    assert torch.equal(out, torch.tensor([1.0, 4.0]))
    assert cadence.run_regular(model, []) == ()
