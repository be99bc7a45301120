import logging
import os
import sys
import textwrap

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from cadence.cli import main

PULSED_MODEL = textwrap.dedent(
    """
    import torch
    import cadence
    from cadence import ops

    def build():
        S = cadence.stream_symbol()
        model = cadence.PulsedModel()
        x = model.add_source("x", cadence.PulsedFact(torch.float32, [1, 4], axis=1, dim=S))
        (y,) = model.wire_node("delay", ops.Delay(axis=1, delay=2), [x])
        model.set_output_outlets([y], [cadence.PulsedFact(torch.float32, [1, 4], axis=1, dim=S, delay=2)])
        return model
    """
)

REGULAR_MODEL = textwrap.dedent(
    """
    import torch
    import cadence
    from cadence import ops

    def build():
        N = cadence.Symbol("N")
        model = cadence.TypedModel()
        x = model.add_source("x", cadence.TypedFact(torch.float32, [N]))
        (y,) = model.wire_node("log", ops.Activation("log"), [x])
        model.set_output_outlets([y], [cadence.TypedFact(torch.float32, [N])])
        return model
    """
)


@pytest.fixture(autouse=True)
def _restore_package_logger():
    yield
    logger = logging.getLogger("cadence")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def _write(tmp_path, name, source):
    path = tmp_path / name
    path.write_text(source)
    return str(path)


def test_pulsed_run_with_reference_output(tmp_path, capsys):
    model = _write(tmp_path, "pulsed.py", PULSED_MODEL)
    signal = np.arange(10, dtype=np.float32).reshape(1, 10)
    np.save(tmp_path / "in.npy", signal)
    np.save(tmp_path / "expected.npy", signal)

    code = main(
        [
            model,
            "--input",
            str(tmp_path / "in.npy"),
            "run",
            "--dump",
            "--assert-output-count",
            "1",
            "--assert-outputs",
            str(tmp_path / "expected.npy"),
            "--assert-output-fact",
            "1,10,f32",
            "--assert-op-count",
            "Delay=1",
        ]
    )
    assert code == 0
    assert "output #0 1,10,torch.float32" in capsys.readouterr().out


def test_random_input_sized_by_set(tmp_path):
    model = _write(tmp_path, "regular.py", REGULAR_MODEL)
    code = main([model, "--allow-random-input", "run", "--set", "N=4", "--assert-output-fact", "4,f32"])
    assert code == 0


def test_sanity_failure_exits_non_zero(tmp_path, capsys):
    model = _write(tmp_path, "regular.py", REGULAR_MODEL)
    np.save(tmp_path / "in.npy", np.array([1.0, -1.0], dtype=np.float32))
    archive = tmp_path / "steps.npz"
    code = main(
        [
            model,
            "--input",
            str(tmp_path / "in.npy"),
            "run",
            "--assert-sane-floats",
            "--save-steps",
            str(archive),
        ]
    )
    assert code == 1
    err = capsys.readouterr().err
    assert err.startswith("error: Found nan in output 0 of")
    with np.load(archive) as data:
        assert sorted(data.files) == ["log", "x"]


def test_bad_binding_and_failed_assertion_exit_non_zero(tmp_path, capsys):
    model = _write(tmp_path, "regular.py", REGULAR_MODEL)
    assert main([model, "--allow-random-input", "run", "--set", "NN=4"]) == 1
    assert "Symbol names are single characters" in capsys.readouterr().err
    assert main([model, "--allow-random-input", "run", "--set", "N=2", "--assert-output-count", "3"]) == 1
    assert "Wrong number of outputs" in capsys.readouterr().err


def test_missing_build_function(tmp_path, capsys):
    model = _write(tmp_path, "empty.py", "X = 1\n")
    assert main([model, "run"]) == 1
    assert "build()" in capsys.readouterr().err
