# cadence/cli.py

"""
Command-line entry point.

    cadence MODEL.py [--input FILE] [--allow-random-input] run [options]

``MODEL.py`` must define a ``build()`` function returning a TypedModel or a
PulsedModel.
"""

from __future__ import annotations

import argparse
import importlib.util
import logging
import os
import sys
from typing import List, Optional

from .assertions import check_op_counts, check_output_count, check_output_facts, check_outputs
from .errors import CadenceError
from .log import configure_logging, verbosity_to_level
from .model import Model, PulsedModel, TypedModel
from .run import RunConfig, run_model
from .symbols import SymbolValues, apply_bindings
from .tensors import dump_tensor, load_expected_outputs, retrieve_or_make_inputs

LOGGER = logging.getLogger("cadence.cli")


def load_module_from_path(path: str):
    """Dynamically load a Python module from a file path."""
    module_name = os.path.splitext(os.path.basename(path))[0]
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load module from {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def load_model(path: str) -> Model:
    module = load_module_from_path(path)
    if not hasattr(module, "build"):
        raise AttributeError(f"Module {path} does not define a 'build()' function.")
    model = module.build()
    if not isinstance(model, (TypedModel, PulsedModel)):
        raise TypeError(f"build() in {path} returned {type(model).__name__}, not a model")
    return model


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cadence", description="Run tensor models, regular or pulsed.")
    parser.add_argument("model", help="Path to Python model file defining build()")
    parser.add_argument("--input", help="Input tensors (.npy, .npz or .h5)")
    parser.add_argument(
        "--allow-random-input",
        action="store_true",
        help="Generate random inputs when no input file is given",
    )
    parser.add_argument("--seed", type=int, default=0, help="Seed for random inputs")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")

    sub = parser.add_subparsers(dest="command", required=True)
    run = sub.add_parser("run", help="Evaluate the model once per input turn")
    run.add_argument("--dump", action="store_true", help="Print every output")
    run.add_argument("--steps", action="store_true", help="Trace every node's inputs and outputs")
    run.add_argument(
        "--assert-sane-floats",
        action="store_true",
        help="Abort on the first NaN or infinity produced by any node",
    )
    run.add_argument("--save-steps", metavar="PATH", help="Capture every node output into an .npz archive")
    run.add_argument(
        "--set",
        metavar="S=N",
        action="append",
        default=[],
        help="Bind a single-character symbol to an integer (repeatable)",
    )
    run.add_argument("--assert-output-count", type=int, metavar="N")
    run.add_argument("--assert-outputs", metavar="FILE", help="Reference outputs (.npy or .npz)")
    run.add_argument("--assert-output-fact", action="append", default=[], metavar="FACT", help="e.g. 2,10,f32")
    run.add_argument("--assert-op-count", action="append", default=[], metavar="OP=N")
    return parser


def handle_run(args: argparse.Namespace, model: Model) -> None:
    config = RunConfig(
        steps=args.steps,
        assert_sane_floats=args.assert_sane_floats,
        save_steps=args.save_steps,
        bindings=tuple(args.set),
    )
    symbols = SymbolValues()
    apply_bindings(symbols, config.bindings)
    turns = retrieve_or_make_inputs(
        model,
        args.input,
        allow_random=args.allow_random_input,
        symbols=symbols,
        seed=args.seed,
    )

    outputs = run_model(model, turns, config)

    if args.dump:
        for ix, output in enumerate(outputs):
            dump_tensor(f"output #{ix}", output)
    if args.assert_output_count is not None:
        check_output_count(outputs, args.assert_output_count)
    if args.assert_outputs:
        check_outputs(outputs, load_expected_outputs(args.assert_outputs, model))
    if args.assert_output_fact:
        check_output_facts(outputs, args.assert_output_fact)
    if args.assert_op_count:
        check_op_counts(model, args.assert_op_count)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbosity_to_level(args.verbose))

    try:
        model = load_model(args.model)
    except Exception as exc:
        LOGGER.debug("Model loading failed", exc_info=True)
        print(f"error: loading {args.model}: {exc}", file=sys.stderr)
        return 1

    try:
        if args.command == "run":
            handle_run(args, model)
    except (CadenceError, ValueError, KeyError, OSError, RuntimeError) as exc:
        LOGGER.debug("Run failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
