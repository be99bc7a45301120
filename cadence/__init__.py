# cadence/__init__.py

from .errors import (
    CadenceError,
    BindingSyntaxError,
    UnresolvedSymbolError,
    ShapeComputationError,
    EvaluationError,
    SanityViolation,
    CaptureIOError,
    UnsupportedCaptureType,
    AssertionMismatch,
)
from .symbols import Symbol, SymbolValues, stream_symbol, parse_binding, apply_bindings
from .dims import Dim, ConstDim, SymbolDim, to_dim
from .facts import TypedFact, PulsedFact
from .model import Outlet, Node, TypedModel, PulsedModel, as_pulsed
from .plan import SimplePlan, SimpleState, SessionState, eval_node
from .archive import NpzWriter, capture_key
from .instrument import StepTracer, ArchiveRecorder, FloatSanityCheck, InstrumentedEval
from .run import RunConfig, PulseLayout, pulse_layout, run_regular, run_pulsed, run_model
from .log import configure_logging
from . import ops

__all__ = [
    "CadenceError",
    "BindingSyntaxError",
    "UnresolvedSymbolError",
    "ShapeComputationError",
    "EvaluationError",
    "SanityViolation",
    "CaptureIOError",
    "UnsupportedCaptureType",
    "AssertionMismatch",
    "Symbol",
    "SymbolValues",
    "stream_symbol",
    "parse_binding",
    "apply_bindings",
    "Dim",
    "ConstDim",
    "SymbolDim",
    "to_dim",
    "TypedFact",
    "PulsedFact",
    "Outlet",
    "Node",
    "TypedModel",
    "PulsedModel",
    "as_pulsed",
    "SimplePlan",
    "SimpleState",
    "SessionState",
    "eval_node",
    "NpzWriter",
    "capture_key",
    "StepTracer",
    "ArchiveRecorder",
    "FloatSanityCheck",
    "InstrumentedEval",
    "RunConfig",
    "PulseLayout",
    "pulse_layout",
    "run_regular",
    "run_pulsed",
    "run_model",
    "configure_logging",
    "ops",
]
