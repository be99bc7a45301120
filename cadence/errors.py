# cadence/errors.py

from __future__ import annotations

from typing import Any, Dict


class CadenceError(Exception):
    """
    Base class for every failure raised by the driver and the pulsed emulator.

    Carries a context mapping (node, turn, pulse, output index, offending value)
    that is rendered into the message so a failure can be reproduced without
    inspecting logs.
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context)

    def add_context(self, **context: Any) -> "CadenceError":
        """Attach outer context; keys already present are kept."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class BindingSyntaxError(CadenceError, ValueError):
    """Malformed ``symbol=value`` token."""


class UnresolvedSymbolError(CadenceError):
    """A dimension expression references a symbol with no bound value."""

    def __init__(self, symbol: Any, **context: Any) -> None:
        super().__init__(f"Symbol {symbol} is not bound to a value", **context)
        self.symbol = symbol


class ShapeComputationError(CadenceError):
    """A resolved size is negative or non-integral, or disagrees with a tensor."""


class EvaluationError(CadenceError):
    """An operator failed while evaluating a node."""

    def __init__(self, node: Any, cause: BaseException, **context: Any) -> None:
        super().__init__(f"Evaluating {node}: {cause}", node=node, **context)
        self.node = node
        self.cause = cause


class SanityViolation(CadenceError):
    """A non-finite floating value was produced while sanity checking is on."""


class CaptureIOError(CadenceError):
    """Creating or writing the capture archive failed."""


class UnsupportedCaptureType(CadenceError):
    """
    The tensor's element type cannot be stored in a capture archive.

    Recovered locally: recorders log it and move on.
    """


class AssertionMismatch(CadenceError):
    """A requested post-run check (output count, values, facts, op count) failed."""
