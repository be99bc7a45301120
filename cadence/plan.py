# cadence/plan.py

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence, Tuple

import torch

from .dims import try_eval
from .errors import CadenceError, EvaluationError, ShapeComputationError
from .model import Model, Node, Outlet
from .ops import OpState, Tensors
from .symbols import SymbolValues

EvalFn = Callable[["SessionState", Optional[OpState], Node, Tuple[torch.Tensor, ...]], Sequence[torch.Tensor]]


class SimplePlan:
    """
    Immutable evaluation schedule derived from a model.
    """

    def __init__(self, model: Model, outputs: Optional[Sequence[Outlet]] = None) -> None:
        self.model = model
        self.outputs: Tuple[Outlet, ...] = tuple(model.output_outlets if outputs is None else outputs)
        if not self.outputs:
            raise ValueError("Model declares no outputs; nothing to plan.")
        self.order: Tuple[int, ...] = tuple(model.eval_order(self.outputs))

    def describe(self) -> Dict[str, object]:
        return {
            "nodes": len(self.order),
            "outputs": list(self.outputs),
            "order": [self.model.node_name(node_id) for node_id in self.order],
        }


class SessionState:
    """
    Run-wide context shared with every node: symbol bindings and inputs.
    """

    def __init__(self) -> None:
        self.resolved_symbols = SymbolValues()
        self.inputs: Dict[int, torch.Tensor] = {}


def eval_node(
    session_state: SessionState,
    op_state: Optional[OpState],
    node: Node,
    inputs: Tuple[torch.Tensor, ...],
) -> Tensors:
    """
    Default per-node evaluator.
    """
    if op_state is not None:
        return tuple(op_state.eval(session_state, node.op, inputs))
    return tuple(node.op.eval_with_session(session_state, inputs))


class SimpleState:
    """
    Mutable execution state bound to a plan.

    Holds the session (symbols, inputs) and one ``OpState`` per stateful node.
    Reusing one SimpleState for several runs carries those buffers forward.
    """

    def __init__(self, plan: SimplePlan) -> None:
        self.plan = plan
        self.session_state = SessionState()
        self.states: List[Optional[OpState]] = []
        self.reset_op_states()

    @property
    def model(self) -> Model:
        return self.plan.model

    def reset_op_states(self) -> None:
        """Drop every operator buffer, as if the state were brand new."""
        model = self.plan.model
        self.states = [None] * len(model.nodes)
        for node_id in self.plan.order:
            node = model.nodes[node_id]
            self.states[node_id] = node.op.state(self.session_state, node_id)

    def run(self, inputs: Sequence[torch.Tensor]) -> Tensors:
        return self.run_plan_with_eval(inputs, eval_node)

    @torch.no_grad()
    def run_plan_with_eval(self, inputs: Sequence[torch.Tensor], eval_fn: EvalFn) -> Tensors:
        """
        Evaluate every scheduled node through ``eval_fn`` and return the plan
        outputs.
        """
        self._set_inputs(inputs)
        model = self.plan.model
        values: Dict[int, Tensors] = {}
        for node_id in self.plan.order:
            node = model.nodes[node_id]
            node_inputs = tuple(values[o.node][o.slot] for o in node.inputs)
            try:
                outputs = tuple(eval_fn(self.session_state, self.states[node_id], node, node_inputs))
            except CadenceError as exc:
                raise exc.add_context(node=node)
            except Exception as exc:
                raise EvaluationError(node, exc) from exc
            if len(outputs) != node.op.output_count:
                raise EvaluationError(
                    node,
                    RuntimeError(f"expected {node.op.output_count} outputs, got {len(outputs)}"),
                )
            values[node_id] = outputs
        return tuple(values[o.node][o.slot] for o in self.plan.outputs)

    def _set_inputs(self, inputs: Sequence[torch.Tensor]) -> None:
        model = self.plan.model
        if len(inputs) != len(model.input_outlets):
            raise ValueError(
                f"Model expects {len(model.input_outlets)} inputs, got {len(inputs)}"
            )
        symbols = self.session_state.resolved_symbols
        self.session_state.inputs = {}
        for ix, (outlet, tensor) in enumerate(zip(model.input_outlets, inputs)):
            fact = model.input_fact(ix)
            name = model.node_name(outlet.node)
            if tensor.dtype != fact.dtype:
                raise ShapeComputationError(
                    f"Input {name!r} expects {fact.dtype}, got {tensor.dtype}", input=ix
                )
            if tensor.dim() != len(fact.shape):
                raise ShapeComputationError(
                    f"Input {name!r} expects rank {len(fact.shape)}, got shape {tuple(tensor.shape)}",
                    input=ix,
                )
            for axis, dim in enumerate(fact.shape):
                expected = try_eval(dim, symbols)
                if expected is not None and expected != tensor.shape[axis]:
                    raise ShapeComputationError(
                        f"Input {name!r} axis {axis} expects {dim!r}={expected}, "
                        f"got {tensor.shape[axis]}",
                        input=ix,
                    )
            self.session_state.inputs[outlet.node] = tensor
