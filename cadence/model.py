# cadence/model.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from .facts import PulsedFact, TypedFact
from .ops import Op, Source

FactT = TypeVar("FactT", TypedFact, PulsedFact)


@dataclass(frozen=True)
class Outlet:
    """Reference to output ``slot`` of node ``node``."""

    node: int
    slot: int = 0

    def __repr__(self) -> str:
        return f"{self.node}/{self.slot}"


class Node:
    """
    One operator application inside a model.
    """

    def __init__(self, id: int, name: str, op: Op, inputs: Sequence[Outlet]) -> None:
        self.id = id
        self.name = name
        self.op = op
        self.inputs: Tuple[Outlet, ...] = tuple(inputs)

    def __str__(self) -> str:
        return f'#{self.id} "{self.name}" {self.op!r}'

    def __repr__(self) -> str:
        return f"Node({self.id}, {self.name!r}, {self.op!r}, inputs={list(self.inputs)})"


class Graph(Generic[FactT]):
    """
    Container for nodes, their wiring, and the input/output facts.

    Responsibilities:
      - Register sources and operator nodes, wiring outlets to inputs.
      - Hold one fact per model input and output.
      - Provide the evaluation schedule (topological, restricted to what the
        outputs depend on).
    """

    fact_type: type = TypedFact

    def __init__(self) -> None:
        self.nodes: List[Node] = []
        self._by_name: Dict[str, Node] = {}
        self.input_outlets: List[Outlet] = []
        self.output_outlets: List[Outlet] = []
        self._input_facts: List[FactT] = []
        self._output_facts: List[FactT] = []

    # --- Construction APIs ---

    def add_source(self, name: str, fact: FactT) -> Outlet:
        """
        Register a model input. Returns its outlet.
        """
        self._check_fact(fact)
        outlet = self._add_node(name, Source(), ())[0]
        self.input_outlets.append(outlet)
        self._input_facts.append(fact)
        return outlet

    def wire_node(self, name: str, op: Op, inputs: Sequence[Outlet] = ()) -> List[Outlet]:
        """
        Add a node applying ``op`` to ``inputs``. Returns the node's outlets.
        """
        for outlet in inputs:
            if not 0 <= outlet.node < len(self.nodes):
                raise ValueError(f"Node {name!r} wired to unknown node {outlet.node}")
            if not 0 <= outlet.slot < self.nodes[outlet.node].op.output_count:
                raise ValueError(f"Node {name!r} wired to missing output {outlet}")
        return self._add_node(name, op, inputs)

    def set_output_outlets(
        self,
        outlets: Sequence[Outlet],
        facts: Sequence[FactT],
    ) -> None:
        """
        Declare the model outputs together with their facts.
        """
        if len(outlets) != len(facts):
            raise ValueError("One fact is required per output outlet.")
        for outlet in outlets:
            if not 0 <= outlet.node < len(self.nodes):
                raise ValueError(f"Unknown output outlet {outlet}")
        for fact in facts:
            self._check_fact(fact)
        self.output_outlets = list(outlets)
        self._output_facts = list(facts)

    # --- Model capability ---

    def input_fact(self, ix: int) -> FactT:
        if not 0 <= ix < len(self._input_facts):
            raise IndexError(f"Model has no input #{ix}")
        return self._input_facts[ix]

    def output_fact(self, ix: int) -> FactT:
        if not 0 <= ix < len(self._output_facts):
            raise IndexError(f"Model has no output #{ix}")
        return self._output_facts[ix]

    def node_name(self, node_id: int) -> str:
        return self.nodes[node_id].name

    def node_by_name(self, name: str) -> Node:
        if name not in self._by_name:
            raise KeyError(f"No node named {name!r}")
        return self._by_name[name]

    def input_names(self) -> List[str]:
        return [self.node_name(outlet.node) for outlet in self.input_outlets]

    def eval_order(self, outputs: Optional[Iterable[Outlet]] = None) -> List[int]:
        """
        Node ids in evaluation order for computing ``outputs`` (default: the
        model outputs). Depth-first, so nodes appear after all their inputs.
        """
        targets = list(self.output_outlets if outputs is None else outputs)
        order: List[int] = []
        done: set[int] = set()
        pending: set[int] = set()
        for outlet in targets:
            stack: List[Tuple[int, bool]] = [(outlet.node, False)]
            while stack:
                node_id, expanded = stack.pop()
                if node_id in done:
                    continue
                if expanded:
                    pending.discard(node_id)
                    done.add(node_id)
                    order.append(node_id)
                    continue
                if node_id in pending:
                    raise ValueError(f"Cycle detected through node {self.nodes[node_id]}")
                pending.add(node_id)
                stack.append((node_id, True))
                for dep in reversed(self.nodes[node_id].inputs):
                    if dep.node not in done:
                        stack.append((dep.node, False))
        return order

    # --- Internal helpers ---

    def _add_node(self, name: str, op: Op, inputs: Sequence[Outlet]) -> List[Outlet]:
        if name in self._by_name:
            raise ValueError(f"Duplicate node name {name!r}")
        node = Node(len(self.nodes), name, op, inputs)
        self.nodes.append(node)
        self._by_name[name] = node
        return [Outlet(node.id, slot) for slot in range(op.output_count)]

    def _check_fact(self, fact: object) -> None:
        if not isinstance(fact, self.fact_type):
            raise TypeError(
                f"{type(self).__name__} requires {self.fact_type.__name__} facts, "
                f"got {type(fact).__name__}"
            )


class TypedModel(Graph[TypedFact]):
    """Regular model: every call evaluates the whole input at once."""

    fact_type = TypedFact


class PulsedModel(Graph[PulsedFact]):
    """
    Streaming model: every call consumes one pulse per input and keeps its
    buffers in the execution state until the next call.
    """

    fact_type = PulsedFact


Model = Union[TypedModel, PulsedModel]


def as_pulsed(model: Model) -> Optional[PulsedModel]:
    """Variant test: the model itself if it is pulsed, else None."""
    return model if isinstance(model, PulsedModel) else None
