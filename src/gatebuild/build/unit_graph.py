"""
Build unit graph.

The graph is constructed from the static SourceIndex, conditioned on one
ConfigurationState and one TargetContext. Edges point from a dependency to
its dependent (``dep -> unit``), so a topological order is a valid build
order.

Pruning rules, applied in order:
1. A unit is included iff its activation predicate is not 'n'
2. A modular object whose predicate is 'm' becomes a module; modules are
   detached from non-module dependents
3. An edge is included iff both endpoints are included
4. Units that had declared dependents but have none left are pruned,
   repeatedly, unless they are modules or images
5. Images without explicit deps link every remaining top-level non-module unit
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple

import networkx as nx

from ..config.state import ConfigurationState
from ..config.store import ConfigStore
from ..config.symbols import SymbolKind
from ..config.target import TargetContext
from ..errors import GraphCycleError, UnitDeclarationError
from .source_index import SourceIndex, UnitDeclaration, UnitKind

SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class BuildUnit:
    """An included unit of a constructed graph.

    ``kind`` is the effective kind: a modular object activated as 'm' has
    kind MODULE here while its declaration still says OBJECT.
    """

    declaration: UnitDeclaration
    kind: UnitKind
    activation: str = "y"

    @property
    def unit_id(self) -> str:
        return self.declaration.unit_id

    @property
    def inputs(self) -> Tuple[str, ...]:
        return self.declaration.inputs

    @property
    def flags(self) -> str:
        return self.declaration.flags

    @property
    def config_symbols(self) -> FrozenSet[str]:
        """Symbols named by the unit's predicate and ``uses``."""
        return self.declaration.predicate.symbols() | frozenset(self.declaration.uses)

    def describe(self) -> str:
        return f"{self.declaration.describe()}|{self.kind.value}"


class UnitGraph:
    """
    Pruned, acyclic build unit graph for one configuration.

    Example usage:
        graph = construct(index, state, context)
        for unit_id in graph.topological_order():
            print(unit_id, graph.dependencies(unit_id))
    """

    def __init__(
        self,
        index: SourceIndex,
        state: ConfigurationState,
        context: TargetContext,
        units: Dict[str, BuildUnit],
        graph: "nx.DiGraph",
    ):
        self.index = index
        self.state = state
        self.context = context
        self._units = units
        self._graph = graph

    def __iter__(self) -> Iterator[BuildUnit]:
        return iter(self._units.values())

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __getitem__(self, unit_id: str) -> BuildUnit:
        return self._units[unit_id]

    @property
    def unit_ids(self) -> Set[str]:
        return set(self._units)

    def edges(self) -> Set[Tuple[str, str]]:
        """Included edges as (dependency, dependent) pairs."""
        return set(self._graph.edges())

    def dependencies(self, unit_id: str) -> List[str]:
        return sorted(self._graph.predecessors(unit_id))

    def dependents(self, unit_id: str) -> List[str]:
        return sorted(self._graph.successors(unit_id))

    def transitive_dependents(self, unit_id: str) -> Set[str]:
        return set(nx.descendants(self._graph, unit_id))

    def topological_order(self) -> List[str]:
        """Deterministic build order (ties broken by unit id)."""
        return list(nx.lexicographical_topological_sort(self._graph))

    @property
    def activation_symbols(self) -> FrozenSet[str]:
        """Symbols whose value can change the graph's shape."""
        return self.index.predicate_symbols()

    def default_targets(self) -> List[str]:
        """Every image plus every module; all units when there are neither."""
        targets = sorted(
            unit.unit_id for unit in self._units.values()
            if unit.kind in (UnitKind.IMAGE, UnitKind.MODULE)
        )
        return targets or sorted(self._units)

    def subgraph(self, targets: Iterable[str]) -> "UnitGraph":
        """Restrict to ``targets`` and their transitive dependencies.

        Raises:
            UnitDeclarationError: If a target is not an included unit
        """
        targets = list(targets)
        keep: Set[str] = set()
        for target in targets:
            if target not in self._units:
                if target in self.index:
                    raise UnitDeclarationError(f"Unit '{target}' is not active in the current configuration")
                raise UnitDeclarationError(f"Unknown unit '{target}'")
            keep.add(target)
            keep |= nx.ancestors(self._graph, target)

        units = {unit_id: unit for unit_id, unit in self._units.items() if unit_id in keep}
        return UnitGraph(self.index, self.state, self.context, units, self._graph.subgraph(keep).copy())

    def with_state(self, state: ConfigurationState) -> "UnitGraph":
        """Same shape, attached to a newer state."""
        return UnitGraph(self.index, state, self.context, self._units, self._graph)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable snapshot of the graph's shape."""
        activation = {}
        for name in sorted(self.activation_symbols):
            if name in self.state:
                activation[name] = {
                    "kind": self.state.kind(name).value,
                    "value": self.state.value(name),
                }
        return {
            "version": SNAPSHOT_VERSION,
            "index_digest": self.index.digest(),
            "context_digest": self.context.digest(),
            "activation": activation,
            "units": [
                {"id": unit.unit_id, "kind": unit.kind.value, "activation": unit.activation}
                for unit in self._units.values()
            ],
            "edges": sorted([list(edge) for edge in self._graph.edges()]),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: SourceIndex, context: TargetContext) -> "UnitGraph":
        """
        Rebuild a graph from a snapshot.

        The returned graph carries the activation slice of the state it was
        built for; pass it to :func:`refresh` with the current state.

        Raises:
            ValueError: If the snapshot does not belong to this index and context
        """
        if data.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported graph snapshot version: {data.get('version')}")
        if data.get("index_digest") != index.digest():
            raise ValueError("Graph snapshot was built from different declarations")
        if data.get("context_digest") != context.digest():
            raise ValueError("Graph snapshot was built for a different target")

        try:
            values = {name: entry["value"] for name, entry in data["activation"].items()}
            kinds = {name: SymbolKind(entry["kind"]) for name, entry in data["activation"].items()}
            units = {}
            for entry in data["units"]:
                units[entry["id"]] = BuildUnit(index[entry["id"]], UnitKind(entry["kind"]), entry["activation"])
            graph = nx.DiGraph()
            graph.add_nodes_from(units)
            for source, target in data["edges"]:
                if source not in units or target not in units:
                    raise ValueError(f"Snapshot edge references unknown unit: {source} -> {target}")
                graph.add_edge(source, target)
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed graph snapshot: {e}") from e

        return cls(index, ConfigurationState(values, kinds), context, units, graph)


def construct(index: SourceIndex, state: ConfigurationState, context: TargetContext) -> UnitGraph:
    """
    Construct the pruned unit graph for a configuration.

    Raises:
        GraphCycleError: If the pruned graph contains a cycle
    """
    units: Dict[str, BuildUnit] = {}
    for decl in index:
        activation = state.evaluate(decl.predicate)
        if activation == "n":
            continue
        kind = decl.kind
        if decl.modular and activation == "m":
            kind = UnitKind.MODULE
        units[decl.unit_id] = BuildUnit(decl, kind, activation)

    graph = nx.DiGraph()
    graph.add_nodes_from(units)
    for unit in units.values():
        for dep in unit.declaration.deps:
            if dep not in units:
                continue
            if units[dep].kind == UnitKind.MODULE and unit.kind != UnitKind.MODULE:
                continue
            graph.add_edge(dep, unit.unit_id)

    _prune_orphans(index, units, graph)
    _link_images(units, graph)

    try:
        cycle = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        cycle = None
    if cycle:
        raise GraphCycleError([edge[0] for edge in cycle] + [cycle[0][0]])

    logging.debug(f"Constructed unit graph: {len(units)} of {len(index)} units, {graph.number_of_edges()} edges")
    return UnitGraph(index, state, context, units, graph)


def refresh(graph: UnitGraph, old_state: Optional[ConfigurationState], new_state: ConfigurationState) -> UnitGraph:
    """
    Bring a graph up to date with a new configuration.

    The graph is reconstructed only when a changed symbol appears in some
    activation predicate; otherwise the existing shape is kept and attached
    to ``new_state``.
    """
    changed = ConfigStore.diff(old_state, new_state)
    relevant = changed & graph.activation_symbols
    if relevant:
        logging.info(f"Reconstructing unit graph; activation symbols changed: {', '.join(sorted(relevant))}")
        return construct(graph.index, new_state, graph.context)
    logging.debug(f"Reusing unit graph ({len(changed)} value-only symbols changed)")
    return graph.with_state(new_state)


def _prune_orphans(index: SourceIndex, units: Dict[str, BuildUnit], graph: "nx.DiGraph") -> None:
    declared_dependents = index.dependents()
    pending = list(units)
    while pending:
        unit_id = pending.pop()
        if unit_id not in units:
            continue
        unit = units[unit_id]
        if unit.kind in (UnitKind.MODULE, UnitKind.IMAGE):
            continue
        if not declared_dependents[unit_id] or graph.out_degree(unit_id) > 0:
            continue
        logging.debug(f"Pruning {unit_id}: reachable only through deactivated units")
        pending.extend(graph.predecessors(unit_id))
        graph.remove_node(unit_id)
        del units[unit_id]


def _link_images(units: Dict[str, BuildUnit], graph: "nx.DiGraph") -> None:
    images = [unit for unit in units.values() if unit.kind == UnitKind.IMAGE and unit.declaration.auto_link]
    if not images:
        return
    top_level = [
        unit_id for unit_id, unit in units.items()
        if unit.kind not in (UnitKind.IMAGE, UnitKind.MODULE) and graph.out_degree(unit_id) == 0
    ]
    for image in images:
        for unit_id in top_level:
            graph.add_edge(unit_id, image.unit_id)
