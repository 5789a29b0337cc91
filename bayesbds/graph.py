"""Model graph for bayesbds.

This module implements the ModelGraph class: the directed acyclic graph of
constant, stochastic and deterministic nodes. It owns the dependency
edges, propagates invalidation ("dirty" state) from a modified node to all
of its descendants, evaluates the joint log-probability lazily, and keeps
the per-iteration snapshots needed to accept (keep) or reject (restore) a
proposal.
"""

import logging
from collections.abc import Mapping
from copy import deepcopy
from typing import Any, Iterator
import numpy as np
from .node import DAGNode, StochasticNode, DeterministicNode, ConstantNode
from .exceptions import CycleError, ConfigurationError, NumericalError, AbstractMethodError
from .mytyping import Value

logger = logging.getLogger(__name__)


class ModelGraph():
    """
    Directed acyclic graph of model nodes.

    The graph is assembled with add_node/connect, then frozen before sampling.
    During sampling a move changes a value (set_value, or touch
    followed by an in-place mutation); the graph marks the node and its descendants dirty and
    snapshots their cached state. Exactly one of keep or restore must then be
    called for the touched nodes.

    Parameters
    ----------
    debug : bool, optional
        If True, cached log-densities are checked against a full recomputation
        on keep (default False).

    Attributes
    ----------
    frozen : bool
        True once the structure has been fixed by freeze().
    """
    def __init__(self, debug: bool = False):
        self._nodes: dict[str, DAGNode] = {}
        self._order: list[DAGNode] = []
        self._descendants: dict[str, list[DAGNode]] = {}
        self._touched: dict[int, tuple[DAGNode, tuple]] = {}
        self.frozen = False
        self.debug = debug

    @classmethod
    def from_nodes(cls, *nodes: DAGNode, debug: bool = False) -> 'ModelGraph':
        """
        Build a graph from the connected component(s) containing the given nodes.

        Every ancestor and descendant reachable from the nodes is registered.

        Returns
        -------
        ModelGraph
            A frozen graph.
        """
        graph = cls(debug=debug)
        seen: set[int] = set()
        stack = list(nodes)
        component: list[DAGNode] = []
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            component.append(node)
            stack.extend(node.parents.values())
            stack.extend(node.children)
        for node in component:
            graph.add_node(node)
        graph.freeze()
        return graph

    # ------------------------------------------------------------------
    # assembly
    # ------------------------------------------------------------------

    def _check_editable(self):
        if self.frozen:
            raise ConfigurationError('The model graph is frozen')

    def add_node(self, node: DAGNode) -> DAGNode:
        """
        Register a node and any of its ancestors not yet in the graph.

        Parameters
        ----------
        node : DAGNode

        Returns
        -------
        DAGNode
            The node itself.

        Raises
        ------
        CycleError
            If the node is its own ancestor.
        ConfigurationError
            If the graph is frozen or a different node already uses the name.
        """
        self._check_editable()
        pending = [node]
        new: list[DAGNode] = []
        while pending:
            n = pending.pop()
            if n.name is None:
                raise ConfigurationError(f'Node {n!r} has no name')
            if n.name in self._nodes:
                if self._nodes[n.name] is not n:
                    raise ConfigurationError(f'Duplicate node name {n.name!r}')
                continue
            if any(n is m for m in new):
                continue
            new.append(n)
            pending.extend(n.parents.values())
        for n in new:
            self._nodes[n.name] = n
        try:
            self._check_acyclic(new)
        except CycleError:
            for n in new:
                del self._nodes[n.name]
            raise
        return node

    def add_nodes(self, *nodes: DAGNode):
        for node in nodes:
            self.add_node(node)

    def connect(self, parent: DAGNode, child: DAGNode, arg: str):
        """
        Add an edge parent -> child, the parent value being passed as argument arg.

        Raises
        ------
        CycleError
            If child is parent or one of its ancestors.
        """
        self._check_editable()
        if not isinstance(child, DeterministicNode):
            raise ConfigurationError('Only deterministic nodes can receive new parents; stochastic parents come from their distribution')
        if parent is child or child in self.ancestors(parent):
            raise CycleError(f'Edge {parent.name} -> {child.name} would create a cycle')
        if arg in child.parents:
            child._remove_parent(arg)
        child._add_parent(arg, parent)
        child._name_anonymous_parents()
        child.dirty = True
        self.add_node(parent)
        self.add_node(child)

    def _check_acyclic(self, nodes: list[DAGNode]):
        # colored DFS over parent edges
        state: dict[int, int] = {}
        for start in nodes:
            if id(start) in state:
                continue
            stack = [(start, iter(start.parents.values()))]
            state[id(start)] = 1
            while stack:
                node, it = stack[-1]
                nxt = next(it, None)
                if nxt is None:
                    state[id(node)] = 2
                    stack.pop()
                    continue
                s = state.get(id(nxt), 0)
                if s == 1:
                    raise CycleError(f'Cycle through {nxt.name!r} and {node.name!r}')
                if s == 0:
                    state[id(nxt)] = 1
                    stack.append((nxt, iter(nxt.parents.values())))

    def freeze(self):
        """
        Fix the structure: check acyclicity and precompute the topological order
        and the descendants of every node.
        """
        if self.frozen:
            return
        nodes = list(self._nodes.values())
        for node in nodes:
            for parent in node.parents.values():
                if parent.name not in self._nodes or self._nodes[parent.name] is not parent:
                    raise ConfigurationError(f'Parent {parent.name!r} of {node.name!r} is not in the graph')
            for child in node.children:
                if child.name not in self._nodes:
                    raise ConfigurationError(f'Child {child.name!r} of {node.name!r} is not in the graph')
        self._check_acyclic(nodes)

        # Kahn's algorithm, ties broken by registration order
        indeg = {id(n): len(n.parents) for n in nodes}
        ready = [n for n in nodes if indeg[id(n)] == 0]
        order = []
        while ready:
            n = ready.pop(0)
            order.append(n)
            for c in n.children:
                indeg[id(c)] -= 1
                if indeg[id(c)] == 0:
                    ready.append(c)
        if len(order) != len(nodes):
            raise CycleError('The model graph contains a cycle')
        self._order = order
        position = {id(n): i for i, n in enumerate(order)}
        for n in order:
            desc = self.descendants(n)
            self._descendants[n.name] = sorted(desc, key=lambda d: position[id(d)])
        self.frozen = True

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def __len__(self):
        return len(self._nodes)

    def __iter__(self) -> Iterator[DAGNode]:
        return iter(self._order if self.frozen else self._nodes.values())

    def __contains__(self, node: DAGNode | str) -> bool:
        if isinstance(node, str):
            return node in self._nodes
        return self._nodes.get(node.name) is node

    def get_node(self, name: str) -> DAGNode:
        try:
            return self._nodes[name]
        except KeyError:
            raise ConfigurationError(f'No node named {name!r}') from None

    def __getitem__(self, name: str) -> DAGNode:
        return self.get_node(name)

    def stochastic_nodes(self) -> list[StochasticNode]:
        return [n for n in self if isinstance(n, StochasticNode)]

    def free_nodes(self) -> list[StochasticNode]:
        return [n for n in self.stochastic_nodes() if not n.clamped]

    def clamped_nodes(self) -> list[StochasticNode]:
        return [n for n in self.stochastic_nodes() if n.clamped]

    def deterministic_nodes(self) -> list[DeterministicNode]:
        return [n for n in self if isinstance(n, DeterministicNode)]

    @staticmethod
    def ancestors(node: DAGNode) -> list[DAGNode]:
        out, seen, stack = [], set(), list(node.parents.values())
        while stack:
            n = stack.pop()
            if id(n) in seen:
                continue
            seen.add(id(n))
            out.append(n)
            stack.extend(n.parents.values())
        return out

    def descendants(self, node: DAGNode) -> list[DAGNode]:
        if self.frozen and node.name in self._descendants:
            return self._descendants[node.name]
        out, seen, stack = [], set(), list(node.children)
        while stack:
            n = stack.pop()
            if id(n) in seen:
                continue
            seen.add(id(n))
            out.append(n)
            stack.extend(n.children)
        return out

    # ------------------------------------------------------------------
    # probability
    # ------------------------------------------------------------------

    def get_log_posterior(self) -> float:
        """
        Joint log-density of all stochastic nodes (prior plus likelihood, unnormalized).

        Only nodes touched since their last evaluation are recomputed.
        """
        return sum((n.log_prob() for n in self.stochastic_nodes()), 0.0)

    def get_log_likelihood(self) -> float:
        return sum((n.log_prob() for n in self.clamped_nodes()), 0.0)

    def get_log_prior(self) -> float:
        return sum((n.log_prob() for n in self.free_nodes()), 0.0)

    # ------------------------------------------------------------------
    # proposal bookkeeping
    # ------------------------------------------------------------------

    def touch(self, node: DAGNode):
        """
        Mark a node and all of its descendants dirty.

        Called by a move right before changing a value. The cached state of every
        affected node is snapshotted the first time it is touched in an iteration.
        """
        if isinstance(node, ConstantNode):
            raise ConfigurationError(f'Constant node {node.name!r} cannot change')
        for n in [node, *self.descendants(node)]:
            if id(n) not in self._touched:
                self._touched[id(n)] = (n, n._snapshot())
            n.dirty = True

    def set_value(self, node: StochasticNode, value: Value):
        """Touch a free stochastic node, then replace its value."""
        if getattr(node, 'clamped', False):
            raise ConfigurationError(f'Node {node.name} is clamped to observed data')
        self.touch(node)
        node.set_value(value)

    def keep(self, node: DAGNode):
        """
        Accept the proposal for node and its descendants: commit their current
        state and drop the snapshots. Calling keep twice is a no-op.
        """
        for n in [node, *self.descendants(node)]:
            entry = self._touched.pop(id(n), None)
            if entry is not None:
                n._commit()
        if self.debug:
            self._check_caches()

    def restore(self, node: DAGNode):
        """
        Reject the proposal for node and its descendants: revert values, cached
        deterministic values, log-densities and dirty flags to their snapshots.
        """
        for n in [node, *self.descendants(node)]:
            entry = self._touched.pop(id(n), None)
            if entry is not None:
                n._restore(entry[1])

    def keep_all(self):
        for n, _ in list(self._touched.values()):
            if id(n) in self._touched:
                self.keep(n)

    def restore_all(self):
        for n, _ in list(self._touched.values()):
            if id(n) in self._touched:
                self.restore(n)

    def n_touched(self) -> int:
        return len(self._touched)

    def _check_caches(self):
        for n in self.stochastic_nodes():
            if not n.dirty:
                cached = n._log_prob
                fresh = float(n.distribution.log_density(n.get_value()))
                if not (cached == fresh or np.isclose(cached, fresh)):
                    raise AssertionError(f'Stale log-density cache for {n.name}: {cached} != {fresh}')

    # ------------------------------------------------------------------
    # initialization and snapshots
    # ------------------------------------------------------------------

    def initialize(self, rng: np.random.Generator, max_attempts: int = 100):
        """
        Make sure every free stochastic node has a value with finite joint density.

        Missing values are drawn from their distributions. If the joint density
        is not finite, free nodes without a user-supplied value are redrawn up to
        max_attempts times; then the explicitly supplied initial values are used.

        Raises
        ------
        NumericalError
            If no valid starting state could be found.
        """
        self.freeze()
        user_set = {id(n) for n in self.free_nodes() if n.get_value() is not None}
        for node in self.free_nodes():
            if node.get_value() is None:
                self._draw(node, rng)

        attempt = 0
        while not self._valid_start():
            attempt += 1
            if attempt > max_attempts:
                break
            logger.debug('Invalid starting state, redrawing (attempt %d)', attempt)
            for node in self.free_nodes():
                if id(node) not in user_set:
                    self._draw(node, rng)
        else:
            return

        fallback = [n for n in self.free_nodes() if n.initial_value is not None]
        for node in fallback:
            logger.info('Using the supplied initial value of %s', node.name)
            node._value = deepcopy(node.initial_value)
            self._invalidate_all()
        if not self._valid_start():
            raise NumericalError(f'Could not find a starting state with finite posterior after {max_attempts} attempts')

    def _draw(self, node: StochasticNode, rng: np.random.Generator):
        try:
            node.redraw(rng)
        except (AbstractMethodError, NumericalError, ValueError) as e:
            if node.initial_value is None:
                raise
            logger.info('Drawing %s failed (%s), using its initial value', node.name, e)
            node._value = deepcopy(node.initial_value)
        self._invalidate_all()

    def _invalidate_all(self):
        for n in self:
            if not isinstance(n, ConstantNode):
                n.dirty = True

    def _valid_start(self) -> bool:
        try:
            return bool(np.isfinite(self.get_log_posterior()))
        except NumericalError:
            return False

    def snapshot(self) -> 'ModelSnapshot':
        return ModelSnapshot(self)

    def values(self) -> dict[str, Value]:
        return {name: node.get_value() for name, node in self._nodes.items()}

    def copy(self) -> 'ModelGraph':
        """Deep copy for an independent run."""
        if self._touched:
            raise ConfigurationError('Cannot copy a graph with pending proposals')
        return deepcopy(self)


class ModelSnapshot(Mapping):
    """
    Read-only view of the current node values, keyed by node name.

    Deterministic values are brought up to date on access.
    """
    def __init__(self, graph: ModelGraph):
        self._graph = graph

    def __getitem__(self, name: str) -> Any:
        return self._graph.get_node(name).get_value()

    def __iter__(self):
        return (n.name for n in self._graph)

    def __len__(self):
        return len(self._graph)

    def node(self, name: str) -> DAGNode:
        return self._graph.get_node(name)

    @property
    def posterior(self) -> float:
        return self._graph.get_log_posterior()

    @property
    def likelihood(self) -> float:
        return self._graph.get_log_likelihood()

    @property
    def prior(self) -> float:
        return self._graph.get_log_prior()
