"""Node classes for bayesbds.

This module defines the vertices of the model graph: constants, stochastic
variables (with a distribution, possibly clamped to observed data) and
deterministic variables computed lazily from their parents.
"""

import numpy as np
from typing import Any, Callable
from .exceptions import ConfigurationError, NumericalError
from .mytyping import Value

_UNSET = object()


class DAGNode():
    """
    Base class of every vertex in the model graph.

    Attributes
    ----------
    name : str or None
        Unique name within a model graph. Anonymous constants are named after
        the node that uses them.
    kind : str
        One of 'constant', 'stochastic', 'deterministic'.
    parents : dict[str, DAGNode]
        Argument name -> parent node, in declaration order.
    children : list[DAGNode]
        Nodes that depend on this one.
    dirty : bool
        True when derived state (deterministic value, log-density) must be recomputed.
    """
    kind = ''

    def __init__(self, name: str | None):
        self.name = name
        self.parents: dict[str, DAGNode] = {}
        self.children: list[DAGNode] = []
        self.dirty = False

    def _add_parent(self, arg: str, parent: 'DAGNode'):
        if not isinstance(parent, DAGNode):
            parent = ConstantNode(None, parent)
        self.parents[arg] = parent
        parent.children.append(self)

    def _remove_parent(self, arg: str):
        parent = self.parents.pop(arg)
        parent.children.remove(self)

    def _name_anonymous_parents(self):
        for arg, parent in self.parents.items():
            if parent.name is None:
                parent.name = f'{self.name}.{arg}'

    def get_value(self) -> Value:
        raise NotImplementedError()

    def parent_values(self) -> dict[str, Value]:
        return {arg: p.get_value() for arg, p in self.parents.items()}

    def is_constant(self) -> bool:
        return self.kind == 'constant'

    def is_stochastic(self) -> bool:
        return self.kind == 'stochastic'

    def is_deterministic(self) -> bool:
        return self.kind == 'deterministic'

    # Snapshot hooks used by ModelGraph.touch/keep/restore
    def _snapshot(self) -> tuple:
        return (self.dirty,)

    def _restore(self, snap: tuple):
        self.dirty = snap[0]

    def _commit(self):
        pass

    def __repr__(self):
        return f'{type(self).__name__}({self.name!r})'


class ConstantNode(DAGNode):
    """A node holding a fixed value (data, hyperparameters, the observed topology)."""
    kind = 'constant'

    def __init__(self, name: str | None, value: Value):
        super().__init__(name)
        self._value = value

    def get_value(self) -> Value:
        return self._value


class StochasticNode(DAGNode):
    """
    A random variable with a distribution.

    The parents of a stochastic node are the parameter nodes of its distribution.
    A clamped node holds observed data: its value never changes and its density
    is a likelihood term. Free nodes contribute their prior density.

    Parameters
    ----------
    name : str
        Node name.
    distribution : Distribution
        The distribution of the variable.
    value : Any, optional
        Current value. If None, it is drawn when the graph is initialized.
    clamped : bool, optional
        If True, value is observed data (default False).
    initial_value : Any, optional
        Fallback starting value used when draws from the distribution are not a
        valid starting point.
    """
    kind = 'stochastic'

    def __init__(self, name: str, distribution, value: Value = None, clamped: bool = False, initial_value: Value = None):
        super().__init__(name)
        self.distribution = distribution
        for arg, param in distribution.parameters.items():
            self._add_parent(arg, param)
        self._name_anonymous_parents()
        if clamped and value is None:
            raise ConfigurationError(f'Clamped node {name} needs a value')
        self._value = value
        self._stored_value = _UNSET
        self.clamped = clamped
        self.initial_value = initial_value
        self._log_prob = np.nan
        self.dirty = True

    def get_value(self) -> Value:
        return self._value

    def set_value(self, value: Value):
        """
        Replace the value, remembering the previous one until keep/restore.

        Use ModelGraph.set_value so that descendants are invalidated.
        """
        if self.clamped:
            raise ConfigurationError(f'Node {self.name} is clamped to observed data')
        if self._stored_value is _UNSET:
            self._stored_value = self._value
        self._value = value

    def clamp(self, value: Value):
        self._value = value
        self.clamped = True
        self.dirty = True

    def unclamp(self):
        self.clamped = False

    def redraw(self, rng: np.random.Generator):
        """Draw a new value from the distribution given the current parameters."""
        if self.clamped:
            raise ConfigurationError(f'Cannot redraw clamped node {self.name}')
        self._value = self.distribution.sample(rng)
        self.dirty = True

    def log_prob(self) -> float:
        """
        Log-density of the current value given the current parameter values.

        Cached until the node or one of its ancestors is touched.

        Raises
        ------
        NumericalError
            If the density evaluates to NaN.
        """
        if self.dirty:
            if self._value is None:
                raise ConfigurationError(f'Node {self.name} has no value')
            lp = float(self.distribution.log_density(self._value))
            if np.isnan(lp):
                raise NumericalError(f'Log-density of {self.name} is NaN')
            self._log_prob = lp
            self.dirty = False
        return self._log_prob

    def _snapshot(self) -> tuple:
        return (self.dirty, self._log_prob)

    def _restore(self, snap: tuple):
        if self._stored_value is not _UNSET:
            self._value = self._stored_value
            self._stored_value = _UNSET
        elif hasattr(self._value, 'rollback'):
            self._value.rollback()
        self.dirty, self._log_prob = snap

    def _commit(self):
        self._stored_value = _UNSET
        if hasattr(self._value, 'commit'):
            self._value.commit()


class DeterministicNode(DAGNode):
    """
    A variable computed as a pure function of its parents.

    The value is memoized; it is recomputed on access after an ancestor is
    touched. Dirty deterministic ancestors are brought up to date first by a
    post-order traversal.

    Parameters
    ----------
    name : str
        Node name.
    function : Callable
        Called with the parent values as keyword arguments.
    **parents
        Argument name -> node (plain values are wrapped into constants).
    """
    kind = 'deterministic'

    def __init__(self, name: str, function: Callable[..., Any], **parents):
        super().__init__(name)
        self.function = function
        for arg, parent in parents.items():
            self._add_parent(arg, parent)
        self._name_anonymous_parents()
        self._cached = None
        self.dirty = True
        self.n_evaluations = 0

    def get_value(self) -> Value:
        if self.dirty:
            self._update()
        return self._cached

    def _update(self):
        # iterative post-order over dirty deterministic ancestors
        order: list[DeterministicNode] = []
        stack: list[tuple[DeterministicNode, bool]] = [(self, False)]
        seen = set()
        while stack:
            node, expanded = stack.pop()
            if expanded:
                order.append(node)
                continue
            if id(node) in seen:
                continue
            seen.add(id(node))
            stack.append((node, True))
            for parent in node.parents.values():
                if isinstance(parent, DeterministicNode) and parent.dirty and id(parent) not in seen:
                    stack.append((parent, False))
        for node in order:
            node._cached = node.function(**node.parent_values())
            node.dirty = False
            node.n_evaluations += 1

    def _snapshot(self) -> tuple:
        return (self.dirty, self._cached)

    def _restore(self, snap: tuple):
        self.dirty, self._cached = snap


def constant(name: str, value: Value) -> ConstantNode:
    return ConstantNode(name, value)

def stochastic(name: str, distribution, value: Value = None, clamped: bool = False, initial_value: Value = None) -> StochasticNode:
    return StochasticNode(name, distribution, value=value, clamped=clamped, initial_value=initial_value)

def deterministic(name: str, function: Callable[..., Any], **parents) -> DeterministicNode:
    return DeterministicNode(name, function, **parents)
