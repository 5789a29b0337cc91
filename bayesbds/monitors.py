"""Monitors for bayesbds.

A monitor is notified with a read-only snapshot of the model every
`printgen` iterations (and at iteration 0 for the starting state) and
records selected values: in memory, to a delimited file, to the screen, as
annotated Newick trees, or as a bounded store of tree copies. Monitors are
configured once and cloned for every independent run.
"""

import logging
from collections import deque
from copy import deepcopy
from pathlib import Path
from typing import Any, IO, Sequence
import numpy as np
import pandas as pd
from .graph import ModelGraph, ModelSnapshot
from .node import DAGNode
from .tree import AugmentedTree
from .exceptions import ConfigurationError, AbstractMethodError

logger = logging.getLogger(__name__)


def run_path(filename: str | Path, run_index: int | None) -> Path:
    """Per-run file name: <stem>_run_<i><suffix> (1-based), or the name itself."""
    path = Path(filename)
    if run_index is None:
        return path
    return path.with_name(f'{path.stem}_run_{run_index + 1}{path.suffix}')


def _is_numeric(value: Any) -> bool:
    if isinstance(value, (bool, int, float, np.integer, np.floating)):
        return True
    return isinstance(value, np.ndarray) and np.issubdtype(value.dtype, np.number)


class Monitor():
    """
    Base class for monitors.

    Parameters
    ----------
    printgen : int, optional
        Sampling interval in iterations (default 1).
    nodes : sequence of str or DAGNode, optional
        Nodes to record. None records every free stochastic and deterministic
        node with a numeric value.
    name : str or None, optional
        Key of the monitor's trace in the run results.
    """
    def __init__(self, printgen: int = 1, nodes: Sequence[str | DAGNode] | None = None, name: str | None = None):
        if not isinstance(printgen, (int, np.integer)) or printgen <= 0:
            raise ConfigurationError(f'printgen must be a positive integer, got {printgen!r}')
        self.printgen = int(printgen)
        self.nodes = None if nodes is None else [n.name if isinstance(n, DAGNode) else n for n in nodes]
        self.name = name
        self.run_index: int | None = None
        self.is_open = False

    def should_notify(self, iteration: int) -> bool:
        return iteration % self.printgen == 0

    def open(self, run_index: int | None = None):
        self.run_index = run_index
        self.is_open = True

    def close(self, incomplete: str | None = None):
        self.is_open = False

    def notify(self, iteration: int, snapshot: ModelSnapshot):
        """
        Record the state at an iteration.

        Raises
        ------
        AbstractMethodError
            Always raised; to be implemented in a subclass.
        """
        raise AbstractMethodError()

    def clone(self) -> 'Monitor':
        """A closed, empty copy with the same configuration."""
        if self.is_open:
            raise ConfigurationError(f'Cannot clone the open monitor {self!r}')
        return deepcopy(self)

    def check(self, graph: ModelGraph):
        """
        Check the monitored node names against a graph.

        Raises
        ------
        ConfigurationError
            If a name is not a node of the graph.
        """
        for name in self.nodes or ():
            graph.get_node(name)

    def to_frame(self) -> pd.DataFrame | None:
        return None

    def selected_nodes(self, snapshot: ModelSnapshot) -> list[str]:
        if self.nodes is not None:
            for name in self.nodes:
                snapshot.node(name)
            return list(self.nodes)
        out = []
        for name in snapshot:
            node = snapshot.node(name)
            if (node.is_deterministic() or (node.is_stochastic() and not node.clamped)) and _is_numeric(snapshot[name]):
                out.append(name)
        return out

    def __repr__(self):
        return f'{type(self).__name__}(printgen={self.printgen})'


class _ValueMonitor(Monitor):
    # monitors writing one row of numbers per sample
    def __init__(self, printgen: int = 1, nodes=None, name: str | None = None,
                 posterior: bool = True, likelihood: bool = True, prior: bool = True):
        super().__init__(printgen, nodes, name)
        self.posterior = posterior
        self.likelihood = likelihood
        self.prior = prior
        self._columns: list[str] | None = None
        self._node_names: list[str] = []

    def open(self, run_index=None):
        super().open(run_index)
        self._columns = None
        self._node_names = []

    def row(self, iteration: int, snapshot: ModelSnapshot) -> dict[str, Any]:
        """
        Values at an iteration; vector values are expanded to name[1], name[2], ...
        """
        row: dict[str, Any] = {'Iteration': iteration}
        if self.posterior:
            row['Posterior'] = snapshot.posterior
        if self.likelihood:
            row['Likelihood'] = snapshot.likelihood
        if self.prior:
            row['Prior'] = snapshot.prior
        if self._columns is None:
            self._node_names = self.selected_nodes(snapshot)
        for name in self._node_names:
            value = snapshot[name]
            if isinstance(value, AugmentedTree):
                row[f'{name}.num_events'] = value.total_num_events()
            elif np.ndim(value) == 0:
                row[name] = value
            else:
                for k, v in enumerate(np.ravel(value), start=1):
                    row[f'{name}[{k}]'] = v
        if self._columns is None:
            self._columns = list(row)
        return row


class TraceMonitor(_ValueMonitor):
    """In-memory trace of selected values; see to_frame."""
    def __init__(self, printgen: int = 1, nodes=None, name: str | None = None,
                 posterior: bool = True, likelihood: bool = True, prior: bool = True):
        super().__init__(printgen, nodes, name, posterior, likelihood, prior)
        self.records: list[dict[str, Any]] = []

    def open(self, run_index=None):
        super().open(run_index)
        self.records = []

    def notify(self, iteration, snapshot):
        self.records.append(self.row(iteration, snapshot))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.records, columns=self._columns)


class FileMonitor(_ValueMonitor):
    """
    Delimited text file of selected values, one row per sample.

    The header is written first, records are appended and flushed one at a
    time, so a file cut short by an abort still holds valid records. With
    several runs each writes to <stem>_run_<i><suffix>.

    Parameters
    ----------
    filename : str or Path
        Output file.
    separator : str, optional
        Column delimiter (default tab).
    """
    def __init__(self, filename: str | Path, printgen: int = 1, nodes=None, name: str | None = None,
                 separator: str = '\t', posterior: bool = True, likelihood: bool = True, prior: bool = True):
        super().__init__(printgen, nodes, name, posterior, likelihood, prior)
        if not separator:
            raise ConfigurationError('separator must be a non-empty string')
        self.filename = Path(filename)
        self.separator = separator
        self.path: Path | None = None
        self._handle: IO[str] | None = None

    def open(self, run_index=None):
        super().open(run_index)
        self.path = run_path(self.filename, run_index)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, 'w')

    def notify(self, iteration, snapshot):
        first = self._columns is None
        row = self.row(iteration, snapshot)
        if first:
            self._handle.write(self.separator.join(self._columns) + '\n')
        self._handle.write(self.separator.join(str(row.get(c, '')) for c in self._columns) + '\n')
        self._handle.flush()

    def close(self, incomplete=None):
        if self._handle is not None:
            if incomplete is not None:
                self._handle.write(f'# INCOMPLETE: {incomplete}\n')
            self._handle.close()
            self._handle = None
        super().close(incomplete)

    def to_frame(self) -> pd.DataFrame | None:
        if self.path is None or not self.path.exists() or self.path.stat().st_size == 0:
            return None
        return pd.read_csv(self.path, sep=self.separator, comment='#')

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_handle'] = None
        return state


class ScreenMonitor(_ValueMonitor):
    """Print selected values to standard output."""
    def __init__(self, printgen: int = 1, nodes=None, name: str | None = None, posterior: bool = True,
                 likelihood: bool = False, prior: bool = False, digits: int = 4):
        super().__init__(printgen, nodes, name, posterior, likelihood, prior)
        self.digits = digits

    def notify(self, iteration, snapshot):
        first = self._columns is None
        row = self.row(iteration, snapshot)
        if first:
            print('   '.join(self._columns))
        print('   '.join(f'{v:.{self.digits}g}' if isinstance(v, (float, np.floating)) else str(v) for v in row.values()))


class EventTreeMonitor(Monitor):
    """
    Annotated Newick string of the shift history at every sample.

    Branches carry [&nevents=k] comments, plus average speciation and
    extinction rates when the root-rate nodes are given.

    Parameters
    ----------
    history : str or DAGNode
        The shift history node.
    speciation, extinction : str, DAGNode or None, optional
        Root-rate nodes used to annotate branch rates.
    filename : str, Path or None, optional
        If given, lines "<iteration><tab><newick>" are appended to this file.
    """
    def __init__(self, history: str | DAGNode, printgen: int = 1, speciation: str | DAGNode | None = None,
                 extinction: str | DAGNode | None = None, filename: str | Path | None = None, name: str | None = None):
        super().__init__(printgen, [history], name)
        self.history = self.nodes[0]
        self.speciation = speciation.name if isinstance(speciation, DAGNode) else speciation
        self.extinction = extinction.name if isinstance(extinction, DAGNode) else extinction
        self.filename = Path(filename) if filename is not None else None
        self.path: Path | None = None
        self.trees: list[tuple[int, str]] = []
        self._handle: IO[str] | None = None

    def check(self, graph):
        super().check(graph)
        for name in (self.speciation, self.extinction):
            if name is not None:
                graph.get_node(name)

    def open(self, run_index=None):
        super().open(run_index)
        self.trees = []
        if self.filename is not None:
            self.path = run_path(self.filename, run_index)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.path, 'w')
            self._handle.write('Iteration\ttree\n')

    def notify(self, iteration, snapshot):
        tree = snapshot[self.history]
        lam = snapshot[self.speciation] if self.speciation is not None else None
        mu = snapshot[self.extinction] if self.extinction is not None else None
        newick = tree.to_newick(annotate=True, speciation=lam, extinction=mu)
        self.trees.append((iteration, newick))
        if self._handle is not None:
            self._handle.write(f'{iteration}\t{newick}\n')
            self._handle.flush()

    def close(self, incomplete=None):
        if self._handle is not None:
            if incomplete is not None:
                self._handle.write(f'# INCOMPLETE: {incomplete}\n')
            self._handle.close()
            self._handle = None
        super().close(incomplete)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.trees, columns=['Iteration', 'tree'])

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_handle'] = None
        return state


class TreeStoreMonitor(Monitor):
    """
    First-in first-out store of copies of the shift history.

    Parameters
    ----------
    history : str or DAGNode
        The shift history node.
    max_stored_trees : int, optional
        Capacity of the store; older trees are dropped first (default 2000).
    """
    def __init__(self, history: str | DAGNode, printgen: int = 10, max_stored_trees: int = 2000, name: str | None = None):
        super().__init__(printgen, [history], name)
        if max_stored_trees <= 0:
            raise ConfigurationError(f'max_stored_trees must be positive, got {max_stored_trees}')
        self.history = self.nodes[0]
        self.max_stored_trees = max_stored_trees
        self.tree_store: deque[tuple[int, AugmentedTree]] = deque(maxlen=max_stored_trees)

    def open(self, run_index=None):
        super().open(run_index)
        self.tree_store = deque(maxlen=self.max_stored_trees)

    def notify(self, iteration, snapshot):
        self.tree_store.append((iteration, snapshot[self.history].copy()))

    def trees(self) -> list[AugmentedTree]:
        return [t for _, t in self.tree_store]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({'Iteration': [i for i, _ in self.tree_store],
                             'num_events': [t.total_num_events() for _, t in self.tree_store]})
