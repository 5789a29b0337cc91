"""Birth-death-shift model assembly for bayesbds.

BDSModel wires the nodes of a complete birth-death-shift analysis on an
observed tree into a frozen ModelGraph:

    speciation, extinction          root-level rates (constants or priors)
    shift_rate, multiplier_sd       shift process hyperparameters
    topology                        constant, the observed tree
    history ~ ShiftEventPrior(topology, shift_rate, multiplier_sd)
    phylogeny ~ BirthDeathShiftProcess(history, speciation, extinction, rho), clamped
    branch_rates, num_events, net_diversification, relative_extinction   deterministic

and provides a default set of moves.
"""

import logging
import numpy as np
from .node import ConstantNode, StochasticNode, DeterministicNode, DAGNode
from .graph import ModelGraph
from .tree import AugmentedTree
from .distributions import Distribution, LogNormal, ShiftEventPrior, BirthDeathShiftProcess
from .bds import branch_rates, total_num_events, net_diversification, relative_extinction
from .moves import Move, ScaleMove, event_moves
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# standard deviation giving a 95% prior interval spanning one order of magnitude
RATE_SD = 0.587405


def _rate_node(name: str, value, initial: float) -> DAGNode:
    if isinstance(value, DAGNode):
        return value
    if isinstance(value, Distribution):
        return StochasticNode(name, value, initial_value=initial)
    if value is None or not np.isscalar(value):
        raise ConfigurationError(f'{name} must be a number, a Distribution or a node, got {value!r}')
    return ConstantNode(name, float(value))


class BDSModel():
    """
    A complete birth-death-shift model on an observed tree.

    Parameters
    ----------
    tree : AugmentedTree
        The observed, ultrametric phylogeny; its events (if any) are ignored.
    speciation, extinction : float, Distribution, node or None, optional
        Root rates. None uses a LogNormal prior centred on the pure-birth
        estimate log(n/2)/root_age with sd RATE_SD.
    shift_rate : float, Distribution or node, optional
        Events per unit branch length. None sets expected_shifts/total_length.
    expected_shifts : float, optional
        Prior expected number of events when shift_rate is None (default 1).
    multiplier_sd : float, Distribution or node, optional
        Standard deviation of the log multipliers (default 0.5).
    rho : float, optional
        Sampling fraction (default 1).
    condition : str, optional
        'survival' or 'time' (default 'survival').
    combine_extinction : str, optional
        'mean' or 'geometric' merge of sister extinction probabilities (default 'mean').
    extinction_shifts : bool, optional
        If False events only change the speciation rate (default True).
    debug : bool, optional
        Passed to the graph and the history tree.

    Attributes
    ----------
    graph : ModelGraph
        The frozen model graph.
    history : StochasticNode
        The free shift history node.
    phylogeny : StochasticNode
        The clamped observed tree.
    """
    def __init__(self, tree: AugmentedTree, speciation=None, extinction=None, shift_rate=None,
                 expected_shifts: float = 1.0, multiplier_sd=0.5, rho: float = 1.0, condition: str = 'survival',
                 extinction_shifts: bool = True, combine_extinction: str = 'mean', debug: bool = False):
        if tree.n_tips() < 2:
            raise ConfigurationError('The observed tree needs at least two tips')
        if not tree.is_ultrametric(tol=1e-6*max(tree.root_age(), 1.0)):
            logger.warning('The observed tree is not ultrametric; tips are treated as extant')
        observed = tree.copy()
        observed.clear_events()
        observed.commit()
        observed.debug = debug

        rate_mean = np.log(tree.n_tips()/2)/tree.root_age() if tree.root_age() > 0 else 1.0
        rate_mean = max(rate_mean, 1e-3)
        if speciation is None:
            speciation = LogNormal(np.log(rate_mean), RATE_SD)
        if extinction is None:
            extinction = LogNormal(np.log(rate_mean/2), RATE_SD)
        if shift_rate is None:
            shift_rate = expected_shifts/observed.total_length()

        self.speciation = _rate_node('speciation', speciation, rate_mean)
        self.extinction = _rate_node('extinction', extinction, rate_mean/2)
        self.shift_rate = _rate_node('shift_rate', shift_rate, expected_shifts/observed.total_length())
        self.multiplier_sd = _rate_node('multiplier_sd', multiplier_sd, 0.5)
        self.topology = ConstantNode('topology', observed)
        self.extinction_shifts = extinction_shifts

        self.history = StochasticNode('history',
                                      ShiftEventPrior(self.topology, self.shift_rate, self.multiplier_sd, extinction_shifts),
                                      value=observed.copy(), initial_value=observed.copy())
        self.phylogeny = StochasticNode('phylogeny',
                                        BirthDeathShiftProcess(self.history, self.speciation, self.extinction, rho, condition,
                                                               combine_extinction),
                                        value=observed, clamped=True)
        self.branch_rates = DeterministicNode('branch_rates', branch_rates,
                                              history=self.history, speciation=self.speciation, extinction=self.extinction)
        self.num_events = DeterministicNode('num_events', total_num_events, history=self.history)
        self.net_diversification = DeterministicNode('net_diversification', net_diversification,
                                                     speciation=self.speciation, extinction=self.extinction)
        self.relative_extinction = DeterministicNode('relative_extinction', relative_extinction,
                                                     speciation=self.speciation, extinction=self.extinction)
        self.graph = ModelGraph.from_nodes(self.phylogeny, debug=debug)

    def default_moves(self, weight: float = 1.0) -> list[Move]:
        """
        Scale moves on every free rate parameter plus the event moves on the history.
        """
        moves: list[Move] = []
        for node in (self.speciation, self.extinction, self.shift_rate, self.multiplier_sd):
            if isinstance(node, StochasticNode) and not node.clamped:
                moves.append(ScaleMove(node, weight))
        moves.extend(event_moves(self.history, weight, self.extinction_shifts))
        return moves

    def __repr__(self):
        return f'BDSModel(tips={self.topology.get_value().n_tips()}, nodes={len(self.graph)})'
