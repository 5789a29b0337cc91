"""Move scheduler for bayesbds.

The scheduler owns the registered moves of one chain. Each iteration it
picks a move with probability proportional to its weight, lets it propose,
and accepts or rejects with the Metropolis-Hastings rule, keeping or
restoring the touched part of the model graph. Acceptance statistics are
collected per move and used to tune the moves periodically.
"""

import logging
import numpy as np
import pandas as pd
from typing import Iterable
from .graph import ModelGraph
from .moves import Move, EventBirthMove, EventDeathMove
from .exceptions import ConfigurationError, NumericalError

logger = logging.getLogger(__name__)


class MoveScheduler():
    """
    Weighted random selection and Metropolis-Hastings evaluation of moves.

    Parameters
    ----------
    graph : ModelGraph
        The model the moves act on.
    tune_interval : int or None, optional
        Number of iterations between tuning updates; None or 0 disables tuning (default 100).
    tune_until : int or None, optional
        Last iteration at which tuning happens, e.g. the end of burn-in (default None, always).
    debug : bool, optional
        If True, checks that no proposal is left pending and that the history is valid after every step.

    Attributes
    ----------
    moves : list[Move]
        Registered moves in insertion order.
    counters : dict
        Totals of proposed, accepted, rejected and automatically rejected proposals.
    """
    def __init__(self, graph: ModelGraph, tune_interval: int | None = 100, tune_until: int | None = None, debug: bool = False):
        if tune_interval is not None and tune_interval < 0:
            raise ConfigurationError(f'tune_interval must be non-negative, got {tune_interval}')
        self.graph = graph
        self.tune_interval = tune_interval
        self.tune_until = tune_until
        self.debug = debug
        self.moves: list[Move] = []
        self._cum_weights = np.empty(0)
        self.counters = {'proposed': 0, 'accepted': 0, 'rejected': 0, 'failed_numerical': 0, 'failed_prob': 0}

    def register(self, move: Move | Iterable[Move]):
        """
        Add a move, or every move of an iterable such as an EventBirthDeathPair.

        Raises
        ------
        ConfigurationError
            If a target is not in the graph or is clamped.
        """
        if not isinstance(move, Move):
            for m in move:
                self.register(m)
            return
        for t in move.targets:
            if t not in self.graph:
                raise ConfigurationError(f'Move {move!r} targets {t.name!r}, which is not in the model graph')
            if t.clamped:
                raise ConfigurationError(f'Move {move!r} targets the clamped node {t.name!r}')
        self.moves.append(move)
        self._cum_weights = np.cumsum([m.weight for m in self.moves])

    def validate(self):
        """
        Check the move set as a whole.

        Raises
        ------
        ConfigurationError
            If there are no moves, or a birth move is registered without its death partner.
        """
        if not self.moves:
            raise ConfigurationError('No moves registered')
        registered = {id(m) for m in self.moves}
        for move in self.moves:
            if isinstance(move, EventBirthMove):
                if move.partner is None or id(move.partner) not in registered:
                    raise ConfigurationError(f'{move!r} is registered without its EventDeathMove partner')
            elif isinstance(move, EventDeathMove):
                if move.partner is None or id(move.partner) not in registered:
                    logger.warning('%r has no birth partner: the chain is not reversible and the number of events can only decrease', move)

    def select(self, rng: np.random.Generator) -> Move:
        u = rng.random()*self._cum_weights[-1]
        idx = int(np.searchsorted(self._cum_weights, u, side='right'))
        return self.moves[min(idx, len(self.moves) - 1)]

    def step(self, rng: np.random.Generator, iteration: int = 0) -> bool:
        """
        Perform one Metropolis-Hastings update.

        A NumericalError raised while proposing or evaluating, a non-finite log
        Hastings ratio or a non-finite posterior is an automatic reject.
        DimensionError propagates.

        Parameters
        ----------
        rng : np.random.Generator
        iteration : int, optional
            Current iteration, used to schedule tuning.

        Returns
        -------
        bool
            True if the proposal was accepted.
        """
        graph = self.graph
        move = self.select(rng)
        current = graph.get_log_posterior()
        self.counters['proposed'] += 1

        accepted = failed = False
        try:
            log_hastings = move.propose(graph, rng)
            if np.isfinite(log_hastings):
                proposed = graph.get_log_posterior()
                if np.isfinite(proposed):
                    log_alpha = proposed - current + log_hastings
                    accepted = bool(log_alpha >= 0 or np.log(rng.random()) < log_alpha)
        except NumericalError as e:
            logger.debug('Automatic reject of %r: %s', move, e)
            failed = True
            self.counters['failed_numerical'] += 1

        if accepted:
            graph.keep_all()
            self.counters['accepted'] += 1
        else:
            graph.restore_all()
            move.undo()
            self.counters['rejected'] += 1
            if not failed:
                self.counters['failed_prob'] += 1
        move.record(accepted)

        if self.debug:
            assert graph.n_touched() == 0
            for target in move.targets:
                value = target.get_value()
                if hasattr(value, 'validate'):
                    value.validate()

        if self._tuning_due(iteration):
            self.tune()
        return accepted

    def _tuning_due(self, iteration: int) -> bool:
        if not self.tune_interval or iteration <= 0 or iteration % self.tune_interval != 0:
            return False
        return self.tune_until is None or iteration <= self.tune_until

    def tune(self):
        """Tune every move from its windowed acceptance rate and reset the windows."""
        for move in self.moves:
            if move.window_proposed > 0:
                move.tune(move.window_acceptance_rate())
            move.reset_window()

    def summary(self) -> pd.DataFrame:
        """
        Per-move statistics.

        Returns
        -------
        pd.DataFrame
            Columns: move, target, weight, tries, accepted, acceptance_rate, tuning_parameter.
        """
        rows = [{'move': type(m).__name__,
                 'target': ','.join(t.name for t in m.targets),
                 'weight': m.weight,
                 'tries': m.n_proposed,
                 'accepted': m.n_accepted,
                 'acceptance_rate': m.acceptance_rate(),
                 'tuning_parameter': m.scale if m.scale is not None else np.nan}
                for m in self.moves]
        return pd.DataFrame(rows, columns=['move', 'target', 'weight', 'tries', 'accepted', 'acceptance_rate', 'tuning_parameter'])
