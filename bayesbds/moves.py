"""Metropolis-Hastings moves for bayesbds.

A move changes the value of one or more free stochastic nodes through the
model graph and returns the log Hastings ratio of the proposal. Moves on
continuous parameters (scale, slide, simplex) carry a tuning parameter that
the scheduler adapts towards a target acceptance rate. Event moves edit the
shift history in place (the tree journals every edit, so a rejected move is
rolled back by the graph). EventBirthMove and EventDeathMove change the
number of events and must be registered as a complementary pair.
"""

import logging
import numpy as np
from .node import StochasticNode
from .graph import ModelGraph
from .tree import AugmentedTree, ShiftEvent
from .distributions import ShiftEventPrior
from .exceptions import ConfigurationError, DimensionError, AbstractMethodError
from .utils import my_choice

logger = logging.getLogger(__name__)


def _reflect(x: float, lower: float, upper: float) -> float:
    # mirror x back into [lower, upper]
    while x < lower or x > upper:
        if x < lower:
            x = 2*lower - x
        if x > upper:
            x = 2*upper - x
    return x


class Move():
    """
    Base class for moves.

    Parameters
    ----------
    targets : StochasticNode or list of StochasticNode
        Free stochastic nodes changed by the move.
    weight : float, optional
        Relative frequency of the move, must be positive (default 1).
    tune : bool, optional
        If True the tuning parameter is adapted during tuning periods (default True).
    target_acceptance : float, optional
        Acceptance rate aimed at when tuning (default 0.44).

    Attributes
    ----------
    scale : float or None
        Tuning parameter; None for moves without one.
    n_proposed, n_accepted : int
        Lifetime counters.
    window_proposed, window_accepted : int
        Counters since the last tuning update.
    """
    name = ''
    structural = False
    min_scale = 1e-8
    max_scale = 1e8

    def __init__(self, targets, weight: float = 1.0, tune: bool = True, target_acceptance: float = 0.44):
        if isinstance(targets, StochasticNode):
            targets = [targets]
        self.targets: list[StochasticNode] = list(targets)
        if not self.targets:
            raise ConfigurationError(f'{type(self).__name__} needs at least one target')
        for t in self.targets:
            if not isinstance(t, StochasticNode):
                raise ConfigurationError(f'Move target {t!r} is not a stochastic node')
            if t.clamped:
                raise ConfigurationError(f'Move target {t.name} is clamped')
        if not weight > 0:
            raise ConfigurationError(f'Move weight must be positive, got {weight}')
        if not 0 < target_acceptance < 1:
            raise ConfigurationError(f'target_acceptance must be in (0, 1), got {target_acceptance}')
        self.weight = float(weight)
        self.auto_tune = tune
        self.target_acceptance = target_acceptance
        self.scale: float | None = None
        self.n_proposed = 0
        self.n_accepted = 0
        self.window_proposed = 0
        self.window_accepted = 0

    @property
    def target(self) -> StochasticNode:
        return self.targets[0]

    def propose(self, graph: ModelGraph, rng: np.random.Generator) -> float:
        """
        Change the targets through the graph (set_value, or touch before an in-place edit).

        Returns
        -------
        float
            Log Hastings ratio (including the log Jacobian), -inf if the
            proposal is to be rejected outright.

        Raises
        ------
        AbstractMethodError
            Always raised; to be implemented in a subclass.
        """
        raise AbstractMethodError()

    def undo(self):
        """Revert private state changed by propose; graph state is restored by the graph."""
        pass

    def record(self, accepted: bool):
        self.n_proposed += 1
        self.window_proposed += 1
        if accepted:
            self.n_accepted += 1
            self.window_accepted += 1

    def acceptance_rate(self) -> float:
        return self.n_accepted/self.n_proposed if self.n_proposed else np.nan

    def window_acceptance_rate(self) -> float:
        return self.window_accepted/self.window_proposed if self.window_proposed else np.nan

    def reset_window(self):
        self.window_proposed = 0
        self.window_accepted = 0

    def tune(self, rate: float):
        """
        Adapt the tuning parameter from an observed acceptance rate.

        Above the target the proposal is widened by a factor 1 + (rate - target)/(1 - target),
        below it is narrowed by dividing by 2 - rate/target.
        """
        if self.scale is None or not self.auto_tune or np.isnan(rate):
            return
        target = self.target_acceptance
        if rate > target:
            self.scale *= 1 + (rate - target)/(1 - target)
        else:
            self.scale /= 2 - rate/target
        self.scale = min(max(self.scale, self.min_scale), self.max_scale)
        logger.debug('Tuned %r: acceptance %.3f, scale %.4g', self, rate, self.scale)

    def __repr__(self):
        return f'{type(self).__name__}({", ".join(t.name for t in self.targets)})'


class ScaleMove(Move):
    """
    Multiply the target values by m = exp(lambda (u - 0.5)), u ~ U(0, 1).

    With several targets all of them are scaled by the same factor. The log
    Hastings ratio is n log(m), n being the number of scaled scalars.
    """
    name = 'scale'

    def __init__(self, targets, weight: float = 1.0, lambda_: float = 1.0, tune: bool = True, target_acceptance: float = 0.44):
        super().__init__(targets, weight, tune, target_acceptance)
        if not lambda_ > 0:
            raise ConfigurationError(f'lambda_ must be positive, got {lambda_}')
        self.scale = float(lambda_)

    def propose(self, graph, rng):
        log_m = self.scale*(rng.random() - 0.5)
        m = np.exp(log_m)
        n = 0
        for node in self.targets:
            old = node.get_value()
            graph.set_value(node, old*m)
            n += np.size(old)
        return n*log_m


class SlideMove(Move):
    """
    Add a uniform shift of width delta, reflected into [lower, upper].

    The proposal is symmetric.
    """
    name = 'slide'

    def __init__(self, target, weight: float = 1.0, delta: float = 1.0, lower: float = -np.inf, upper: float = np.inf,
                 tune: bool = True, target_acceptance: float = 0.44):
        super().__init__(target, weight, tune, target_acceptance)
        if len(self.targets) != 1:
            raise ConfigurationError('SlideMove takes a single target')
        if not delta > 0:
            raise ConfigurationError(f'delta must be positive, got {delta}')
        if not lower < upper:
            raise ConfigurationError(f'Empty slide interval [{lower}, {upper}]')
        self.scale = float(delta)
        self.lower = lower
        self.upper = upper

    def propose(self, graph, rng):
        old = self.target.get_value()
        if np.ndim(old) == 0:
            new = _reflect(old + self.scale*(rng.random() - 0.5), self.lower, self.upper)
        else:
            new = np.array(old, dtype=float)
            k = int(rng.integers(new.size))
            new.flat[k] = _reflect(new.flat[k] + self.scale*(rng.random() - 0.5), self.lower, self.upper)
        graph.set_value(self.target, new)
        return 0.0


class SimplexElementScaleMove(Move):
    """
    Scale one element of a simplex and renormalize.

    For a K-element simplex x, element i is multiplied by m = exp(lambda (u - 0.5))
    and the vector divided by S = 1 + (m - 1) x_i. The log Hastings ratio is
    log(m) - K log(S).
    """
    name = 'simplex_element_scale'

    def __init__(self, target, weight: float = 1.0, lambda_: float = 1.0, tune: bool = True, target_acceptance: float = 0.44):
        super().__init__(target, weight, tune, target_acceptance)
        if len(self.targets) != 1:
            raise ConfigurationError('SimplexElementScaleMove takes a single target')
        self.scale = float(lambda_)

    def propose(self, graph, rng):
        x = np.asarray(self.target.get_value(), dtype=float)
        k = x.size
        i = int(rng.integers(k))
        log_m = self.scale*(rng.random() - 0.5)
        m = np.exp(log_m)
        new = x.copy()
        new[i] *= m
        s = new.sum()
        graph.set_value(self.target, new/s)
        return log_m - k*np.log(s)


class _EventMove(Move):
    # moves acting on the events of a shift history node
    def __init__(self, target, weight: float = 1.0, tune: bool = True, target_acceptance: float = 0.44):
        super().__init__(target, weight, tune, target_acceptance)
        if len(self.targets) != 1:
            raise ConfigurationError(f'{type(self).__name__} takes a single history node')
        if not isinstance(self.target.distribution, ShiftEventPrior):
            raise ConfigurationError(f'{type(self).__name__} needs a node distributed as ShiftEventPrior, got {self.target.distribution!r}')

    @property
    def prior(self) -> ShiftEventPrior:
        return self.target.distribution

    def history(self) -> AugmentedTree:
        return self.target.get_value()

    def pick_event(self, rng: np.random.Generator) -> tuple[int, int, ShiftEvent] | None:
        events = self.history().all_events()
        if not events:
            return None
        return my_choice(rng, events)


class EventTimeSlideMove(_EventMove):
    """
    Slide an event along its branch by a uniform shift of width delta, reflected
    at the branch ends. Symmetric; rejected outright when there are no events.
    """
    name = 'event_slide'

    def __init__(self, target, weight: float = 1.0, delta: float = 0.1, tune: bool = True, target_acceptance: float = 0.44):
        super().__init__(target, weight, tune, target_acceptance)
        self.scale = float(delta)

    def propose(self, graph, rng):
        picked = self.pick_event(rng)
        if picked is None:
            return -np.inf
        bid, index, event = picked
        tree = self.history()
        length = tree.get_branch(bid).length
        new_offset = _reflect(event.offset + self.scale*(rng.random() - 0.5), 0.0, length)
        if not 0 < new_offset < length:
            return -np.inf
        graph.touch(self.target)
        tree.update_event(bid, index, offset=new_offset)
        return 0.0


class EventRelocateMove(_EventMove):
    """Move an event to a uniform position on the whole tree (symmetric)."""
    name = 'event_relocate'

    def __init__(self, target, weight: float = 1.0):
        super().__init__(target, weight, tune=False)

    def propose(self, graph, rng):
        picked = self.pick_event(rng)
        if picked is None:
            return -np.inf
        bid, index, _ = picked
        tree = self.history()
        new_bid, new_offset = tree.position_to_branch(rng.uniform(0, tree.total_length()))
        if new_offset == 0:
            return -np.inf
        graph.touch(self.target)
        tree.relocate_event(bid, index, new_bid, new_offset)
        return 0.0


class EventRateScaleMove(_EventMove):
    """
    Scale the speciation or extinction multiplier of one event.

    Parameters
    ----------
    which : str, optional
        'speciation', 'extinction' or 'both' (default 'speciation'). With
        'both', one of the two multipliers is picked at random.
    """
    name = 'event_rate_scale'

    def __init__(self, target, weight: float = 1.0, lambda_: float = 1.0, which: str = 'speciation',
                 tune: bool = True, target_acceptance: float = 0.44):
        super().__init__(target, weight, tune, target_acceptance)
        if which not in ('speciation', 'extinction', 'both'):
            raise ConfigurationError(f"which must be 'speciation', 'extinction' or 'both', got {which!r}")
        self.which = which
        self.scale = float(lambda_)

    def propose(self, graph, rng):
        picked = self.pick_event(rng)
        if picked is None:
            return -np.inf
        bid, index, event = picked
        which = self.which
        if which == 'both':
            which = 'speciation' if rng.random() < 0.5 else 'extinction'
        field = f'{which}_multiplier'
        log_m = self.scale*(rng.random() - 0.5)
        graph.touch(self.target)
        self.history().update_event(bid, index, **{field: getattr(event, field)*np.exp(log_m)})
        return log_m


class EventBirthMove(_EventMove):
    """
    Reversible-jump move adding one shift event.

    The position is uniform on the total tree length L and the multipliers are
    drawn from the multiplier distribution g of the shift prior, so the
    Jacobian is 1. With k events before the move, the log Hastings ratio is

        log(1/(k+1)) - log(1/L) - log g(m) + log(w_death/w_birth)

    Parameters
    ----------
    target : StochasticNode
        The shift history node.
    weight : float, optional
        Move weight.
    partner : EventDeathMove or None
        The complementary death move; set by EventBirthDeathPair.
    """
    name = 'event_birth'
    structural = True

    def __init__(self, target, weight: float = 1.0, partner: 'EventDeathMove | None' = None):
        super().__init__(target, weight, tune=False)
        self.partner = partner
        if partner is not None:
            partner.partner = self

    def propose(self, graph, rng):
        tree = self.history()
        k = tree.total_num_events()
        length = tree.total_length()
        bid, offset = tree.position_to_branch(rng.uniform(0, length))
        if offset == 0:
            return -np.inf
        m_lam, m_mu = self.prior.sample_multipliers(rng)
        event = ShiftEvent(offset, m_lam, m_mu)
        graph.touch(self.target)
        tree.add_event(bid, event)
        if tree.total_num_events() != k + 1:
            raise DimensionError(f'Birth move left {tree.total_num_events()} events, expected {k + 1}')
        log_ratio = -np.log(k + 1) + np.log(length) - self.prior.multiplier_log_density(event)
        if self.partner is not None:
            log_ratio += np.log(self.partner.weight/self.weight)
        return log_ratio


class EventDeathMove(_EventMove):
    """
    Reversible-jump move removing one uniformly chosen shift event.

    The reverse of EventBirthMove: with k events before the move the log
    Hastings ratio is log(1/L) + log g(m) - log(1/k) + log(w_birth/w_death).
    Rejected outright when there are no events.
    """
    name = 'event_death'
    structural = True

    def __init__(self, target, weight: float = 1.0, partner: EventBirthMove | None = None):
        super().__init__(target, weight, tune=False)
        self.partner = partner
        if partner is not None:
            partner.partner = self

    def propose(self, graph, rng):
        picked = self.pick_event(rng)
        if picked is None:
            return -np.inf
        bid, index, event = picked
        tree = self.history()
        k = tree.total_num_events()
        graph.touch(self.target)
        tree.remove_event(bid, index)
        if tree.total_num_events() != k - 1:
            raise DimensionError(f'Death move left {tree.total_num_events()} events, expected {k - 1}')
        log_ratio = np.log(k) - np.log(tree.total_length()) + self.prior.multiplier_log_density(event)
        if self.partner is not None:
            log_ratio += np.log(self.partner.weight/self.weight)
        return log_ratio


class EventBirthDeathPair():
    """
    A birth move and its complementary death move on the same history node.

    Iterating over the pair yields the two moves, so it can be passed wherever
    a list of moves is expected.

    Parameters
    ----------
    target : StochasticNode
        The shift history node.
    weight : float, optional
        Weight of each of the two moves (default 1).
    death_weight : float or None, optional
        Weight of the death move if different from weight.
    """
    def __init__(self, target, weight: float = 1.0, death_weight: float | None = None):
        self.birth = EventBirthMove(target, weight)
        self.death = EventDeathMove(target, weight if death_weight is None else death_weight, partner=self.birth)

    def __iter__(self):
        return iter((self.birth, self.death))

    def __repr__(self):
        return f'EventBirthDeathPair({self.birth.target.name})'


def event_moves(target, weight: float = 1.0, extinction_shifts: bool = True) -> list[Move]:
    """
    The standard set of moves on a shift history: birth/death, slide, relocate
    and multiplier scaling.
    """
    moves: list[Move] = list(EventBirthDeathPair(target, weight))
    moves.append(EventTimeSlideMove(target, weight))
    moves.append(EventRelocateMove(target, weight/2))
    moves.append(EventRateScaleMove(target, weight, which='both' if extinction_shifts else 'speciation'))
    return moves
