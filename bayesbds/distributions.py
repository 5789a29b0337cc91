"""Distributions for bayesbds.

Every distribution implements the same capability: draw a value given the
current values of its parameter nodes, evaluate the log-density of a value
and, for distributions over latent structure, redraw that structure.
Parameters may be given as nodes or plain values (wrapped into constants).

Distributions are resolved by name once, when the model is assembled
(see make_distribution).
"""

import numpy as np
from typing import Any, Callable
from .node import DAGNode, ConstantNode
from .tree import AugmentedTree, ShiftEvent, sim_bd_tree
from .bds import bds_log_likelihood, EXTINCTION_RULES
from .exceptions import AbstractMethodError, ConfigurationError
from .utils import norm_logpdf, lognorm_logpdf, expon_logpdf, gamma_logpdf, beta_logpdf, dirichlet_logpdf, poisson_logpmf


class Distribution():
    """
    Base class for distributions.

    Attributes
    ----------
    parameters : dict[str, DAGNode]
        Parameter name -> node.
    has_latent : bool
        True if the distribution can resimulate a latent structure of its values.
    """
    name = ''
    has_latent = False

    def __init__(self, **parameters):
        self.parameters: dict[str, DAGNode] = {
            k: v if isinstance(v, DAGNode) else ConstantNode(None, v) for k, v in parameters.items()}

    def param(self, key: str) -> Any:
        return self.parameters[key].get_value()

    def sample(self, rng: np.random.Generator) -> Any:
        """
        Draw a value given the current parameter values.

        Raises
        ------
        AbstractMethodError
            Always raised; to be implemented in a subclass.
        """
        raise AbstractMethodError()

    def log_density(self, value: Any) -> float:
        """
        Log-density of value given the current parameter values, -inf outside the support.

        Raises
        ------
        AbstractMethodError
            Always raised; to be implemented in a subclass.
        """
        raise AbstractMethodError()

    def redraw_latent(self, value: Any, rng: np.random.Generator) -> Any:
        raise AbstractMethodError(f'{type(self).__name__} has no latent structure')

    def support_contains(self, value: Any) -> bool:
        return bool(np.isfinite(self.log_density(value)))

    def __repr__(self):
        args = ', '.join(f'{k}={v.name}' for k, v in self.parameters.items())
        return f'{type(self).__name__}({args})'


class Uniform(Distribution):
    name = 'uniform'

    def __init__(self, lower, upper):
        super().__init__(lower=lower, upper=upper)

    def sample(self, rng):
        return rng.uniform(self.param('lower'), self.param('upper'))

    def log_density(self, value):
        lo, hi = self.param('lower'), self.param('upper')
        if not lo <= value <= hi:
            return -np.inf
        return -np.log(hi - lo)


class Exponential(Distribution):
    name = 'exponential'

    def __init__(self, rate):
        super().__init__(rate=rate)

    def sample(self, rng):
        return rng.exponential(1/self.param('rate'))

    def log_density(self, value):
        return expon_logpdf(value, self.param('rate'))


class Normal(Distribution):
    name = 'normal'

    def __init__(self, mean, sd):
        super().__init__(mean=mean, sd=sd)

    def sample(self, rng):
        return rng.normal(self.param('mean'), self.param('sd'))

    def log_density(self, value):
        return norm_logpdf(value, self.param('mean'), self.param('sd'))


class LogNormal(Distribution):
    """Log-normal distribution parameterized by the mean and sd of log(x)."""
    name = 'lognormal'

    def __init__(self, mean_log, sd_log):
        super().__init__(mean_log=mean_log, sd_log=sd_log)

    def sample(self, rng):
        return float(np.exp(rng.normal(self.param('mean_log'), self.param('sd_log'))))

    def log_density(self, value):
        return lognorm_logpdf(value, self.param('mean_log'), self.param('sd_log'))


class Gamma(Distribution):
    """Gamma distribution with shape and rate."""
    name = 'gamma'

    def __init__(self, shape, rate):
        super().__init__(shape=shape, rate=rate)

    def sample(self, rng):
        return rng.gamma(self.param('shape'), 1/self.param('rate'))

    def log_density(self, value):
        return gamma_logpdf(value, self.param('shape'), self.param('rate'))


class Beta(Distribution):
    name = 'beta'

    def __init__(self, a, b):
        super().__init__(a=a, b=b)

    def sample(self, rng):
        return rng.beta(self.param('a'), self.param('b'))

    def log_density(self, value):
        return beta_logpdf(value, self.param('a'), self.param('b'))


class Dirichlet(Distribution):
    name = 'dirichlet'

    def __init__(self, alpha):
        super().__init__(alpha=alpha)

    def sample(self, rng):
        return rng.dirichlet(np.asarray(self.param('alpha'), dtype=float))

    def log_density(self, value):
        value = np.asarray(value, dtype=float)
        alpha = np.asarray(self.param('alpha'), dtype=float)
        if value.shape != alpha.shape or np.any(value <= 0) or not np.isclose(value.sum(), 1):
            return -np.inf
        return dirichlet_logpdf(value, alpha)


class ShiftEventPrior(Distribution):
    """
    Poisson process of rate-shift events on a fixed topology.

    Events fall uniformly on the branches at rate shift_rate per unit of branch
    length; each event carries speciation and extinction multipliers whose logs
    are Normal(0, multiplier_sd). The density of a history with k events is

        shift_rate^k exp(-shift_rate L) prod_i g(m_lambda_i) g(m_mu_i)

    where L is the total tree length and g the log-normal density.

    Parameters
    ----------
    tree : AugmentedTree or node
        The topology and branch lengths events live on.
    shift_rate : float or node
        Expected number of events per unit branch length.
    multiplier_sd : float or node
        Standard deviation of the log multipliers.
    extinction_shifts : bool, optional
        If False, extinction multipliers are fixed to 1 (default True).
    """
    name = 'shift_events'
    has_latent = True

    def __init__(self, tree, shift_rate, multiplier_sd, extinction_shifts: bool = True):
        super().__init__(tree=tree, shift_rate=shift_rate, multiplier_sd=multiplier_sd)
        self.extinction_shifts = extinction_shifts

    def multiplier_log_density(self, event: ShiftEvent) -> float:
        sd = self.param('multiplier_sd')
        res = lognorm_logpdf(event.speciation_multiplier, 0.0, sd)
        if self.extinction_shifts:
            res += lognorm_logpdf(event.extinction_multiplier, 0.0, sd)
        elif event.extinction_multiplier != 1.0:
            return -np.inf
        return res

    def sample_multipliers(self, rng: np.random.Generator) -> tuple[float, float]:
        sd = self.param('multiplier_sd')
        m_lam = float(np.exp(rng.normal(0.0, sd)))
        m_mu = float(np.exp(rng.normal(0.0, sd))) if self.extinction_shifts else 1.0
        return m_lam, m_mu

    def sample(self, rng):
        history = self.param('tree').copy()
        history.clear_events()
        history.commit()
        return self.redraw_latent(history, rng)

    def redraw_latent(self, value: AugmentedTree, rng):
        value.clear_events()
        length = value.total_length()
        k = rng.poisson(self.param('shift_rate')*length)
        for x in rng.uniform(0, length, size=k):
            bid, offset = value.position_to_branch(x)
            if offset == 0:
                continue
            m_lam, m_mu = self.sample_multipliers(rng)
            value.add_event(bid, ShiftEvent(offset, m_lam, m_mu))
        value.commit()
        return value

    def log_density(self, value: AugmentedTree):
        rate = self.param('shift_rate')
        if rate < 0:
            return -np.inf
        k = value.total_num_events()
        if k > 0 and rate == 0:
            return -np.inf
        res = -rate*value.total_length()
        if k > 0:
            res += k*np.log(rate)
        for _, _, ev in value.all_events():
            res += self.multiplier_log_density(ev)
        return res


class BirthDeathShiftProcess(Distribution):
    """
    Density of a reconstructed phylogeny given the shift history.

    The clamped value is the observed tree; branch lengths and rate segments
    are read from the history node, which has the same topology.

    Parameters
    ----------
    history : node
        Node whose value is the AugmentedTree carrying the events.
    speciation, extinction : float or node
        Root-level rates.
    rho : float or node, optional
        Sampling fraction (default 1).
    condition : str, optional
        'survival' or 'time' (default 'survival').
    combine_extinction : str, optional
        Rule merging the extinction probabilities of sister lineages, 'mean'
        or 'geometric' (default 'mean').
    """
    name = 'bds'

    def __init__(self, history, speciation, extinction, rho=1.0, condition: str = 'survival',
                 combine_extinction: str = 'mean'):
        super().__init__(history=history, speciation=speciation, extinction=extinction, rho=rho)
        if combine_extinction not in EXTINCTION_RULES:
            raise ConfigurationError(f'Unknown extinction rule {combine_extinction!r}, use one of {EXTINCTION_RULES}')
        self.condition = condition
        self.combine_extinction = combine_extinction

    def sample(self, rng):
        # constant-rate draw at the root rates
        history = self.param('history')
        return sim_bd_tree(history.n_tips(), self.param('speciation'), self.param('extinction'), rng)

    def log_density(self, value: AugmentedTree):
        history = self.param('history')
        if value is not history and value.size() != history.size():
            raise ConfigurationError('Observed tree and shift history have different topologies')
        return bds_log_likelihood(history, self.param('speciation'), self.param('extinction'), self.param('rho'), self.condition,
                                  self.combine_extinction)


class ConstantRateBirthDeath(Distribution):
    """Constant-rate birth-death density of a reconstructed tree (no shifts)."""
    name = 'birth_death'

    def __init__(self, speciation, extinction, n_tips, rho=1.0, condition: str = 'survival',
                 combine_extinction: str = 'mean'):
        super().__init__(speciation=speciation, extinction=extinction, n_tips=n_tips, rho=rho)
        self.condition = condition
        self.combine_extinction = combine_extinction

    def sample(self, rng):
        return sim_bd_tree(int(self.param('n_tips')), self.param('speciation'), self.param('extinction'), rng)

    def log_density(self, value: AugmentedTree):
        if value.total_num_events() != 0:
            return -np.inf
        return bds_log_likelihood(value, self.param('speciation'), self.param('extinction'), self.param('rho'), self.condition,
                                  self.combine_extinction)


class PoissonCount(Distribution):
    name = 'poisson'

    def __init__(self, mean):
        super().__init__(mean=mean)

    def sample(self, rng):
        return int(rng.poisson(self.param('mean')))

    def log_density(self, value):
        if int(value) != value:
            return -np.inf
        return poisson_logpmf(int(value), self.param('mean'))


class FunctionDistribution(Distribution):
    """
    Opaque plug-in distribution built from callables.

    This is how externally implemented likelihood kernels (substitution models,
    cladogenetic range models) enter a model graph.

    Parameters
    ----------
    log_density_fn : Callable
        log_density_fn(value, **parameter_values) -> float.
    sample_fn : Callable or None, optional
        sample_fn(rng, **parameter_values) -> value.
    **parameters
        Parameter nodes or values.
    """
    name = 'function'

    def __init__(self, log_density_fn: Callable[..., float], sample_fn: Callable[..., Any] | None = None, **parameters):
        super().__init__(**parameters)
        self.log_density_fn = log_density_fn
        self.sample_fn = sample_fn

    def _values(self) -> dict[str, Any]:
        return {k: v.get_value() for k, v in self.parameters.items()}

    def sample(self, rng):
        if self.sample_fn is None:
            raise AbstractMethodError('This distribution cannot be sampled')
        return self.sample_fn(rng, **self._values())

    def log_density(self, value):
        return self.log_density_fn(value, **self._values())


DISTRIBUTIONS: dict[str, type[Distribution]] = {
    cls.name: cls for cls in (Uniform, Exponential, Normal, LogNormal, Gamma, Beta, Dirichlet,
                              ShiftEventPrior, BirthDeathShiftProcess, ConstantRateBirthDeath,
                              PoissonCount, FunctionDistribution)
}


def make_distribution(name: str, *args, **kwargs) -> Distribution:
    """
    Instantiate a distribution from its registered name.

    Parameters
    ----------
    name : str
        One of the keys of DISTRIBUTIONS, e.g. 'lognormal' or 'shift_events'. A
        'dn' prefix and upper case letters are accepted ('dnLognormal').

    Returns
    -------
    Distribution

    Raises
    ------
    ConfigurationError
        If the name is unknown.
    """
    try:
        key = name[2:] if name.startswith('dn') else name
        cls = DISTRIBUTIONS[key.lower()]
    except KeyError:
        raise ConfigurationError(f'Unknown distribution {name!r}, available: {sorted(DISTRIBUTIONS)}') from None
    return cls(*args, **kwargs)
