"""Birth-death-shift likelihood for bayesbds.

This module computes the probability density of a reconstructed phylogeny
under a birth-death process whose rates change at the shift events carried
by an AugmentedTree. Rates are constant between events, so the extinction
probability E and the lineage density D are propagated in closed form
through each segment (tips to root), combined at internal vertices and
conditioned on the survival of the crown lineages at the root. Where a
shift sits below a vertex its children reach it with different extinction
probabilities; these are combined by a symmetric rule (arithmetic or
geometric mean), so the result does not depend on the order of the
children.

Every evaluation prunes all branches again; only the rate multipliers
are cached, on the tree itself.

It also provides the functions used as deterministic nodes of a
birth-death-shift model (branch rates and event counts).
"""

import numpy as np
from .tree import AugmentedTree
from .exceptions import NumericalError

EXTINCTION_RULES = ('mean', 'geometric')


def propagate_segment(E0: float, log_D0: float, speciation: float, extinction: float, t: float) -> tuple[float, float]:
    """
    Integrate E and log(D) backwards in time over a constant-rate segment.

    Solves dE/dt = mu - (lambda + mu) E + lambda E^2 and
    dD/dt = -(lambda + mu) D + 2 lambda E D analytically.

    Parameters
    ----------
    E0 : float
        Extinction probability at the tipward end.
    log_D0 : float
        Log lineage density at the tipward end.
    speciation, extinction : float
        Rates in force on the segment.
    t : float
        Segment duration.

    Returns
    -------
    tuple
        (E, log D) at the rootward end.
    """
    if t == 0:
        return E0, log_D0
    lam, mu = speciation, extinction
    r = lam - mu
    if abs(r) < 1e-10*max(lam, 1e-300):
        denom = 1 + lam*t*(1 - E0)
        E = 1 - (1 - E0)/denom
        return E, log_D0 - 2*np.log(denom)
    x = np.exp(-r*t)
    denom = lam*(1 - E0) - (mu - lam*E0)*x
    E = 1 - r*(1 - E0)/denom
    log_D = log_D0 + 2*np.log(abs(r)) - r*t - 2*np.log(abs(denom))
    return E, log_D


def bds_log_likelihood(tree: AugmentedTree, speciation: float, extinction: float, rho: float = 1.0, condition: str = 'survival',
                       combine_extinction: str = 'mean') -> float:
    """
    Log-likelihood of a reconstructed tree under the birth-death-shift process.

    Parameters
    ----------
    tree : AugmentedTree
        Tree carrying the shift events (its branch lengths are the data).
    speciation, extinction : float
        Root-level rates; events multiply them towards the tips.
    rho : float, optional
        Sampling fraction of extant species (default 1).
    condition : str, optional
        'survival' conditions on both crown lineages surviving, 'time' applies no
        conditioning (default 'survival').
    combine_extinction : str, optional
        How the extinction probabilities of the children are merged at an
        internal vertex: 'mean' (arithmetic, default) or 'geometric'. Both
        are symmetric in the children; they agree when no shift separates them.

    Returns
    -------
    float
        The log-likelihood, -inf outside the parameter space.
    """
    if combine_extinction not in EXTINCTION_RULES:
        raise ValueError(f'Unknown extinction rule {combine_extinction!r}, use one of {EXTINCTION_RULES}')
    if speciation <= 0 or extinction < 0 or not 0 < rho <= 1:
        return -np.inf
    E_end: dict[int, float] = {}
    logD_end: dict[int, float] = {}
    for bid in tree.postorder():
        branch = tree.get_branch(bid)
        kids = tree.is_branch(bid)
        if not kids:
            E, log_D = 1 - rho, np.log(rho)
        else:
            # rates in force at the vertex: the tipward end of this branch
            lam_mult, _ = tree.end_multipliers(bid)
            child_E = [E_end[k] for k in kids]
            if combine_extinction == 'mean':
                E = float(np.mean(child_E))
            else:
                E = float(np.exp(np.mean(np.log(child_E)))) if min(child_E) > 0 else 0.0
            log_D = np.log(speciation*lam_mult)*(len(kids) - 1)
            for k in kids:
                log_D += logD_end[k]
        for dur, lam, mu in reversed(tree.segments(bid, speciation, extinction)):
            E, log_D = propagate_segment(E, log_D, lam, mu, dur)
        E_end[bid], logD_end[bid] = E, log_D

    root = tree.root
    res = logD_end[root]
    if condition == 'survival':
        E_root = E_end[root]
        if E_root >= 1:
            return -np.inf
        n_crown = len(tree.is_branch(root))
        if tree.get_root().length == 0 and n_crown > 1:
            # crown age: condition on every crown lineage surviving
            lam_mult, _ = tree.end_multipliers(root)
            res -= (n_crown - 1)*np.log(speciation*lam_mult) + n_crown*np.log1p(-E_root)
        else:
            res -= np.log1p(-E_root)
    elif condition != 'time':
        raise ValueError(f'Unknown conditioning {condition!r}')
    if np.isnan(res):
        raise NumericalError('Birth-death-shift likelihood is NaN')
    return float(res)


def branch_rates(history: AugmentedTree, speciation: float, extinction: float) -> np.ndarray:
    """
    Time-averaged (speciation, extinction) rate of each branch in preorder.

    Returns
    -------
    np.ndarray
        Array of shape (n_branches, 2).
    """
    lam, mu = history.branch_average_rates(speciation, extinction)
    return np.column_stack([lam, mu])


def branch_speciation_rates(history: AugmentedTree, speciation: float, extinction: float) -> np.ndarray:
    return history.branch_average_rates(speciation, extinction)[0]


def branch_extinction_rates(history: AugmentedTree, speciation: float, extinction: float) -> np.ndarray:
    return history.branch_average_rates(speciation, extinction)[1]


def total_num_events(history: AugmentedTree) -> int:
    return history.total_num_events()


def net_diversification(speciation: float, extinction: float) -> float:
    return speciation - extinction


def relative_extinction(speciation: float, extinction: float) -> float:
    return extinction / speciation
