"""Utility functions for bayesbds.

This module provides helper functions for computing log-probability
densities, a generic choice function and plotting helpers for traces
produced by the monitors.
"""

from typing import Sequence, TypeVar
import numpy as np
from scipy.special import gammaln
import matplotlib.pyplot as plt
import pandas as pd

elem = TypeVar("elem")


def my_choice(rng: np.random.Generator, a: Sequence[elem], replace: bool = False, p: Sequence[float]|None = None) -> elem:
    """
    Sample a random element from a generic sequence using the provided random generator.

    Parameters
    ----------
    rng : np.random.Generator
        The random number generator.
    a : Sequence[elem]
        The sequence to sample from.
    replace : bool, optional
        Whether the sampling is done with replacement (default is False).
    p : Sequence[float] or None, optional
        The probability weights associated with each element (default is None).

    Returns
    -------
    elem
        A randomly selected element from the sequence.
    """
    sampled_idx = rng.choice(len(a), replace=replace, p=p)
    return a[sampled_idx]

def norm_logpdf(x, a, scale):
    """
    Compute the log probability density function of a normal distribution.

    Parameters
    ----------
    x : float
        The point at which to evaluate the log-pdf.
    a : float
        The mean of the distribution.
    scale : float
        The standard deviation of the distribution.

    Returns
    -------
    float
        The log probability density.
    """
    return -0.5*np.log(2*np.pi) - np.log(scale) - 0.5*((x-a)/scale)**2

def lognorm_logpdf(x, mean_log, sd_log):
    """
    Compute the log-pdf of a log-normal distribution parameterized on the log scale.

    Parameters
    ----------
    x : float
        Positive value.
    mean_log : float
        Mean of log(x).
    sd_log : float
        Standard deviation of log(x).

    Returns
    -------
    float
        The log probability density, -inf for non-positive x.
    """
    if x <= 0:
        return -np.inf
    return norm_logpdf(np.log(x), mean_log, sd_log) - np.log(x)

def expon_logpdf(x, rate):
    if x < 0:
        return -np.inf
    return np.log(rate) - rate*x

def gamma_logpdf(x, shape, rate):
    """
    Compute the log-pdf of a gamma distribution (shape/rate parameterization).

    Parameters
    ----------
    x : float
        The point at which to evaluate the log-pdf.
    shape : float
        The shape parameter.
    rate : float
        The rate parameter.

    Returns
    -------
    float
        The log probability density.
    """
    if x <= 0:
        return -np.inf
    return shape*np.log(rate) - gammaln(shape) + (shape-1)*np.log(x) - rate*x

def beta_logpdf(x, a, b):
    if x <= 0 or x >= 1:
        return -np.inf
    return gammaln(a+b) - gammaln(a) - gammaln(b) + (a-1)*np.log(x) + (b-1)*np.log1p(-x)

def dirichlet_logpdf(x, alpha):
    """
    Compute the log probability density function of a Dirichlet distribution.

    Parameters
    ----------
    x : array-like
        The point (vector) at which to evaluate the log-pdf.
    alpha : array-like
        The concentration parameters of the Dirichlet distribution.

    Returns
    -------
    float
        The log probability density.
    """
    return gammaln(np.sum(alpha)) - np.sum(gammaln(alpha)) + np.sum((alpha-1)*np.log(x))

def poisson_logpmf(k, mean):
    if k < 0:
        return -np.inf
    if mean == 0:
        return 0.0 if k == 0 else -np.inf
    return k*np.log(mean) - mean - gammaln(k+1)


##### Plotting utils #####


def plot_trace(trace: pd.DataFrame, columns: Sequence[str], burnin: int = 0, title: str = ''):
    """
    Plot the sampled values of the selected columns against the iteration.

    Parameters
    ----------
    trace : pd.DataFrame
        A trace with an 'Iteration' column, as produced by the monitors.
    columns : Sequence[str]
        Columns to plot, one panel each.
    burnin : int, optional
        Samples with Iteration < burnin are dropped (default 0).
    title : str, optional
        The title of the plot (default is '').

    Returns
    -------
    matplotlib.figure.Figure
    """
    data = trace[trace['Iteration'] >= burnin]
    fig, ax = plt.subplots(len(columns), 1, sharex=True, squeeze=False)
    for i, col in enumerate(columns):
        if 'Run' in data.columns:
            for run, run_data in data.groupby('Run'):
                ax[i, 0].plot(run_data['Iteration'], run_data[col], lw=0.8, label=f'run {run}')
        else:
            ax[i, 0].plot(data['Iteration'], data[col], lw=0.8)
        ax[i, 0].set_ylabel(col)
    ax[-1, 0].set_xlabel('Iteration')
    fig.suptitle(title)
    fig.tight_layout()
    return fig

def plot_event_counts(trace: pd.DataFrame, column: str = 'num_events', burnin: int = 0, title: str = ''):
    """
    Plot the posterior distribution of the number of rate-shift events.

    Parameters
    ----------
    trace : pd.DataFrame
        A trace containing the event count column.
    column : str, optional
        Name of the column holding the event counts (default 'num_events').
    burnin : int, optional
        Samples with Iteration < burnin are dropped (default 0).
    title : str, optional
        The title of the plot (default is '').

    Returns
    -------
    matplotlib.figure.Figure
    """
    data = trace.loc[trace['Iteration'] >= burnin, column].to_numpy()
    fig, ax = plt.subplots()
    ax.hist(data, bins=np.arange(data.min()-0.5, data.max()+1.5, 1), density=True)
    ax.set_xlabel('Number of shifts')
    ax.set_ylabel('Posterior probability')
    ax.set_title(title)
    return fig
