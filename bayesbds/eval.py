"""
Utility functions for the analysis of bayesbds runs.

This module contains helpers to summarize traces (posterior means and
quantiles), estimate the posterior distribution of the number of shift
events, compare it across runs and list the most frequently visited
event configurations. Comparing runs can be used to gauge convergence.

"""

from typing import Sequence
import numpy as np
import pandas as pd
from .tree import AugmentedTree


def trace_summary(trace: pd.DataFrame, burnin: int | float = 0, columns: Sequence[str] | None = None) -> pd.DataFrame:
    """
    Summary statistics of a trace.

    Parameters
    ----------
    trace : pd.DataFrame
        A trace as returned by TraceMonitor.to_frame or combine_traces.
    burnin : int or float, optional
        Samples to discard: an int is a number of rows (per run when a 'Run'
        column is present), a float in [0, 1) a fraction. Default 0.
    columns : sequence of str or None, optional
        Columns to summarize, default every column except Iteration and Run.

    Returns
    -------
    pd.DataFrame
        One row per column with mean, std, 2.5%, 50%, 97.5% quantiles and the sample size.
    """
    trace = discard_burnin(trace, burnin)
    if columns is None:
        columns = [c for c in trace.columns if c not in ('Iteration', 'Run')]
    data = trace[list(columns)].astype(float)
    q = data.quantile([0.025, 0.5, 0.975])
    return pd.DataFrame({'mean': data.mean(), 'std': data.std(),
                         '2.5%': q.loc[0.025], '50%': q.loc[0.5], '97.5%': q.loc[0.975],
                         'n': data.count()})


def discard_burnin(trace: pd.DataFrame, burnin: int | float = 0) -> pd.DataFrame:
    if isinstance(burnin, float):
        if not 0 <= burnin < 1:
            raise ValueError(f'A fractional burnin must be in [0, 1), got {burnin}')
    elif burnin < 0:
        raise ValueError(f'burnin must be non-negative, got {burnin}')

    if 'Run' not in trace.columns:
        n = int(burnin*len(trace)) if isinstance(burnin, float) else burnin
        return trace.iloc[n:]
    groups = trace.groupby('Run', sort=False)
    pos = groups.cumcount()
    if isinstance(burnin, float):
        n = np.floor(burnin*groups['Run'].transform('size'))
    else:
        n = burnin
    return trace[pos >= n]


def event_count_table(trace: pd.DataFrame, column: str = 'num_events', burnin: int | float = 0) -> pd.DataFrame:
    """
    Posterior distribution of the number of shift events.

    Parameters
    ----------
    trace : pd.DataFrame
        A trace containing the event count column.
    column : str, optional
        Name of the event count column (default 'num_events').
    burnin : int or float, optional
        See trace_summary.

    Returns
    -------
    pd.DataFrame
        Indexed by number of events, with columns 'count' and 'probability'.
    """
    counts = discard_burnin(trace, burnin)[column].astype(int).value_counts().sort_index()
    counts.index.name = 'num_events'
    return pd.DataFrame({'count': counts, 'probability': counts/counts.sum()})


def produce_event_table(res: dict, column: str = 'num_events', monitor: str | None = None, burnin: int | float = 0) -> pd.DataFrame:
    """
    Posterior probability of each number of events, per run and across runs.

    Parameters
    ----------
    res : dict
        The result of MCMC.run.
    column : str, optional
        Event count column (default 'num_events').
    monitor : str or None, optional
        Trace to use; default the first trace holding the column.
    burnin : int or float, optional
        See trace_summary.

    Returns
    -------
    pd.DataFrame
        Rows are numbers of events, columns C0, C1, ... (runs) then Mn and Std.
    """
    cols = []
    for run in res['runs']:
        traces = run['traces']
        label = monitor if monitor is not None else next((k for k, t in traces.items() if column in t.columns), None)
        if label is None:
            raise KeyError(f'No trace with a {column!r} column')
        cols.append(event_count_table(traces[label], column, burnin)['probability'])
    tbl = pd.concat(cols, axis=1).fillna(0.0)
    tbl.columns = [f'C{i}' for i in range(len(cols))]
    tbl = tbl.sort_index()
    tbl['Mn'] = np.round(tbl.mean(axis=1), 2)
    tbl['Std'] = np.round(tbl[[f'C{i}' for i in range(len(cols))]].std(axis=1, ddof=0), 2)
    return tbl


def _configuration(tree: AugmentedTree) -> tuple[int, ...]:
    counts = tree.num_events_per_branch()
    return tuple(counts[bid] for bid in tree.preorder())


def summarize_histories(trees: Sequence[AugmentedTree], top_n: int | None = None) -> pd.DataFrame:
    """
    Most frequently visited event configurations.

    Two histories share a configuration when every branch carries the same
    number of events; offsets and multipliers are ignored.

    Parameters
    ----------
    trees : sequence of AugmentedTree
        Stored histories, e.g. TreeStoreMonitor.trees().
    top_n : int or None, optional
        Number of configurations to return, default all.

    Returns
    -------
    pd.DataFrame
        Columns 'configuration' (events per branch in preorder), 'num_events'
        and 'frequency', sorted by decreasing frequency.
    """
    if not trees:
        return pd.DataFrame(columns=['configuration', 'num_events', 'frequency'])
    counts: dict[tuple[int, ...], int] = {}
    for tree in trees:
        key = _configuration(tree)
        counts[key] = counts.get(key, 0) + 1
    rows = sorted(counts.items(), key=lambda x: x[1], reverse=True)
    if top_n is not None:
        rows = rows[:top_n]
    tot = len(trees)
    return pd.DataFrame({'configuration': [k for k, _ in rows],
                         'num_events': [sum(k) for k, _ in rows],
                         'frequency': [v/tot for _, v in rows]})
