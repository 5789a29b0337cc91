"""MCMC runner for bayesbds.

This module implements the MCMC class, which runs one or more independent
Metropolis-Hastings chains on a model graph. Every run works on its own deep
copy of the graph and the moves, with its own random stream and its own
monitor clones. Runs can be executed in parallel with joblib; their traces
are combined at the end.
"""

import logging
import time
from copy import deepcopy
from typing import Any, Sequence
import numpy as np
import pandas as pd
import humanize
from joblib import Parallel, delayed
from tqdm import tqdm
from .graph import ModelGraph
from .moves import Move
from .monitors import Monitor, FileMonitor
from .scheduler import MoveScheduler
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

COMBINE_POLICIES = ('mixed', 'sequential', 'none')


def combine_traces(traces: Sequence[pd.DataFrame | None], policy: str = 'mixed') -> pd.DataFrame | None:
    """
    Combine the traces of independent runs.

    Parameters
    ----------
    traces : sequence of pd.DataFrame
        One trace per run, in run order; None entries are skipped.
    policy : str, optional
        'mixed' interleaves the samples by iteration then run index,
        'sequential' concatenates the runs in order, 'none' returns None.

    Returns
    -------
    pd.DataFrame or None
        The combined trace, with a 1-based 'Run' column.
    """
    if policy not in COMBINE_POLICIES:
        raise ConfigurationError(f'Unknown combine policy {policy!r}, use one of {COMBINE_POLICIES}')
    if policy == 'none':
        return None
    frames = [t.assign(Run=i + 1) for i, t in enumerate(traces) if t is not None]
    if not frames:
        return None
    out = pd.concat(frames, ignore_index=True)
    if policy == 'mixed' and 'Iteration' in out.columns:
        out = out.sort_values(['Iteration', 'Run'], kind='stable').reset_index(drop=True)
    return out


class MCMC():
    """
    Independent Metropolis-Hastings runs on a model graph.

    Parameters
    ----------
    graph : ModelGraph
        The assembled model; it is frozen here and never modified by the runs.
    moves : sequence of Move (or iterables of moves, e.g. EventBirthDeathPair)
        Moves on the free stochastic nodes of graph.
    monitors : sequence of Monitor, optional
        Monitors cloned for every run.
    nruns : int, optional
        Number of independent runs (default 1).
    generations : int, optional
        Iterations per run (default 1000).
    tune_interval : int or None, optional
        Iterations between tuning updates of the moves (default 100).
    tune_until : int or None, optional
        Last iteration at which moves are tuned (default None, always).
    combine : str, optional
        'mixed', 'sequential' or 'none' (default 'mixed').
    seed : int or np.random.Generator, optional
        Random seed or generator (default 45). Runs get independent streams spawned from it.
    n_jobs : int, optional
        Number of joblib workers; 1 runs sequentially (default 1).
    verbose : str, optional
        Verbosity level; any non-empty string prints progress.
    debug : bool, optional
        If True, enables consistency checks after every iteration (default False).
    """
    def __init__(self, graph: ModelGraph, moves: Sequence[Any], monitors: Sequence[Monitor] = (),
                 nruns: int = 1, generations: int = 1000, tune_interval: int | None = 100, tune_until: int | None = None,
                 combine: str = 'mixed', seed: int | np.random.Generator = 45, n_jobs: int = 1,
                 verbose: str = '', debug: bool = False):
        if not isinstance(nruns, (int, np.integer)) or nruns < 1:
            raise ConfigurationError(f'nruns must be a positive integer, got {nruns!r}')
        if not isinstance(generations, (int, np.integer)) or generations < 0:
            raise ConfigurationError(f'generations must be a non-negative integer, got {generations!r}')
        if combine not in COMBINE_POLICIES:
            raise ConfigurationError(f'Unknown combine policy {combine!r}, use one of {COMBINE_POLICIES}')
        if isinstance(seed, (int, np.integer)):
            self.seed_seq = np.random.SeedSequence(int(seed))
            streams = self.seed_seq.spawn(nruns)
            self._rngs = [np.random.default_rng(s) for s in streams]
        elif isinstance(seed, np.random.Generator):
            self._rngs = seed.spawn(nruns)
        else:
            raise ConfigurationError(f'Seed must be an int or a numpy random generator, {type(seed)} was given..')

        graph.freeze()
        flat: list[Move] = []
        for m in moves:
            if isinstance(m, Move):
                flat.append(m)
            else:
                flat.extend(m)
        for mon in monitors:
            if not isinstance(mon, Monitor):
                raise ConfigurationError(f'{mon!r} is not a Monitor')
            mon.check(graph)
        # validates move targets and pairing before any file is opened
        scheduler = MoveScheduler(graph, tune_interval, tune_until, debug)
        for m in flat:
            scheduler.register(m)
        scheduler.validate()

        self.graph = graph
        self.moves = flat
        self.monitors = list(monitors)
        self.nruns = int(nruns)
        self.generations = int(generations)
        self.tune_interval = tune_interval
        self.tune_until = tune_until
        self.combine = combine
        self.orig_seed = seed
        self.n_jobs = n_jobs
        self.verbose = verbose
        self.debug = debug
        self.labels = [m.name if m.name is not None else f'{type(m).__name__}_{k}' for k, m in enumerate(self.monitors)]
        if len(set(self.labels)) != len(self.labels):
            raise ConfigurationError(f'Monitor names must be unique, got {self.labels}')

    def run(self) -> dict[str, Any]:
        """
        Execute all runs.

        Returns
        -------
        dict
            'runs' (one dict per run with traces, move_summary,
            final_log_posterior, completed_iterations, interrupted, timings),
            'combined' (combined trace per monitor), 'interrupted', 'timings'
            and 'setup'.
        """
        start_time = time.time()
        # each run gets its own copy of graph and moves, bound together
        jobs = []
        for r in range(self.nruns):
            graph, moves = deepcopy((self.graph, self.moves))
            jobs.append((r, graph, moves, [m.clone() for m in self.monitors], self._rngs[r]))

        runs: list[dict[str, Any]] = []
        if self.n_jobs == 1 or self.nruns == 1:
            for job in jobs:
                res = self._run_one(*job)
                runs.append(res)
                if res['interrupted']:
                    logger.warning('Run %d interrupted, skipping the remaining runs', job[0] + 1)
                    break
        else:
            runs = Parallel(n_jobs=self.n_jobs)(delayed(self._run_one)(*job) for job in jobs)

        combined = {}
        if self.combine != 'none' and self.nruns > 1:
            for k, label in enumerate(self.labels):
                frame = combine_traces([run['traces'].get(label) for run in runs], self.combine)
                combined[label] = frame
                mon = self.monitors[k]
                if isinstance(mon, FileMonitor) and frame is not None:
                    frame.to_csv(mon.filename, sep=mon.separator, index=False)

        elap_time = time.time() - start_time
        tot_iters = sum(run['completed_iterations'] for run in runs)
        timings = {'elap_time': elap_time, 'tot_mh_steps': tot_iters, 'elap_time_human': humanize.precisedelta(int(elap_time))}
        setup = {'nruns': self.nruns, 'generations': self.generations, 'tune_interval': self.tune_interval,
                 'tune_until': self.tune_until, 'combine': self.combine, 'seed': self.orig_seed, 'n_jobs': self.n_jobs,
                 'moves': [repr(m) for m in self.moves], 'monitors': self.labels, 'verbose': self.verbose, 'debug': self.debug}
        return {'runs': runs, 'combined': combined, 'interrupted': any(run['interrupted'] for run in runs),
                'timings': timings, 'setup': setup}

    def _run_one(self, run_index: int, graph: ModelGraph, moves: list[Move], monitors: list[Monitor],
                 rng: np.random.Generator) -> dict[str, Any]:
        """
        Execute one run on its own graph copy.

        A KeyboardInterrupt stops the run after the last complete iteration; any
        other error marks the monitor outputs incomplete and propagates.
        """
        scheduler = MoveScheduler(graph, self.tune_interval, self.tune_until, self.debug)
        for m in moves:
            scheduler.register(m)
        scheduler.validate()
        graph.initialize(rng)

        if self.verbose:
            print(f'Run {run_index + 1}/{self.nruns}: {self.generations} generations, {len(moves)} moves')
        tag = run_index if self.nruns > 1 else None
        for mon in monitors:
            mon.open(tag)

        interrupted = False
        completed = 0
        start_time = time.time()
        _range = range(1, self.generations + 1)
        if self.verbose:
            _range = tqdm(_range)
        try:
            snapshot = graph.snapshot()
            for mon in monitors:
                mon.notify(0, snapshot)
            for i in _range:
                scheduler.step(rng, i)
                completed = i
                for mon in monitors:
                    if mon.should_notify(i):
                        mon.notify(i, snapshot)
        except KeyboardInterrupt:
            interrupted = True
            graph.restore_all()
            for mon in monitors:
                mon.close(incomplete=f'interrupted after iteration {completed}')
        except Exception as e:
            logger.error('Run %d aborted at iteration %d: %s', run_index + 1, completed + 1, e)
            for mon in monitors:
                mon.close(incomplete=f'{type(e).__name__}: {e}')
            raise
        else:
            for mon in monitors:
                mon.close()

        elap_time = time.time() - start_time
        elap_time_human = humanize.precisedelta(int(elap_time))
        iters_min = int(completed/elap_time*60) if elap_time > 0 else 0
        if self.verbose:
            print(f'Elapsed time: {elap_time_human}, Tot iters: {completed}, Iters/min: {iters_min}/min')

        traces = {}
        for label, mon in zip(self.labels, monitors):
            frame = mon.to_frame()
            if frame is not None:
                traces[label] = frame
        return {'run': run_index + 1,
                'traces': traces,
                'monitors': monitors,
                'move_summary': scheduler.summary(),
                'counters': dict(scheduler.counters),
                'final_log_posterior': graph.get_log_posterior(),
                'final_state': graph,
                'completed_iterations': completed,
                'interrupted': interrupted,
                'timings': {'elap_time': elap_time, 'tot_mh_steps': completed, 'iters/min': iters_min, 'elap_time_human': elap_time_human}}
