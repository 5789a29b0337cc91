import numpy as np
import pandas as pd
import pytest

from bayesbds import (
    MCMC,
    BDSModel,
    ModelGraph,
    StochasticNode,
    AugmentedTree,
    ShiftEvent,
    ShiftEventPrior,
    LogNormal,
    Move,
    ScaleMove,
    EventDeathMove,
    EventTimeSlideMove,
    EventRelocateMove,
    EventRateScaleMove,
    TraceMonitor,
    FileMonitor,
    EventTreeMonitor,
    TreeStoreMonitor,
    ScreenMonitor,
    combine_traces,
    trace_summary,
    bds_log_likelihood,
    ConfigurationError,
    DimensionError,
)
from bayesbds.utils import lognorm_logpdf

# =============================================================================
# Fixtures
# =============================================================================
@pytest.fixture
def three_taxa():
    return AugmentedTree.from_nested(([([('A', 1.0), ('B', 1.0)], 1.0), ('C', 2.0)], 0.0))

@pytest.fixture
def two_taxa():
    return AugmentedTree.from_nested(([('A', 1.5), ('B', 1.5)], 0.0))

@pytest.fixture
def tight_model(three_taxa):
    """Observed 3-taxon tree with tight priors at speciation 1 and extinction 0.3."""
    return BDSModel(three_taxa, speciation=LogNormal(0.0, 0.05), extinction=LogNormal(np.log(0.3), 0.05),
                    shift_rate=0.1)

def _rate_moves(model):
    return [ScaleMove(model.speciation, lambda_=0.2), ScaleMove(model.extinction, lambda_=0.2)]

class _InterruptingMonitor(TraceMonitor):
    def notify(self, iteration, snapshot):
        if iteration == 50:
            raise KeyboardInterrupt
        super().notify(iteration, snapshot)

class _BrokenMove(Move):
    def propose(self, graph, rng):
        raise DimensionError('corrupted history')

# =============================================================================
# Configuration
# =============================================================================
def test_invalid_configuration(tight_model):
    graph, moves = tight_model.graph, _rate_moves(tight_model)
    with pytest.raises(ConfigurationError):
        MCMC(graph, moves, nruns=0)
    with pytest.raises(ConfigurationError):
        MCMC(graph, moves, combine='shuffle')
    with pytest.raises(ConfigurationError):
        MCMC(graph, moves, seed='abc')
    with pytest.raises(ConfigurationError):
        MCMC(graph, [])
    with pytest.raises(ConfigurationError):
        MCMC(graph, moves, monitors=[TraceMonitor(name='t'), TraceMonitor(name='t')])

def test_moves_outside_graph_rejected(tight_model, three_taxa):
    other = BDSModel(three_taxa)
    with pytest.raises(ConfigurationError):
        MCMC(tight_model.graph, _rate_moves(other))

@pytest.mark.parametrize("monitor", [
    lambda path: FileMonitor(path, nodes=['no_such_node']),
    lambda path: EventTreeMonitor('history', speciation='no_such_node', filename=path),
    lambda path: EventTreeMonitor('no_such_node', filename=path),
    lambda path: TreeStoreMonitor('no_such_node'),
], ids=['file', 'tree_rates', 'tree_history', 'store'])
def test_unknown_monitor_node_rejected_before_output(tight_model, tmp_path, monitor):
    path = tmp_path / 'trace.log'
    with pytest.raises(ConfigurationError):
        MCMC(tight_model.graph, _rate_moves(tight_model), [monitor(path)])
    assert not path.exists()
    assert list(tmp_path.iterdir()) == []

# =============================================================================
# Sampling
# =============================================================================
def test_recovers_tight_priors(tight_model):
    monitor = TraceMonitor(printgen=5, nodes=['speciation', 'extinction'], name='trace')
    mcmc = MCMC(tight_model.graph, _rate_moves(tight_model), [monitor], generations=10000, seed=3)
    res = mcmc.run()
    trace = res['runs'][0]['traces']['trace']
    assert list(trace.columns) == ['Iteration', 'Posterior', 'Likelihood', 'Prior', 'speciation', 'extinction']
    assert len(trace) == 2001
    summary = trace_summary(trace, burnin=0.2)
    assert summary.loc['speciation', 'mean'] == pytest.approx(1.0, abs=0.03)
    assert summary.loc['extinction', 'mean'] == pytest.approx(0.3, abs=0.03)
    assert not res['interrupted']
    assert np.isfinite(res['runs'][0]['final_log_posterior'])
    # the original graph is untouched by the run
    assert tight_model.speciation.get_value() is None

def test_speciation_posterior_matches_grid(three_taxa):
    model = BDSModel(three_taxa, speciation=LogNormal(0.0, 0.5), extinction=0.3, shift_rate=0.1)
    monitor = TraceMonitor(printgen=10, nodes=['speciation'], name='trace')
    res = MCMC(model.graph, [ScaleMove(model.speciation, lambda_=1.0)], [monitor], generations=20000, seed=12).run()
    trace = res['runs'][0]['traces']['trace']
    assert len(trace) == 2001
    # posterior of speciation alone on a grid, extinction fixed and no shifts
    lam = np.linspace(0.01, 8.0, 4000)
    log_post = np.array([bds_log_likelihood(three_taxa, l, 0.3) + lognorm_logpdf(l, 0.0, 0.5) for l in lam])
    w = np.exp(log_post - log_post.max())
    expected = np.sum(lam*w)/np.sum(w)
    assert trace_summary(trace, burnin=0.2).loc['speciation', 'mean'] == pytest.approx(expected, abs=0.07)

def test_final_posterior_matches_recomputation(tight_model):
    res = MCMC(tight_model.graph, tight_model.default_moves(), generations=300, seed=1, debug=True).run()
    run = res['runs'][0]
    graph = run['final_state']
    cached = graph.get_log_posterior()
    graph._invalidate_all()
    assert graph.get_log_posterior() == pytest.approx(cached)
    assert cached == run['final_log_posterior']
    assert run['counters']['proposed'] == 300
    assert run['move_summary']['tries'].sum() == 300
    assert graph['history'].get_value().is_valid()

def test_death_only_empties_history(three_taxa):
    start = three_taxa.copy()
    start.add_event(2, ShiftEvent(0.5, 2.0, 1.0))
    start.add_event(4, ShiftEvent(1.0, 0.5, 1.0))
    start.commit()
    history = StochasticNode('history', ShiftEventPrior(three_taxa, 0.4, 0.5), value=start)
    graph = ModelGraph.from_nodes(history)
    monitor = TraceMonitor(nodes=[history], name='trace')
    res = MCMC(graph, [EventDeathMove(history)], [monitor], generations=500, seed=2).run()
    counts = res['runs'][0]['traces']['trace']['history.num_events'].to_numpy()
    assert counts[0] == 2 and counts[-1] == 0
    assert (np.diff(counts) <= 0).all()

def test_no_birth_move_keeps_history_empty(two_taxa):
    model = BDSModel(two_taxa, speciation=LogNormal(0.0, 0.5), extinction=LogNormal(np.log(0.3), 0.5))
    history = model.history
    moves = [EventDeathMove(history), EventTimeSlideMove(history), EventRelocateMove(history),
             EventRateScaleMove(history, which='both'), *_rate_moves(model)]
    monitor = TraceMonitor(nodes=[history, 'speciation'], name='trace')
    res = MCMC(model.graph, moves, [monitor], generations=1000, seed=13).run()
    trace = res['runs'][0]['traces']['trace']
    assert len(trace) == 1001
    assert (trace['history.num_events'] == 0).all()
    # the rate moves were active
    assert trace['speciation'].nunique() > 1
    assert res['runs'][0]['final_state']['history'].get_value().total_num_events() == 0

# =============================================================================
# Runs and trace combination
# =============================================================================
def test_combine_traces():
    t1 = pd.DataFrame({'Iteration': [0, 10, 20], 'x': [1.0, 2.0, 3.0]})
    t2 = pd.DataFrame({'Iteration': [0, 10], 'x': [4.0, 5.0]})
    mixed = combine_traces([t1, t2], 'mixed')
    assert list(mixed['x']) == [1.0, 4.0, 2.0, 5.0, 3.0]
    assert list(mixed['Run']) == [1, 2, 1, 2, 1]
    seq = combine_traces([t1, t2], 'sequential')
    assert list(seq['x']) == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert combine_traces([t1, t2], 'none') is None
    assert combine_traces([None, t2])['Run'].unique().tolist() == [2]
    with pytest.raises(ConfigurationError):
        combine_traces([t1], 'other')

def test_multiple_runs_write_per_run_files(tight_model, tmp_path):
    filename = tmp_path / 'out' / 'trace.log'
    monitor = FileMonitor(filename, printgen=10, nodes=['speciation', 'extinction'], name='file')
    res = MCMC(tight_model.graph, _rate_moves(tight_model), [monitor], nruns=2, generations=100, seed=4).run()
    for i in (1, 2):
        path = tmp_path / 'out' / f'trace_run_{i}.log'
        assert path.exists()
        frame = pd.read_csv(path, sep='\t')
        assert len(frame) == 11
        assert list(frame['Iteration']) == list(range(0, 101, 10))
    combined = pd.read_csv(filename, sep='\t')
    assert len(combined) == 22
    assert list(combined['Run'][:4]) == [1, 2, 1, 2]
    pd.testing.assert_frame_equal(combined, res['combined']['file'])
    # the two runs use different random streams
    assert not res['runs'][0]['traces']['file']['speciation'].equals(res['runs'][1]['traces']['file']['speciation'])

def test_same_seed_same_trace(tight_model):
    def run(seed):
        monitor = TraceMonitor(printgen=10, name='trace')
        return MCMC(tight_model.graph, tight_model.default_moves(), [monitor], generations=200, seed=seed).run()
    a, b, c = run(11), run(11), run(12)
    pd.testing.assert_frame_equal(a['runs'][0]['traces']['trace'], b['runs'][0]['traces']['trace'])
    assert not a['runs'][0]['traces']['trace'].equals(c['runs'][0]['traces']['trace'])

def test_parallel_runs_match_sequential(tight_model):
    def run(n_jobs):
        monitor = TraceMonitor(printgen=10, nodes=['speciation', 'extinction', 'num_events'], name='trace')
        return MCMC(tight_model.graph, tight_model.default_moves(), [monitor], nruns=2, generations=200,
                    seed=7, n_jobs=n_jobs).run()
    seq, par = run(1), run(2)
    pd.testing.assert_frame_equal(seq['combined']['trace'], par['combined']['trace'])

def test_result_layout(tight_model):
    res = MCMC(tight_model.graph, _rate_moves(tight_model), [TraceMonitor()], generations=20, seed=5).run()
    assert set(res) == {'runs', 'combined', 'interrupted', 'timings', 'setup'}
    run = res['runs'][0]
    assert set(run['traces']) == {'TraceMonitor_0'}
    assert run['completed_iterations'] == 20
    assert res['timings']['tot_mh_steps'] == 20
    assert res['setup']['generations'] == 20
    assert 'elap_time_human' in run['timings']

# =============================================================================
# Interruption and failures
# =============================================================================
def test_keyboard_interrupt_keeps_partial_output(tight_model, tmp_path):
    filename = tmp_path / 'trace.log'
    monitors = [_InterruptingMonitor(name='trace'), FileMonitor(filename, name='file')]
    res = MCMC(tight_model.graph, _rate_moves(tight_model), monitors, nruns=2, generations=200, seed=6).run()
    assert res['interrupted']
    assert len(res['runs']) == 1
    run = res['runs'][0]
    assert run['interrupted'] and run['completed_iterations'] == 50
    assert len(run['traces']['trace']) == 50
    assert run['final_state'].n_touched() == 0
    lines = (tmp_path / 'trace_run_1.log').read_text().splitlines()
    assert lines[-1].startswith('# INCOMPLETE')
    assert len(run['traces']['file']) == 50

def test_dimension_error_aborts(tight_model, tmp_path):
    filename = tmp_path / 'trace.log'
    mcmc = MCMC(tight_model.graph, [_BrokenMove(tight_model.speciation)], [FileMonitor(filename)], generations=10)
    with pytest.raises(DimensionError):
        mcmc.run()
    lines = filename.read_text().splitlines()
    assert lines[-1] == '# INCOMPLETE: DimensionError: corrupted history'

# =============================================================================
# Tree monitors
# =============================================================================
def test_event_tree_monitor(tight_model, tmp_path):
    monitor = EventTreeMonitor('history', printgen=20, speciation='speciation', extinction='extinction',
                               filename=tmp_path / 'trees.tsv', name='trees')
    res = MCMC(tight_model.graph, tight_model.default_moves(), [monitor], generations=200, seed=8).run()
    frame = res['runs'][0]['traces']['trees']
    assert list(frame['Iteration']) == list(range(0, 201, 20))
    for newick in frame['tree']:
        assert newick.endswith(';')
        assert '&nevents=' in newick and 'lambda=' in newick
    assert len((tmp_path / 'trees.tsv').read_text().splitlines()) == 12

def test_tree_store_capacity(tight_model):
    monitor = TreeStoreMonitor(tight_model.history, printgen=10, max_stored_trees=5, name='store')
    res = MCMC(tight_model.graph, tight_model.default_moves(), [monitor], generations=200, seed=9).run()
    stored = res['runs'][0]['monitors'][0]
    assert list(res['runs'][0]['traces']['store']['Iteration']) == [160, 170, 180, 190, 200]
    trees = stored.trees()
    assert len(trees) == 5
    assert all(isinstance(t, AugmentedTree) and t.is_valid() for t in trees)
    # stored trees are copies, not the live history
    assert all(t is not res['runs'][0]['final_state']['history'].get_value() for t in trees)

def test_screen_monitor(tight_model, capsys):
    monitor = ScreenMonitor(printgen=5, nodes=['speciation'])
    res = MCMC(tight_model.graph, _rate_moves(tight_model), [monitor], generations=10, seed=10).run()
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].split() == ['Iteration', 'Posterior', 'speciation']
    assert [int(l.split()[0]) for l in lines[1:]] == [0, 5, 10]
    assert res['runs'][0]['traces'] == {}
