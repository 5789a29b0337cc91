import matplotlib
matplotlib.use('Agg')
import numpy as np
import pandas as pd
import pytest

from bayesbds import (
    AugmentedTree,
    ShiftEvent,
    trace_summary,
    event_count_table,
    produce_event_table,
    summarize_histories,
    plot_trace,
    plot_event_counts,
)
from bayesbds.eval import discard_burnin

# =============================================================================
# Fixtures
# =============================================================================
@pytest.fixture
def two_run_trace():
    return pd.DataFrame({'Iteration': [0, 0, 10, 10, 20, 20, 30, 30],
                         'Run': [1, 2]*4,
                         'x': [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0],
                         'num_events': [0, 1, 1, 1, 2, 1, 0, 1]})

@pytest.fixture
def base_tree():
    return AugmentedTree.from_nested(([([('A', 1.0), ('B', 1.0)], 1.0), ('C', 2.0)], 0.0))

# =============================================================================
# Trace summaries
# =============================================================================
def test_discard_burnin_per_run(two_run_trace):
    kept = discard_burnin(two_run_trace, 1)
    assert len(kept) == 6
    assert (kept['Iteration'] > 0).all()
    kept = discard_burnin(two_run_trace, 0.5)
    assert list(kept['Iteration']) == [20, 20, 30, 30]
    with pytest.raises(ValueError):
        discard_burnin(two_run_trace, 1.5)
    with pytest.raises(ValueError):
        discard_burnin(two_run_trace, -1)

def test_discard_burnin_single_run():
    trace = pd.DataFrame({'Iteration': range(10), 'x': range(10)})
    assert list(discard_burnin(trace, 0.3)['x']) == list(range(3, 10))
    assert list(discard_burnin(trace, 8)['x']) == [8, 9]

def test_trace_summary(two_run_trace):
    summary = trace_summary(two_run_trace, columns=['x'])
    assert list(summary.index) == ['x']
    assert summary.loc['x', 'mean'] == pytest.approx(4.5)
    assert summary.loc['x', '50%'] == pytest.approx(4.5)
    assert summary.loc['x', 'n'] == 8
    default = trace_summary(two_run_trace, burnin=2)
    assert set(default.index) == {'x', 'num_events'}
    assert default.loc['x', 'mean'] == pytest.approx(6.5)

# =============================================================================
# Event counts
# =============================================================================
def test_event_count_table(two_run_trace):
    tbl = event_count_table(two_run_trace)
    assert list(tbl.index) == [0, 1, 2]
    assert list(tbl['count']) == [2, 5, 1]
    assert tbl['probability'].sum() == pytest.approx(1.0)

def test_produce_event_table(two_run_trace):
    runs = [{'traces': {'trace': t.drop(columns='Run')}} for _, t in two_run_trace.groupby('Run')]
    tbl = produce_event_table({'runs': runs})
    assert list(tbl.columns) == ['C0', 'C1', 'Mn', 'Std']
    assert tbl.loc[0, 'C0'] == pytest.approx(0.5)
    assert tbl.loc[0, 'C1'] == 0.0
    assert tbl.loc[1, 'C1'] == pytest.approx(1.0)
    assert tbl.loc[1, 'Mn'] == pytest.approx(0.62, abs=0.01)
    with pytest.raises(KeyError):
        produce_event_table({'runs': runs}, column='missing')

def test_summarize_histories(base_tree):
    a = base_tree.copy()
    a.add_event(2, ShiftEvent(0.5, 2.0))
    b = base_tree.copy()
    b.add_event(2, ShiftEvent(0.1, 0.5))
    c = base_tree.copy()
    c.add_event(4, ShiftEvent(1.0))
    c.add_event(4, ShiftEvent(1.5))
    summary = summarize_histories([a, b, c, base_tree])
    assert summary['frequency'].iloc[0] == pytest.approx(0.5)
    assert summary['configuration'].iloc[0] == (0, 0, 1, 0, 0)
    assert summary['num_events'].iloc[0] == 1
    assert len(summarize_histories([a, b, c], top_n=1)) == 1
    assert summarize_histories([]).empty

# =============================================================================
# Plotting
# =============================================================================
def test_plots(two_run_trace):
    fig = plot_trace(two_run_trace, ['x', 'num_events'], burnin=10, title='trace')
    assert len(fig.axes) == 2
    fig = plot_event_counts(two_run_trace, title='events')
    assert fig.axes[0].get_title() == 'events'
