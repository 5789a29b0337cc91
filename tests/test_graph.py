import copy

import numpy as np
import pytest

from bayesbds import (
    ModelGraph,
    ConstantNode,
    StochasticNode,
    DeterministicNode,
    Normal,
    Uniform,
    LogNormal,
    FunctionDistribution,
    make_distribution,
    CycleError,
    ConfigurationError,
    NumericalError,
)

# =============================================================================
# Fixtures
# =============================================================================
@pytest.fixture
def chain_model():
    """
    a (constant) -> x ~ Normal(a, 1) -> d = 2x -> y ~ Normal(d, 1), clamped
    z ~ Normal(0, 1) unrelated to y
    """
    a = ConstantNode('a', 1.0)
    x = StochasticNode('x', Normal(a, 1.0), value=0.5)
    d = DeterministicNode('d', lambda x: 2*x, x=x)
    y = StochasticNode('y', Normal(d, 1.0), value=1.2, clamped=True)
    z = StochasticNode('z', Normal(0.0, 1.0), value=0.1)
    graph = ModelGraph()
    graph.add_nodes(y, z)
    graph.freeze()
    return graph, a, x, d, y, z

def _expected_posterior(x, z):
    def lp(v, m):
        return -0.5*np.log(2*np.pi) - 0.5*(v - m)**2
    return lp(x, 1.0) + lp(1.2, 2*x) + lp(z, 0.0)

# =============================================================================
# Assembly
# =============================================================================
def test_add_node_registers_ancestors(chain_model):
    graph, a, x, d, y, z = chain_model
    assert len(graph) == 9
    for name in ['a', 'x', 'd', 'y', 'z', 'x.sd', 'y.sd', 'z.mean', 'z.sd']:
        assert name in graph
    assert graph['x'] is x
    assert graph.free_nodes() == [x, z] or set(graph.free_nodes()) == {x, z}
    assert graph.clamped_nodes() == [y]
    assert graph.deterministic_nodes() == [d]

def test_topological_order(chain_model):
    graph = chain_model[0]
    order = [n.name for n in graph]
    for parent, child in [('a', 'x'), ('x', 'd'), ('d', 'y')]:
        assert order.index(parent) < order.index(child)

def test_from_nodes_collects_component(chain_model):
    _, a, x, d, y, z = chain_model
    graph = ModelGraph.from_nodes(x)
    assert graph.frozen
    assert {'a', 'x', 'd', 'y'} <= {n.name for n in graph}
    assert 'z' not in graph

def test_duplicate_names():
    graph = ModelGraph()
    graph.add_node(ConstantNode('a', 1.0))
    with pytest.raises(ConfigurationError):
        graph.add_node(ConstantNode('a', 2.0))

def test_frozen_graph_rejects_edits(chain_model):
    graph = chain_model[0]
    with pytest.raises(ConfigurationError):
        graph.add_node(ConstantNode('w', 1.0))

def test_missing_node(chain_model):
    with pytest.raises(ConfigurationError):
        chain_model[0].get_node('nope')

def test_connect_cycle():
    x = StochasticNode('x', Normal(0.0, 1.0), value=0.0)
    d1 = DeterministicNode('d1', lambda x: x + 1, x=x)
    d2 = DeterministicNode('d2', lambda d1: d1*2, d1=d1)
    graph = ModelGraph()
    graph.add_node(d2)
    with pytest.raises(CycleError):
        graph.connect(d2, d1, 'extra')
    with pytest.raises(CycleError):
        graph.connect(d1, d1, 'self')
    # a legal edge is accepted and changes the value
    c = ConstantNode('c', 10.0)
    d3 = DeterministicNode('d3', lambda d1, c=0.0: d1 + c, d1=d1)
    graph.add_node(d3)
    graph.connect(c, d3, 'c')
    graph.freeze()
    assert d3.get_value() == pytest.approx(11.0)

def test_cycle_through_parents_detected():
    d1 = DeterministicNode('d1', lambda v: v, v=0.0)
    d2 = DeterministicNode('d2', lambda v: v, v=d1)
    # close the loop behind the graph's back
    d1._remove_parent('v')
    d1._add_parent('v', d2)
    graph = ModelGraph()
    with pytest.raises(CycleError):
        graph.add_node(d2)

def test_make_distribution():
    dist = make_distribution('lognormal', 0.0, 1.0)
    assert isinstance(dist, LogNormal)
    assert isinstance(make_distribution('dnLognormal', 0.0, 1.0), LogNormal)
    with pytest.raises(ConfigurationError):
        make_distribution('dnNotThere')

# =============================================================================
# Evaluation
# =============================================================================
def test_log_posterior(chain_model):
    graph = chain_model[0]
    assert graph.get_log_posterior() == pytest.approx(_expected_posterior(0.5, 0.1))
    assert graph.get_log_likelihood() + graph.get_log_prior() == pytest.approx(graph.get_log_posterior())

def test_deterministic_is_lazy(chain_model):
    graph, a, x, d, y, z = chain_model
    assert d.get_value() == 1.0
    assert d.get_value() == 1.0
    assert d.n_evaluations == 1
    graph.set_value(z, 0.3)
    graph.keep(z)
    d.get_value()
    assert d.n_evaluations == 1
    graph.set_value(x, 0.7)
    assert d.get_value() == pytest.approx(1.4)
    assert d.n_evaluations == 2

def test_nested_deterministic_update():
    x = StochasticNode('x', Normal(0.0, 1.0), value=1.0)
    d1 = DeterministicNode('d1', lambda x: x + 1, x=x)
    d2 = DeterministicNode('d2', lambda d1, x: d1*x, d1=d1, x=x)
    graph = ModelGraph.from_nodes(d2)
    assert d2.get_value() == pytest.approx(2.0)
    graph.set_value(x, 3.0)
    assert d2.get_value() == pytest.approx(12.0)
    assert d1.n_evaluations == 2

def test_nan_density_raises():
    x = StochasticNode('x', FunctionDistribution(lambda v: np.nan), value=0.0)
    graph = ModelGraph.from_nodes(x)
    with pytest.raises(NumericalError):
        graph.get_log_posterior()

def test_out_of_support_is_minus_inf():
    x = StochasticNode('x', Uniform(0.0, 1.0), value=2.0)
    graph = ModelGraph.from_nodes(x)
    assert graph.get_log_posterior() == -np.inf

# =============================================================================
# touch / keep / restore
# =============================================================================
def test_touch_marks_descendants_only(chain_model):
    graph, a, x, d, y, z = chain_model
    graph.get_log_posterior()
    d.get_value()
    graph.set_value(x, 0.9)
    assert x.dirty and d.dirty and y.dirty
    assert not z.dirty
    assert not graph['x.sd'].dirty
    graph.restore(x)

def test_touching_constant_fails(chain_model):
    graph, a = chain_model[0], chain_model[1]
    with pytest.raises(ConfigurationError):
        graph.touch(a)

def test_clamped_value_cannot_change(chain_model):
    graph, y = chain_model[0], chain_model[4]
    with pytest.raises(ConfigurationError):
        graph.set_value(y, 3.0)

def test_restore_is_bit_identical(chain_model):
    graph, a, x, d, y, z = chain_model
    before = graph.get_log_posterior()
    d_before = d.get_value()
    graph.set_value(x, 2.5)
    graph.set_value(z, -1.0)
    assert graph.get_log_posterior() != before
    graph.restore_all()
    assert graph.n_touched() == 0
    assert x.get_value() == 0.5 and z.get_value() == 0.1
    assert d.get_value() == d_before
    assert graph.get_log_posterior() == before
    assert not y.dirty

def test_keep_is_idempotent(chain_model):
    graph, a, x, d, y, z = chain_model
    graph.get_log_posterior()
    graph.set_value(x, 0.8)
    after = graph.get_log_posterior()
    graph.keep(x)
    graph.keep(x)
    assert graph.n_touched() == 0
    assert x.get_value() == 0.8
    assert graph.get_log_posterior() == after
    assert after == pytest.approx(_expected_posterior(0.8, 0.1))
    # a later restore does not undo a kept proposal
    graph.restore(x)
    assert x.get_value() == 0.8

def test_repeated_set_value_restores_first_value(chain_model):
    graph, x = chain_model[0], chain_model[2]
    graph.set_value(x, 1.0)
    graph.set_value(x, 2.0)
    graph.restore(x)
    assert x.get_value() == 0.5

def test_debug_cache_check(chain_model):
    graph, x = chain_model[0], chain_model[2]
    graph.debug = True
    graph.get_log_posterior()
    graph.set_value(x, 0.4)
    graph.get_log_posterior()
    graph.keep(x)
    assert graph.get_log_posterior() == pytest.approx(_expected_posterior(0.4, 0.1))

# =============================================================================
# Initialization, snapshots, copies
# =============================================================================
def test_initialize_draws_missing_values():
    x = StochasticNode('x', Normal(0.0, 1.0))
    y = StochasticNode('y', Normal(x, 1.0), value=0.3, clamped=True)
    graph = ModelGraph.from_nodes(y)
    graph.initialize(np.random.default_rng(1))
    assert x.get_value() is not None
    assert np.isfinite(graph.get_log_posterior())

def test_initialize_falls_back_to_initial_value():
    x = StochasticNode('x', Normal(0.0, 1.0), initial_value=11.0)
    y = StochasticNode('y', FunctionDistribution(lambda v, m: 0.0 if m > 10 else -np.inf, m=x), value=0.0, clamped=True)
    graph = ModelGraph.from_nodes(y)
    graph.initialize(np.random.default_rng(1), max_attempts=5)
    assert x.get_value() == 11.0
    assert np.isfinite(graph.get_log_posterior())

def test_initialize_fails_without_valid_state():
    x = StochasticNode('x', Uniform(0.0, 1.0))
    y = StochasticNode('y', FunctionDistribution(lambda v, m: -np.inf, m=x), value=0.0, clamped=True)
    graph = ModelGraph.from_nodes(y)
    with pytest.raises(NumericalError):
        graph.initialize(np.random.default_rng(1), max_attempts=5)

def test_snapshot_is_read_only(chain_model):
    graph = chain_model[0]
    snap = graph.snapshot()
    assert snap['x'] == 0.5
    assert snap['d'] == 1.0
    assert snap.posterior == pytest.approx(_expected_posterior(0.5, 0.1))
    assert 'y' in set(snap)
    with pytest.raises(TypeError):
        snap['x'] = 3.0

def test_copy_is_independent(chain_model):
    graph = chain_model[0]
    other = graph.copy()
    other.set_value(other['x'], 3.0)
    other.keep_all()
    assert graph['x'].get_value() == 0.5
    assert other['d'].get_value() == 6.0
    assert graph['d'].get_value() == 1.0
    # descendants are looked up on the copy's own nodes
    other.set_value(other['x'], 4.0)
    assert other['y'].dirty
    other.restore_all()
    assert other['x'].get_value() == 3.0

def test_copy_with_pending_proposal_fails(chain_model):
    graph, x = chain_model[0], chain_model[2]
    graph.set_value(x, 1.0)
    with pytest.raises(ConfigurationError):
        graph.copy()
    graph.restore_all()
    assert isinstance(copy.deepcopy(graph), ModelGraph)

def test_clamp_and_redraw():
    x = StochasticNode('x', Normal(0.0, 1.0), value=0.2)
    x.clamp(0.7)
    assert x.clamped and x.get_value() == 0.7
    with pytest.raises(ConfigurationError):
        x.redraw(np.random.default_rng(0))
    x.unclamp()
    x.redraw(np.random.default_rng(0))
    assert x.get_value() != 0.7
    assert x.is_stochastic() and not x.is_constant()
    assert ConstantNode('c', 1.0).is_constant()

def test_support_contains():
    dist = Uniform(0.0, 1.0)
    assert dist.support_contains(0.5)
    assert not dist.support_contains(1.5)
