"""
Sample rate-shift histories on a simulated 30-taxon tree and compare the
posterior number of shifts across independent runs.
"""
import numpy as np
import matplotlib.pyplot as plt
from bayesbds import (BDSModel, MCMC, LogNormal, TraceMonitor, TreeStoreMonitor, EventTreeMonitor,
                      sim_bd_tree, produce_event_table, summarize_histories, trace_summary,
                      plot_trace, plot_event_counts)

seed = 34647
rng = np.random.default_rng(seed)
tree = sim_bd_tree(30, speciation=0.3, extinction=0.1, rng=rng)

model = BDSModel(tree, speciation=LogNormal(np.log(0.3), 0.5), extinction=LogNormal(np.log(0.1), 0.5),
                 expected_shifts=1.0, multiplier_sd=0.5)
monitors = [TraceMonitor(printgen=10, nodes=['speciation', 'extinction', 'num_events'], name='trace'),
            TreeStoreMonitor('history', printgen=50, max_stored_trees=1000, name='store'),
            EventTreeMonitor('history', printgen=500, speciation='speciation', extinction='extinction',
                             filename='out/trees.tsv', name='trees')]

mcmc = MCMC(model.graph, model.default_moves(), monitors, nruns=4, generations=20000,
            tune_until=5000, seed=seed, n_jobs=-1, verbose='v')
res = mcmc.run()
print(res['timings']['elap_time_human'])

# Convergence: posterior of the number of shifts in each run
print(produce_event_table(res, burnin=0.25))
print(trace_summary(res['combined']['trace'], burnin=0.25))

# Most visited configurations over all runs
trees = []
for run in res['runs']:
    trees.extend(run['monitors'][1].trees())
print(summarize_histories(trees, top_n=5))

plot_trace(res['combined']['trace'], ['speciation', 'extinction', 'num_events'], burnin=5000, title='BDS trace')
plot_event_counts(res['combined']['trace'], burnin=5000, title='Posterior number of shifts')
plt.show()
