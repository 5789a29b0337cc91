"""bayesbds: Bayesian inference of diversification rate shifts on phylogenies.

This package provides a graph-based MCMC engine for birth-death-shift
models: a model graph of constant, stochastic and deterministic nodes with
lazy evaluation and cheap rejection, Metropolis-Hastings and reversible-jump
moves, a weighted move scheduler with tuning, independent runs with
monitors, and an augmented tree carrying rate-shift events.

Available objects:
  - ModelGraph, ConstantNode, StochasticNode, DeterministicNode
  - Distributions: Uniform, Exponential, Normal, LogNormal, Gamma, Beta, Dirichlet,
    ShiftEventPrior, BirthDeathShiftProcess, ConstantRateBirthDeath, FunctionDistribution
  - Moves: ScaleMove, SlideMove, SimplexElementScaleMove, EventTimeSlideMove,
    EventRelocateMove, EventRateScaleMove, EventBirthMove, EventDeathMove, EventBirthDeathPair
  - MoveScheduler, MCMC, BDSModel
  - Monitors: TraceMonitor, FileMonitor, ScreenMonitor, EventTreeMonitor, TreeStoreMonitor
  - AugmentedTree, ShiftEvent, sim_bd_tree
  - Evaluation and plotting functions
  - Exceptions: BayesBDSError, CycleError, ConfigurationError, NumericalError,
    DimensionError, AbstractMethodError
"""

__version__ = "0.1.0"

from .node import ConstantNode, StochasticNode, DeterministicNode, constant, stochastic, deterministic
from .graph import ModelGraph, ModelSnapshot
from .distributions import (
    Distribution,
    Uniform,
    Exponential,
    Normal,
    LogNormal,
    Gamma,
    Beta,
    Dirichlet,
    ShiftEventPrior,
    BirthDeathShiftProcess,
    ConstantRateBirthDeath,
    PoissonCount,
    FunctionDistribution,
    make_distribution,
)
from .tree import AugmentedTree, Branch, ShiftEvent, sim_bd_tree
from .bds import bds_log_likelihood, branch_rates, total_num_events
from .moves import (
    Move,
    ScaleMove,
    SlideMove,
    SimplexElementScaleMove,
    EventTimeSlideMove,
    EventRelocateMove,
    EventRateScaleMove,
    EventBirthMove,
    EventDeathMove,
    EventBirthDeathPair,
    event_moves,
)
from .scheduler import MoveScheduler
from .monitors import TraceMonitor, FileMonitor, ScreenMonitor, EventTreeMonitor, TreeStoreMonitor
from .mcmc import MCMC, combine_traces
from .models import BDSModel
from .utils import plot_trace, plot_event_counts
from .eval import trace_summary, event_count_table, produce_event_table, summarize_histories
from .exceptions import (
    BayesBDSError,
    CycleError,
    ConfigurationError,
    NumericalError,
    DimensionError,
    AbstractMethodError,
)
