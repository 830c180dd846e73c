"""MLSim - Multilevel random-effect simulation.

A simulation framework for the random portion of linear mixed-effects
models: nested and cross-classified random intercepts and slopes with
target variances, inter-effect correlations and non-normal generators.

Example:
    >>> from mlsim import MLSim
    >>>
    >>> sim = MLSim("y ~ x1 + (1 + x1 | school)")
    >>> sim.set_sample_size(level1=10, level2=30)
    >>> sim.set_random_effect("school", variances=[8, 2], correlations=[0.3])
    >>> data = sim.simulate()
    >>>
    >>> from mlsim import simulate_randomeffect
    >>> data = simulate_randomeffect(None, sim.sim_args, seed=42)
"""

from importlib.metadata import version as _get_version

from .core.replicates import combine_replicates, simulate_conditions, simulate_replicates
from .core.simulation import simulate_randomeffect
from .errors import (
    DatasetAlignmentError,
    InvalidCorrelationSpecError,
    InvalidGenerationSpecError,
    InvalidSampleSizeError,
    MalformedFormulaError,
    MalformedTermError,
    MLSimError,
    NonPositiveSemiDefiniteCovarianceWarning,
)
from .model import MLSim
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter

__version__ = _get_version("MLSim")

__all__ = [
    "MLSim",
    "simulate_randomeffect",
    "simulate_replicates",
    "simulate_conditions",
    "combine_replicates",
    "MLSimError",
    "MalformedFormulaError",
    "MalformedTermError",
    "InvalidCorrelationSpecError",
    "InvalidGenerationSpecError",
    "InvalidSampleSizeError",
    "DatasetAlignmentError",
    "NonPositiveSemiDefiniteCovarianceWarning",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
