"""Core components for the MLSim framework.

Re-exports the foundational building blocks:

- ``FormulaSpec``, ``RandomEffectTermSpec``, ``GenerationSpec``,
  ``SampleSizes`` — specification records.
- ``RandomEffectPlan``, ``prepare_randomeffect``, ``generate_randomeffect``,
  ``simulate_randomeffect`` — the random-effect step.
- ``simulate_replicates``, ``simulate_conditions``, ``combine_replicates``
  — replicate runs.
"""

from .specs import (
    ClusterStructure,
    CrossClassificationFlags,
    FormulaSpec,
    GenerationSpec,
    RandomEffectTermSpec,
    SampleSizes,
)
from .simulation import RandomEffectPlan, generate_randomeffect, prepare_randomeffect, simulate_randomeffect
from .replicates import combine_replicates, replicate_seeds, simulate_conditions, simulate_replicates

__all__ = [
    # Specs
    "FormulaSpec",
    "RandomEffectTermSpec",
    "CrossClassificationFlags",
    "GenerationSpec",
    "SampleSizes",
    "ClusterStructure",
    # Random-effect step
    "RandomEffectPlan",
    "prepare_randomeffect",
    "generate_randomeffect",
    "simulate_randomeffect",
    # Replicates
    "simulate_replicates",
    "simulate_conditions",
    "combine_replicates",
    "replicate_seeds",
]
