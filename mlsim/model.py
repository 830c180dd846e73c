"""
MLSim - Multilevel random-effect simulation.

This module provides the main MLSim class, a chainable front end over
``simulate_randomeffect`` and the replicate driver.
"""

from typing import Any, Callable, Dict, List, Optional, Union

import pandas as pd

from .core.replicates import combine_replicates, simulate_replicates
from .core.simulation import simulate_randomeffect
from .errors import InvalidGenerationSpecError, InvalidSampleSizeError, MalformedFormulaError
from .utils.parsers import parse_formula, parse_randomeffect
from .utils.validators import _validate_parallel_settings, _validate_sample_size


class MLSim:
    """Random-effect simulation for multilevel models.

    Parses the formula once, collects sample sizes and one parameter bundle
    per random-effect term, and simulates datasets from them. ``set_*``
    methods return ``self`` for method chaining.

    Attributes:
        seed: Random seed for reproducibility (default: 2137).
        n_jobs: Worker processes for replicate runs (default: 1).

    Example:
        >>> sim = MLSim("y ~ x1 + (1 + x1 | school) + (1 | neighborhood)")
        >>> sim.set_sample_size(level1=10, level2=30)
        >>> sim.set_random_effect("school", variances=[8, 2], correlations=[0.3])
        >>> sim.set_random_effect("neighborhood", variances=4, cross_class=True, num_ids=12)
        >>> data = sim.simulate()
    """

    def __init__(self, data_generation_formula: str):
        """Parse the formula and set defaults.

        Args:
            data_generation_formula: Mixed-model formula with at least one
                ``(effects | group)`` term, e.g.
                ``"y ~ x1 + (1 + x1 | school)"``.

        Raises:
            MalformedFormulaError: If the formula cannot be parsed or has no
                random-effect terms.
            MalformedTermError: If a random-effect term is malformed.
        """
        self.equation = data_generation_formula.strip()
        self._formula = parse_formula(self.equation)
        if not self._formula.random_effect_terms:
            raise MalformedFormulaError(f"Formula '{self.equation}' has no random-effect terms")
        self._terms = parse_randomeffect(self._formula.random_effect_terms)

        self.seed: Optional[int] = 2137
        self.n_jobs = 1

        self._sample_size: Optional[Dict[str, Any]] = None
        self._random_effects: Dict[int, Dict[str, Any]] = {}

    # =========================================================================
    # Formula properties
    # =========================================================================

    @property
    def outcome(self) -> str:
        """Outcome variable name."""
        return self._formula.outcome_name

    @property
    def fixed_formula(self) -> str:
        """One-sided fixed-effects formula."""
        return self._formula.fixed_formula

    @property
    def cluster_vars(self) -> List[str]:
        """Grouping variable of each random-effect term, in formula order."""
        return [t.cluster_id_var for t in self._terms]

    @property
    def sim_args(self) -> Dict[str, Any]:
        """Simulation arguments assembled from the ``set_*`` calls.

        Raises:
            InvalidGenerationSpecError: If a term has no parameters yet.
        """
        missing = [self._terms[i].cluster_id_var for i in range(len(self._terms)) if i not in self._random_effects]
        if missing:
            raise InvalidGenerationSpecError(f"Random effects not set for: {', '.join(missing)}. Use set_random_effect().")

        randomeffect = {}
        for i, term in enumerate(self._terms):
            key = term.cluster_id_var if self.cluster_vars.count(term.cluster_id_var) == 1 else f"{term.cluster_id_var}_{i + 1}"
            randomeffect[key] = dict(self._random_effects[i])

        args: Dict[str, Any] = {"formula": self.equation, "randomeffect": randomeffect}
        if self._sample_size is not None:
            args["sample_size"] = dict(self._sample_size)
        return args

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_sample_size(
        self,
        level1: Union[int, List[int], Dict[str, float]],
        level2: Union[int, List[int], Dict[str, float]],
        level3: Optional[int] = None,
    ):
        """Set cluster sizes.

        Args:
            level1: Observations per level-2 cluster: an int, a list of
                per-cluster sizes, or ``{"mean", "sd", "min", "max"}``.
            level2: Level-2 clusters (per level-3 unit when *level3* is set).
            level3: Number of level-3 units.

        Returns:
            self: For method chaining.
        """
        sample_size = {"level1": level1, "level2": level2}
        if level3 is not None:
            sample_size["level3"] = level3
        _validate_sample_size(sample_size).raise_if_invalid(InvalidSampleSizeError)
        self._sample_size = sample_size
        return self

    def set_random_effect(self, cluster: str, variances: Any, term: Optional[int] = None, **options):
        """Set generation parameters for the random-effect term of *cluster*.

        Args:
            cluster: Grouping variable of the term.
            variances: Variance per effect of the term (scalar for one).
            term: 1-based term position, required when *cluster* groups
                more than one term.
            **options: ``generator``, ``theoretical_moments``,
                ``simulate_moments``, ``correlations``, ``cross_class``,
                ``num_ids``, ``var_level``, ``column_names``, ``extra_args``.

        Returns:
            self: For method chaining.
        """
        positions = [i for i, t in enumerate(self._terms) if t.cluster_id_var == cluster]
        if not positions:
            raise InvalidGenerationSpecError(f"'{cluster}' is not a grouping variable. Available: {', '.join(self.cluster_vars)}")

        if term is not None:
            index = term - 1
            if index not in positions:
                raise InvalidGenerationSpecError(f"Term {term} is not grouped by '{cluster}'")
        elif len(positions) > 1:
            raise InvalidGenerationSpecError(f"'{cluster}' groups terms {[p + 1 for p in positions]}; pass term= to choose one")
        else:
            index = positions[0]

        self._random_effects[index] = {"variances": variances, **options}
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set random seed for reproducibility (``None`` for fresh entropy).

        Returns:
            self: For method chaining.
        """
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed < 0):
            raise ValueError(f"seed must be a non-negative integer or None, got {seed!r}")
        self.seed = seed
        return self

    def set_parallel(self, enable: bool = True, n_jobs: Optional[int] = None):
        """Enable or disable parallel replicate runs.

        Args:
            enable: ``False`` runs replicates sequentially.
            n_jobs: Worker processes; defaults to ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if not enable:
            self.n_jobs = 1
            return self

        if n_jobs is None:
            import multiprocessing as mp

            n_jobs = max(1, (mp.cpu_count() or 1) // 2)

        self.n_jobs, result = _validate_parallel_settings(n_jobs)
        result.raise_if_invalid()
        return self

    # =========================================================================
    # Simulation
    # =========================================================================

    def simulate(self, data: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """Simulate one dataset (or extend *data*) with the current settings."""
        return simulate_randomeffect(data, self.sim_args, seed=self.seed)

    def simulate_replicates(
        self,
        n_replicates: int,
        data: Optional[pd.DataFrame] = None,
        combine: bool = False,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> Union[List[pd.DataFrame], pd.DataFrame]:
        """Simulate independent replicate datasets.

        Args:
            n_replicates: Number of datasets.
            data: Existing dataset every replicate extends.
            combine: Return one DataFrame with a ``replicate`` column.
            progress_callback: ``callback(completed, total)``.
            cancel_check: Returning ``True`` cancels between replicates.
        """
        datasets = simulate_replicates(
            self.sim_args,
            n_replicates,
            seed=self.seed,
            n_jobs=self.n_jobs,
            data=data,
            progress_callback=progress_callback,
            cancel_check=cancel_check,
        )
        return combine_replicates(datasets) if combine else datasets
