"""
Specification records for the MLSim pipeline.

Plain dataclasses that carry parsed formula structure, per-term generation
parameters and resolved cluster sizes between the parsing, generation and
merging stages.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

# Mirrors the sampler name default applied when a spec omits ``generator``
DEFAULT_GENERATOR = "normal"
DEFAULT_MOMENTS = (0.0, 1.0)


@dataclass
class FormulaSpec:
    """Parsed mixed-model formula.

    Attributes:
        outcome_name: Left-hand side of ``~``.
        fixed_formula: One-sided fixed-effects formula (e.g. ``"~ x1 + x2"``).
        random_effect_terms: Parenthesised ``(effects | group)`` terms in
            left-to-right source order.
        fixed_terms: Individual fixed-effect terms.
    """

    outcome_name: str
    fixed_formula: str
    random_effect_terms: List[str] = field(default_factory=list)
    fixed_terms: List[str] = field(default_factory=list)


@dataclass
class RandomEffectTermSpec:
    """One ``(effects | group)`` term.

    Attributes:
        cluster_id_var: Grouping variable to the right of ``|``.
        effect_names: Effects to the left of ``|`` (``"1"`` is the intercept).
    """

    cluster_id_var: str
    effect_names: List[str] = field(default_factory=list)

    @property
    def n_effects(self) -> int:
        return len(self.effect_names)


@dataclass
class CrossClassificationFlags:
    """Per-effect cross-classification bookkeeping, flattened across terms.

    Attributes:
        is_cross_classified: One flag per effect.
        cross_class_id_vars: Cluster variable of every flagged effect.
        flattened_cluster_id_vars: Cluster variable repeated once per effect.
        term_index: Index of the owning term, one entry per effect.
    """

    is_cross_classified: List[bool]
    cross_class_id_vars: List[str]
    flattened_cluster_id_vars: List[str]
    term_index: List[int] = field(default_factory=list)

    @property
    def any_cross_classified(self) -> bool:
        return any(self.is_cross_classified)


@dataclass
class GenerationSpec:
    """Generation parameters for the effects of one random-effect term.

    Attributes:
        variances: Target variance of each effect, aligned with the term's
            effect names.
        generator: Registry name of the sampler, or a sampler instance.
        theoretical_moments: ``(mean, sd)`` of the sampler used for
            standardisation.
        simulate_moments: Estimate ``(mean, sd)`` from a large draw instead.
        correlations: Upper-triangular pairwise correlations (row-major),
            or ``None`` for independent effects.
        cross_class: Marks the whole term as cross-classified.
        num_ids: Number of cross-classification ids (cross-classified only).
        var_level: Level of the nested cluster this term lives at.
        column_names: Output column names overriding the defaults.
        extra_args: Keyword parameters forwarded to the sampler.
        name: Label of the spec in the user's configuration.
    """

    variances: List[float]
    generator: Any = DEFAULT_GENERATOR
    theoretical_moments: Tuple[float, float] = DEFAULT_MOMENTS
    simulate_moments: bool = False
    correlations: Optional[List[float]] = None
    cross_class: Optional[bool] = None
    num_ids: Optional[int] = None
    var_level: Optional[int] = None
    column_names: Optional[List[str]] = None
    extra_args: Dict[str, Any] = field(default_factory=dict)
    name: str = ""

    @property
    def n_effects(self) -> int:
        return len(self.variances)

    @property
    def is_cross_classified(self) -> bool:
        # A tag that is absent or explicitly false leaves the term nested
        return self.cross_class is not None and self.cross_class is not False


@dataclass
class SampleSizes:
    """Resolved cluster sizes of a (up to) three-level design.

    Attributes:
        level1: Observations in each level-2 cluster.
        level2: Level-2 clusters in each level-3 unit (``None`` for a
            two-level design).
        level3: Number of level-3 units.
    """

    level1: np.ndarray
    level2: Optional[np.ndarray] = None
    level3: Optional[int] = None

    @property
    def n_rows(self) -> int:
        return int(np.sum(self.level1))

    @property
    def n_levels(self) -> int:
        return 3 if self.level3 is not None else 2

    def n_units(self, level: int) -> int:
        """Number of units at *level* (level 1 counts observations)."""
        if level == 1:
            return self.n_rows
        if level == 2:
            return len(self.level1)
        if level == 3 and self.level3 is not None:
            return self.level3
        raise ValueError(f"Design has no level {level}")


@dataclass
class ClusterStructure:
    """Row-to-cluster mapping used to broadcast cluster-level draws.

    Attributes:
        n_rows: Number of level-1 rows.
        codes: Per cluster variable, a ``(n_rows,)`` array of 0-based unit
            indices.
        n_units: Per cluster variable, the number of distinct units.
        ids: Id columns to attach to a freshly created dataset (empty when
            the structure was read from existing data).
        sizes: The resolved sample sizes, when known.
    """

    n_rows: int
    codes: Dict[str, np.ndarray] = field(default_factory=dict)
    n_units: Dict[str, int] = field(default_factory=dict)
    ids: Dict[str, np.ndarray] = field(default_factory=dict)
    sizes: Optional[SampleSizes] = None

