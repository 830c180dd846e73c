"""
Random-effect simulation step for MLSim.

``simulate_randomeffect`` turns a formula plus generation parameters into
random-effect columns and merges them into a (possibly new) dataset:

1. Parse the formula and its ``(effects | group)`` terms.
2. Resolve which terms are cross-classified.
3. Determine cluster sizes, from ``sample_size`` for a fresh dataset or
   from the id columns of an existing one.
4. Generate nested effects per cluster unit and broadcast them to rows.
5. Generate cross-classified effects onto sampled id membership.
6. Column-bind the effects with the new id columns, or onto ``data``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..errors import DatasetAlignmentError, InvalidGenerationSpecError, InvalidSampleSizeError, MalformedFormulaError
from ..stats.random_effects import cross_class_sim, effect_column_names, sim_variable
from ..stats.structure import (
    LEVEL1_ID,
    assign_cluster_levels,
    build_structure,
    compute_samplesize,
    expected_rows,
    sample_sizes,
)
from ..utils.parsers import parse_crossclass, parse_formula, parse_randomeffect
from ..utils.validators import _validate_generation_spec, _validate_sample_size_or_raise, _validate_sim_args
from .specs import ClusterStructure, CrossClassificationFlags, FormulaSpec, GenerationSpec, RandomEffectTermSpec


@dataclass
class RandomEffectPlan:
    """Validated structure of one random-effect step, reusable across replicates.

    Attributes:
        formula: Parsed formula.
        terms: Parsed random-effect terms in source order.
        specs: Validated generation spec per term.
        flags: Flattened cross-classification flags.
        levels: Level of each nested cluster variable.
        sample_size: Raw sample-size specification (may be ``None`` when
            extending existing data).
    """

    formula: FormulaSpec
    terms: List[RandomEffectTermSpec]
    specs: List[GenerationSpec]
    flags: CrossClassificationFlags
    levels: Dict[str, int] = field(default_factory=dict)
    sample_size: Optional[Dict[str, Any]] = None

    @property
    def crossed_terms(self) -> List[int]:
        if not self.flags.any_cross_classified:
            return []
        return sorted({i for i, crossed in zip(self.flags.term_index, self.flags.is_cross_classified) if crossed})

    @property
    def nested_terms(self) -> List[int]:
        crossed = set(self.crossed_terms)
        return [i for i in range(len(self.terms)) if i not in crossed]

    def column_names(self, i: int) -> List[str]:
        return effect_column_names(self.specs[i], self.terms[i].effect_names, self.terms[i].cluster_id_var)


def prepare_randomeffect(sim_args: Dict[str, Any]) -> RandomEffectPlan:
    """Parse and validate simulation arguments without drawing anything.

    Raises:
        MalformedFormulaError: For formula problems, including a formula
            without random-effect terms.
        MalformedTermError: For malformed ``(effects | group)`` terms.
        InvalidGenerationSpecError: For missing or inconsistent parameters.
        InvalidCorrelationSpecError: For bad correlations.
        InvalidSampleSizeError: For a malformed ``sample_size``.
    """
    sim_args = _validate_sim_args(sim_args)

    if "formula" not in sim_args:
        raise MalformedFormulaError("sim_args has no 'formula'")
    formula = parse_formula(sim_args["formula"])
    if not formula.random_effect_terms:
        raise MalformedFormulaError(f"Formula '{sim_args['formula']}' has no random-effect terms")

    terms = parse_randomeffect(formula.random_effect_terms)

    randomeffect = sim_args["randomeffect"]
    if len(randomeffect) != len(terms):
        raise InvalidGenerationSpecError(
            f"Got {len(randomeffect)} random-effect specifications ({', '.join(map(str, randomeffect))}) "
            f"for {len(terms)} random-effect terms ({', '.join(formula.random_effect_terms)})"
        )

    specs = [_validate_generation_spec(raw, term, str(name)) for (name, raw), term in zip(randomeffect.items(), terms)]
    flags = parse_crossclass(specs, terms)

    nested = [i for i, spec in enumerate(specs) if not spec.is_cross_classified]
    levels = assign_cluster_levels([terms[i] for i in nested], [specs[i] for i in nested])

    # Checked even when existing data will supply the cluster structure
    sample_size = sim_args.get("sample_size")
    if sample_size is not None:
        _validate_sample_size_or_raise(sample_size)

    plan = RandomEffectPlan(
        formula=formula,
        terms=terms,
        specs=specs,
        flags=flags,
        levels=levels,
        sample_size=sample_size,
    )

    crossed_ids = [terms[i].cluster_id_var for i in plan.crossed_terms]
    names = [name for i in range(len(terms)) for name in plan.column_names(i)] + crossed_ids
    reserved = {LEVEL1_ID} | set(levels)
    duplicated = sorted({n for n in names if names.count(n) > 1 or n in reserved})
    if duplicated:
        raise InvalidGenerationSpecError(f"Duplicate output columns: {', '.join(duplicated)}")

    return plan


def _resolve_structure(plan: RandomEffectPlan, data: Optional[pd.DataFrame], gen) -> ClusterStructure:
    if data is None:
        if plan.sample_size is None:
            raise InvalidSampleSizeError("sim_args['sample_size'] is required when no data is supplied")
        return build_structure(sample_sizes(plan.sample_size, random_state=gen), plan.levels)

    if not isinstance(data, pd.DataFrame):
        raise DatasetAlignmentError(f"data must be a pandas DataFrame or None, got {type(data).__name__}")

    structure = compute_samplesize(data, plan.levels)
    n_expected = expected_rows(plan.sample_size)
    if n_expected is not None and n_expected != len(data):
        raise DatasetAlignmentError(f"sample_size implies {n_expected} rows but the existing data has {len(data)}")
    return structure


def generate_randomeffect(
    plan: RandomEffectPlan,
    data: Optional[pd.DataFrame] = None,
    random_state: Optional[np.random.RandomState] = None,
) -> pd.DataFrame:
    """Draw the random effects of a prepared plan and merge them into *data*.

    Rows of *data* are assumed to be in the order later steps expect;
    generated columns are attached by position.
    """
    gen = random_state if random_state is not None else np.random
    structure = _resolve_structure(plan, data, gen)

    index = pd.RangeIndex(structure.n_rows)
    zmat = pd.DataFrame(index=index)

    for i in plan.nested_terms:
        var = plan.terms[i].cluster_id_var
        draws = sim_variable(
            structure.n_units[var],
            var_type="continuous",
            spec=plan.specs[i],
            codes=structure.codes[var],
            random_state=gen,
        )
        for name, column in zip(plan.column_names(i), draws.T):
            zmat[name] = column

    crossed = plan.crossed_terms
    if crossed:
        samp_size = structure.sizes.n_rows
        if samp_size != structure.n_rows:
            raise DatasetAlignmentError(f"Cluster sizes sum to {samp_size} but the dataset has {structure.n_rows} rows")
        for i in crossed:
            col_names = plan.column_names(i) + [plan.terms[i].cluster_id_var]
            cross_vars = cross_class_sim(plan.specs[i].num_ids, samp_size, col_names, plan.specs[i], random_state=gen)
            zmat = pd.concat([zmat, cross_vars], axis=1)

    if data is None:
        return pd.concat([zmat, pd.DataFrame(structure.ids, index=index)], axis=1)

    if len(zmat) != len(data):
        raise DatasetAlignmentError(f"Generated {len(zmat)} rows for a dataset with {len(data)} rows")
    clash = sorted(set(zmat.columns) & set(data.columns))
    if clash:
        raise DatasetAlignmentError(f"Columns already present in the existing data: {', '.join(map(str, clash))}")

    zmat.index = data.index
    return pd.concat([data, zmat], axis=1)


def simulate_randomeffect(
    data: Optional[pd.DataFrame],
    sim_args: Dict[str, Any],
    random_state: Optional[np.random.RandomState] = None,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Simulate the random portion of a mixed model from its formula.

    Args:
        data: Dataset from earlier steps, or ``None`` when this is the first
            step. Its rows must stay in the order later steps expect; new
            columns are attached by position.
        sim_args: Mapping with ``formula``, ``randomeffect`` (one parameter
            bundle per random-effect term, in formula order) and, for a
            fresh dataset, ``sample_size``.
        random_state: ``RandomState`` providing the stream. When ``None``
            and *seed* is ``None``, uses the global numpy random state.
        seed: Seed for a new ``RandomState`` (ignored if *random_state* is
            given).

    Returns:
        A new DataFrame: random-effect columns followed by id columns, or
        *data* followed by random-effect columns.

    Example:
        >>> sim_args = {
        ...     "formula": "y ~ x1 + (1 + x1 | school)",
        ...     "sample_size": {"level1": 10, "level2": 30},
        ...     "randomeffect": {"school": {"variances": [8, 2], "correlations": [0.3]}},
        ... }
        >>> data = simulate_randomeffect(None, sim_args, seed=42)
    """
    plan = prepare_randomeffect(sim_args)
    if random_state is None and seed is not None:
        random_state = np.random.RandomState(seed)
    return generate_randomeffect(plan, data, random_state=random_state)
