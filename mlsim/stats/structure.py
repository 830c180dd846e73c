"""
Cluster structure for MLSim.

Resolves sample-size specifications into per-cluster sizes, creates id
columns for a fresh dataset, and reads the same structure back from an
existing dataset so cluster-level draws can be broadcast onto its rows.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..core.specs import ClusterStructure, GenerationSpec, RandomEffectTermSpec, SampleSizes
from ..errors import DatasetAlignmentError, InvalidGenerationSpecError, InvalidSampleSizeError
from ..utils.validators import _validate_sample_size_or_raise

LEVEL1_ID = "level1_id"
MAX_LEVEL = 3


def _draw_sizes(spec: Any, count: int, name: str, gen) -> np.ndarray:
    """Sizes for *count* units: fixed, explicit, or rounded normal draws clipped to [min, max]."""
    if isinstance(spec, dict):
        lo = spec.get("min", 1)
        hi = spec.get("max")
        sizes = np.round(gen.normal(spec["mean"], spec["sd"], size=count))
        return np.clip(sizes, lo, hi).astype(np.intp)

    if isinstance(spec, (list, tuple, np.ndarray)):
        sizes = np.asarray(spec, dtype=np.intp)
        if len(sizes) != count:
            raise InvalidSampleSizeError(f"{name} lists {len(sizes)} sizes but the design has {count} units")
        return sizes

    return np.full(count, int(spec), dtype=np.intp)


def sample_sizes(sample_size: Dict[str, Any], random_state: Optional[np.random.RandomState] = None) -> SampleSizes:
    """Resolve a ``{level1, level2[, level3]}`` specification into cluster sizes.

    ``level1`` gives observations per level-2 cluster, ``level2`` the
    level-2 clusters per level-3 unit (or in total for two levels) and
    ``level3`` the number of level-3 units. Random sizes
    (``{"mean", "sd", "min", "max"}``) are drawn from *random_state*.

    Raises:
        InvalidSampleSizeError: If the specification is malformed.
    """
    _validate_sample_size_or_raise(sample_size)
    gen = random_state if random_state is not None else np.random

    level3 = sample_size.get("level3")
    level2_spec = sample_size["level2"]

    if level3 is None:
        if isinstance(level2_spec, (list, tuple, np.ndarray)):
            raise InvalidSampleSizeError("level2 must be a single count unless level3 is given")
        n_level2 = int(_draw_sizes(level2_spec, 1, "level2", gen)[0])
        level2 = None
    else:
        level2 = _draw_sizes(level2_spec, int(level3), "level2", gen)
        n_level2 = int(np.sum(level2))

    level1 = _draw_sizes(sample_size["level1"], n_level2, "level1", gen)

    return SampleSizes(level1=level1, level2=level2, level3=None if level3 is None else int(level3))


def create_ids(sizes: SampleSizes, id_names: Sequence[str]) -> Dict[str, np.ndarray]:
    """Create 1-based id columns, innermost level first.

    ``id_names[0]`` names the observation id, ``id_names[1]`` the level-2
    cluster id and ``id_names[2]`` the level-3 id. Ids are unique across
    the whole design.
    """
    ids: Dict[str, np.ndarray] = {id_names[0]: np.arange(1, sizes.n_rows + 1)}

    level2_ids = np.repeat(np.arange(1, len(sizes.level1) + 1), sizes.level1)
    if len(id_names) > 1:
        ids[id_names[1]] = level2_ids

    if len(id_names) > 2:
        if sizes.level3 is None:
            raise InvalidSampleSizeError(f"Cluster '{id_names[2]}' is at level 3 but sample_size has no level3")
        level3_of_cluster = np.repeat(np.arange(1, sizes.level3 + 1), sizes.level2)
        ids[id_names[2]] = level3_of_cluster[level2_ids - 1]

    return ids


def assign_cluster_levels(terms: Sequence[RandomEffectTermSpec], specs: Sequence[GenerationSpec]) -> Dict[str, int]:
    """Map each nested cluster variable to its level.

    An explicit ``var_level`` wins; otherwise cluster variables take the
    lowest free level from 2 upward in order of first appearance.

    Raises:
        InvalidGenerationSpecError: If a variable is given two levels, two
            variables share a level, or a level exceeds 3.
    """
    levels: Dict[str, int] = {}

    for term, spec in zip(terms, specs):
        var = term.cluster_id_var
        if var in levels:
            if spec.var_level is not None and spec.var_level != levels[var]:
                raise InvalidGenerationSpecError(f"Cluster '{var}' assigned to both level {levels[var]} and level {spec.var_level}")
            continue
        if spec.var_level is not None:
            if spec.var_level in levels.values():
                raise InvalidGenerationSpecError(f"Level {spec.var_level} is already used by another cluster variable")
            levels[var] = spec.var_level
        else:
            level = 2
            while level in levels.values():
                level += 1
            levels[var] = level

    if levels and max(levels.values()) > MAX_LEVEL:
        raise InvalidGenerationSpecError(
            f"At most {MAX_LEVEL - 1} nested cluster variables are supported, got {', '.join(levels)}"
        )

    return levels


def build_structure(sizes: SampleSizes, levels: Dict[str, int]) -> ClusterStructure:
    """Structure of a fresh dataset with id columns named after the cluster variables."""
    by_level = {level: var for var, level in levels.items()}
    top = max(by_level, default=1)
    if top > sizes.n_levels:
        raise InvalidSampleSizeError(f"Cluster '{by_level[3]}' is at level 3 but sample_size has no level3")

    id_names: List[str] = [LEVEL1_ID] + [by_level.get(level, f"level{level}_id") for level in range(2, top + 1)]
    ids = create_ids(sizes, id_names)

    codes = {var: ids[var] - 1 for var in levels}
    n_units = {var: sizes.n_units(level) for var, level in levels.items()}

    return ClusterStructure(n_rows=sizes.n_rows, codes=codes, n_units=n_units, ids=ids, sizes=sizes)


def compute_samplesize(data: pd.DataFrame, levels: Dict[str, int]) -> ClusterStructure:
    """Read the cluster structure of an existing dataset.

    Every cluster variable in *levels* must be a column of *data*. Rows
    are mapped to units by id value, so clusters need not be contiguous.

    Raises:
        DatasetAlignmentError: If a cluster column is missing or has
            missing ids.
    """
    n_rows = len(data)
    codes: Dict[str, np.ndarray] = {}
    n_units: Dict[str, int] = {}

    for var in levels:
        if var not in data.columns:
            raise DatasetAlignmentError(f"Cluster variable '{var}' is not a column of the existing data. Available: {', '.join(map(str, data.columns))}")
        var_codes, uniques = pd.factorize(data[var], sort=False)
        if np.any(var_codes < 0):
            raise DatasetAlignmentError(f"Cluster variable '{var}' has missing ids")
        codes[var] = var_codes
        n_units[var] = len(uniques)

    by_level = {level: var for var, level in levels.items()}
    if 2 in by_level:
        level1 = np.bincount(codes[by_level[2]], minlength=n_units[by_level[2]])
    else:
        level1 = np.array([n_rows], dtype=np.intp)

    level2 = None
    level3 = None
    if 3 in by_level and 2 in by_level:
        pairs = pd.DataFrame({"l3": codes[by_level[3]], "l2": codes[by_level[2]]}).drop_duplicates()
        level2 = np.bincount(pairs["l3"].to_numpy(), minlength=n_units[by_level[3]])
        level3 = n_units[by_level[3]]

    sizes = SampleSizes(level1=level1, level2=level2, level3=level3)
    return ClusterStructure(n_rows=n_rows, codes=codes, n_units=n_units, sizes=sizes)


def expected_rows(sample_size: Optional[Dict[str, Any]]) -> Optional[int]:
    """Row count implied by a deterministic sample-size spec, ``None`` if random or absent."""
    if not sample_size:
        return None
    level1 = sample_size.get("level1")
    level2 = sample_size.get("level2")
    level3 = sample_size.get("level3")
    if isinstance(level1, dict) or isinstance(level2, dict):
        return None

    if isinstance(level2, (list, tuple, np.ndarray)):
        n_level2 = int(np.sum(level2))
    elif isinstance(level2, (int, np.integer)):
        n_level2 = int(level2) * (int(level3) if level3 is not None else 1)
    else:
        return None

    if isinstance(level1, (list, tuple, np.ndarray)):
        return int(np.sum(level1))
    if isinstance(level1, (int, np.integer)):
        return int(level1) * n_level2
    return None
