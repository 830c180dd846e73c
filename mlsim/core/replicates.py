"""
Replicate driver for MLSim.

Runs the random-effect step many times with independent random streams.
A replicate is the unit of parallelism: the step itself is sequential, and
replicates share no state, so they are distributed whole across workers
and collected in order.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..progress import ProgressReporter
from ..utils.parsers import expand_vary_arguments
from ..utils.validators import _validate_parallel_settings, _validate_replicates
from .simulation import RandomEffectPlan, generate_randomeffect, prepare_randomeffect


def replicate_seeds(seed: Optional[int], n_replicates: int) -> List[np.random.SeedSequence]:
    """Independent child seed sequences, one per replicate."""
    return np.random.SeedSequence(seed).spawn(n_replicates)


def _run_replicate(plan: RandomEffectPlan, data: Optional[pd.DataFrame], seed_seq: np.random.SeedSequence) -> pd.DataFrame:
    random_state = np.random.RandomState(np.random.MT19937(seed_seq))
    return generate_randomeffect(plan, data, random_state=random_state)


def _run_plan(
    plan: RandomEffectPlan,
    data: Optional[pd.DataFrame],
    seeds: Sequence[np.random.SeedSequence],
    n_jobs: int,
    progress: ProgressReporter,
) -> List[pd.DataFrame]:
    datasets = []

    if n_jobs > 1:
        from joblib import Parallel, delayed

        results = Parallel(
            n_jobs=n_jobs,
            backend="loky",
            verbose=0,
            return_as="generator",
        )(delayed(_run_replicate)(plan, data, s) for s in seeds)
        for dataset in results:
            progress.check_cancelled()
            datasets.append(dataset)
            progress.replicate_done()
    else:
        for s in seeds:
            progress.check_cancelled()
            datasets.append(_run_replicate(plan, data, s))
            progress.replicate_done()

    return datasets


def simulate_replicates(
    sim_args: Dict[str, Any],
    n_replicates: int,
    seed: Optional[int] = None,
    n_jobs: int = 1,
    data: Optional[pd.DataFrame] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> List[pd.DataFrame]:
    """Simulate *n_replicates* independent datasets.

    The arguments are parsed and validated once, before any replicate
    runs. Each replicate draws from its own stream spawned from *seed*, so
    results are identical for any *n_jobs*.

    Args:
        sim_args: Simulation arguments (see ``simulate_randomeffect``).
        n_replicates: Number of datasets to generate.
        seed: Root seed; ``None`` draws fresh entropy.
        n_jobs: Worker processes (joblib, ``loky`` backend); ``-1`` for all
            cores.
        data: Existing dataset every replicate extends.
        progress_callback: ``callback(completed, total)``.
        cancel_check: Called before each replicate; returning ``True``
            raises ``SimulationCancelled`` carrying the completed count.

    Returns:
        List of DataFrames in replicate order.
    """
    _validate_replicates(n_replicates).raise_if_invalid()
    n_jobs, result = _validate_parallel_settings(n_jobs)
    result.raise_if_invalid()

    plan = prepare_randomeffect(sim_args)

    progress = ProgressReporter(n_replicates, progress_callback, cancel_check=cancel_check)
    progress.start()
    datasets = _run_plan(plan, data, replicate_seeds(seed, n_replicates), n_jobs, progress)
    progress.finish()
    return datasets


def simulate_conditions(
    sim_args: Dict[str, Any],
    n_replicates: int,
    vary_arguments: Optional[Dict[str, Sequence[Any]]] = None,
    seed: Optional[int] = None,
    n_jobs: int = 1,
    data: Optional[pd.DataFrame] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> List[Tuple[Dict[str, Any], List[pd.DataFrame]]]:
    """Run :func:`simulate_replicates` for every condition of a varying-arguments grid.

    All conditions are validated before the first replicate runs. Progress
    counts replicates across the whole grid, and a cancellation reports
    the condition it interrupted.

    Returns:
        ``[(condition_sim_args, datasets), ...]`` in grid order.
    """
    _validate_replicates(n_replicates).raise_if_invalid()
    n_jobs, result = _validate_parallel_settings(n_jobs)
    result.raise_if_invalid()

    conditions = expand_vary_arguments(sim_args, vary_arguments)
    plans = [prepare_randomeffect(condition) for condition in conditions]
    condition_seeds = np.random.SeedSequence(seed).spawn(len(conditions))

    progress = ProgressReporter(n_replicates, progress_callback, n_conditions=len(conditions), cancel_check=cancel_check)
    progress.start()

    results = []
    for condition, plan, condition_seed in zip(conditions, plans, condition_seeds):
        datasets = _run_plan(plan, data, condition_seed.spawn(n_replicates), n_jobs, progress)
        results.append((condition, datasets))

    progress.finish()
    return results


def combine_replicates(datasets: Sequence[pd.DataFrame], key: str = "replicate") -> pd.DataFrame:
    """Concatenate replicate datasets, adding a 1-based *key* column."""
    if not datasets:
        return pd.DataFrame()
    return pd.concat([d.assign(**{key: i + 1}) for i, d in enumerate(datasets)], ignore_index=True)
