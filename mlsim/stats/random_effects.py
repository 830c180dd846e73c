"""
Random Effect Generator for MLSim.

Generates cluster-level random effects with:
- Any registered sampling distribution, standardised by theoretical or
  simulated moments
- Target variances and inter-effect correlations (Cholesky or eigen
  induction)
- Cross-classified effects broadcast onto sampled id membership
"""

import warnings
from functools import lru_cache
from math import comb
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..core.specs import DEFAULT_GENERATOR, DEFAULT_MOMENTS, GenerationSpec, SampleSizes
from ..errors import InvalidCorrelationSpecError, InvalidGenerationSpecError, NonPositiveSemiDefiniteCovarianceWarning
from .distributions import RandomSampler, get_sampler

# Moment simulation constants
MOMENT_SAMPLE_SIZE = 1_000_000
MOMENT_SEED = 999999
EIGEN_TOLERANCE = 1e-10


def _build_correlation_matrix(k: int, upper_triangular: Sequence[float]) -> np.ndarray:
    """Build a symmetric unit-diagonal ``(k, k)`` matrix from a row-major upper triangle.

    For ``k = 3`` the order is ``r12, r13, r23``.

    Raises:
        InvalidCorrelationSpecError: If the count is not ``choose(k, 2)`` or
            a value lies outside [-1, 1].
    """
    values = np.asarray(upper_triangular, dtype=float)
    expected = comb(k, 2)
    if values.size != expected:
        raise InvalidCorrelationSpecError(f"Expected {expected} correlations for {k} effects, got {values.size}")
    if np.any(~np.isfinite(values)) or np.any(np.abs(values) > 1):
        raise InvalidCorrelationSpecError(f"Correlations must lie in [-1, 1], got {values.tolist()}")

    c_mat = np.eye(k)
    rows, cols = np.triu_indices(k, 1)
    c_mat[rows, cols] = values
    c_mat[cols, rows] = values
    return c_mat


def _standardize(x: np.ndarray, mean: float, sd: float) -> np.ndarray:
    return (x - mean) / sd


def _cholesky_decomposition(cov: np.ndarray) -> np.ndarray:
    """Upper Cholesky factor, falling back to a symmetric square root for singular matrices."""
    try:
        return np.linalg.cholesky(cov).T
    except np.linalg.LinAlgError:
        eigenvals, eigenvecs = np.linalg.eigh(cov)
        eigenvals = np.maximum(eigenvals, 0.0)
        return (eigenvecs @ np.diag(np.sqrt(eigenvals))).T


def _spectral_factor(cov: np.ndarray) -> np.ndarray:
    """``eigenvectors @ diag(sqrt(clipped eigenvalues))`` of *cov*.

    Negative eigenvalues are clipped to zero; a
    ``NonPositiveSemiDefiniteCovarianceWarning`` is emitted when that
    changes the spectrum beyond round-off.
    """
    eigenvals, eigenvecs = np.linalg.eigh(cov)
    tol = EIGEN_TOLERANCE * max(1.0, float(np.max(np.abs(eigenvals))))
    if np.min(eigenvals) < -tol:
        warnings.warn(
            f"Random-effect covariance matrix is not positive semi-definite "
            f"(smallest eigenvalue {np.min(eigenvals):.4g}); negative eigenvalues clipped to 0.",
            NonPositiveSemiDefiniteCovarianceWarning,
            stacklevel=3,
        )
    return eigenvecs @ np.diag(np.sqrt(np.maximum(eigenvals, 0.0)))


@lru_cache(maxsize=64)
def _simulated_moments_cached(sampler: RandomSampler, extra_items: Tuple[Tuple[str, Any], ...]) -> Tuple[float, float]:
    return _simulate_moments(sampler, dict(extra_items))


def _simulate_moments(sampler: RandomSampler, extra_args: dict) -> Tuple[float, float]:
    """Estimate ``(mean, sd)`` of *sampler* from a large fixed-seed draw.

    The dedicated seed keeps the caller's stream untouched.
    """
    draws = sampler.sample(MOMENT_SAMPLE_SIZE, np.random.RandomState(MOMENT_SEED), **extra_args)
    return float(np.mean(draws)), float(np.std(draws, ddof=1))


def _resolve_moments(
    generator: Union[str, RandomSampler],
    theoretical_moments: Optional[Sequence[float]],
    simulate_moments: bool,
    extra_args: dict,
) -> Tuple[float, float]:
    """Moments used for standardisation: simulated, supplied, or ``(0, 1)``.

    Simulated moments are cached per sampler object, so a name registered
    again with a different sampler is simulated afresh.

    Raises:
        InvalidGenerationSpecError: If the standard deviation is not a
            positive finite number (e.g. a degenerate sampler).
    """
    if simulate_moments:
        sampler = get_sampler(generator)
        try:
            mean, sd = _simulated_moments_cached(sampler, tuple(sorted(extra_args.items())))
        except TypeError:
            # unhashable extra args
            mean, sd = _simulate_moments(sampler, extra_args)
    elif theoretical_moments is None:
        mean, sd = DEFAULT_MOMENTS
    else:
        mean, sd = theoretical_moments

    mean, sd = float(mean), float(sd)
    if not (np.isfinite(sd) and sd > 0):
        source = "Simulated" if simulate_moments else "Theoretical"
        raise InvalidGenerationSpecError(f"{source} standard deviation of generator {generator!r} must be positive, got {sd:.4g}")
    return mean, sd


def sim_rand_eff(
    random_var: Sequence[float],
    n: int,
    rand_gen: Union[str, RandomSampler] = DEFAULT_GENERATOR,
    ther: Optional[Sequence[float]] = DEFAULT_MOMENTS,
    ther_sim: bool = False,
    cor_vars: Optional[Sequence[float]] = None,
    random_state: Optional[np.random.RandomState] = None,
    **extra_args,
) -> np.ndarray:
    """Generate correlated random effects, one row per cluster unit.

    Algorithm:

    1. Resolve ``(mean, sd)``: simulated from a 1,000,000 draw when
       *ther_sim* is true, otherwise *ther*.
    2. Draw *n* values per effect from *rand_gen* and standardise each
       column with those moments.
    3. Without correlations, right-multiply by the Cholesky factor of
       ``diag(random_var)``, i.e. scale column ``j`` by
       ``sqrt(random_var[j])``. With correlations, build ``D R D`` with
       ``D = diag(sqrt(random_var))`` and transform through its
       eigenvectors times the square roots of the clipped eigenvalues.

    Args:
        random_var: Variance of each effect.
        n: Number of cluster units.
        rand_gen: Sampler or registry name.
        ther: Theoretical ``(mean, sd)`` of *rand_gen*.
        ther_sim: Simulate the moments instead of using *ther*.
        cor_vars: Row-major upper-triangular correlations between effects.
        random_state: ``RandomState`` for reproducibility. When ``None``,
            uses the global numpy random state.
        **extra_args: Parameters forwarded to the sampler.

    Returns:
        ``(n, len(random_var))`` array, columns in *random_var* order.

    Raises:
        InvalidCorrelationSpecError: If ``len(cor_vars) != choose(k, 2)``.
        InvalidGenerationSpecError: If the standardisation sd is not
            positive.
    """
    gen = random_state if random_state is not None else np.random
    random_var = np.asarray(random_var, dtype=float)
    k = random_var.size

    if cor_vars is not None and len(cor_vars) != comb(k, 2):
        raise InvalidCorrelationSpecError(f"Expected {comb(k, 2)} correlations for {k} effects, got {len(cor_vars)}")

    sampler = get_sampler(rand_gen)
    mean, sd = _resolve_moments(rand_gen, ther, ther_sim, extra_args)

    reff = np.column_stack([_standardize(sampler.sample(n, gen, **extra_args), mean, sd) for _ in range(k)]) if k else np.empty((n, 0))

    if cor_vars is None or k < 2:
        # Cholesky factor of a diagonal covariance
        return reff @ np.diag(np.sqrt(random_var))

    c_mat = _build_correlation_matrix(k, cor_vars)
    d_mat = np.diag(np.sqrt(random_var))
    cov = d_mat @ c_mat @ d_mat
    return reff @ _spectral_factor(cov).T


def generate_random_effects(spec: GenerationSpec, n: int, random_state: Optional[np.random.RandomState] = None) -> np.ndarray:
    """Run :func:`sim_rand_eff` with the parameters of *spec*."""
    return sim_rand_eff(
        spec.variances,
        n,
        rand_gen=spec.generator,
        ther=spec.theoretical_moments,
        ther_sim=spec.simulate_moments,
        cor_vars=spec.correlations,
        random_state=random_state,
        **spec.extra_args,
    )


def sim_cross(
    num_ids: int,
    variance: Optional[float] = None,
    dist: Union[str, RandomSampler] = DEFAULT_GENERATOR,
    ther_sim: bool = False,
    ther: Optional[Sequence[float]] = None,
    random_state: Optional[np.random.RandomState] = None,
    **extra_args,
) -> np.ndarray:
    """Draw one independent value per cross-classification id.

    Without *variance* the raw draws are returned. With it, draws are
    standardised (simulated moments, supplied *ther*, or left as is) and
    scaled by the Cholesky factor of the scalar variance.

    Returns:
        ``(num_ids, 1)`` array.
    """
    gen = random_state if random_state is not None else np.random
    sampler = get_sampler(dist)
    cont_var = sampler.sample(num_ids, gen, **extra_args).reshape(-1, 1)

    if variance is not None:
        if ther_sim or ther is not None:
            mean, sd = _resolve_moments(dist, ther, ther_sim, extra_args)
            cont_var = _standardize(cont_var, mean, sd)
        cont_var = cont_var @ _cholesky_decomposition(np.array([[float(variance)]]))

    return cont_var


def cross_class_sim(
    num_ids: int,
    samp_size: int,
    col_names: Sequence[str],
    spec: GenerationSpec,
    random_state: Optional[np.random.RandomState] = None,
) -> pd.DataFrame:
    """Generate cross-classified effects and broadcast them onto sampled membership.

    1. Sample *samp_size* ids uniformly with replacement from ``1..num_ids``.
    2. Generate one value per effect per id: :func:`sim_cross` for a single
       uncorrelated effect, :func:`sim_rand_eff` otherwise.
    3. Left-join the per-id values onto the membership draw (many-to-one,
       membership row order kept).

    Args:
        num_ids: Number of cross-classification ids.
        samp_size: Number of rows to produce.
        col_names: Output names, effect columns first then the id column.
        spec: Generation parameters of the cross-classified term.
        random_state: ``RandomState`` for reproducibility.

    Returns:
        DataFrame with *samp_size* rows and columns *col_names*.
    """
    gen = random_state if random_state is not None else np.random
    col_names = list(col_names)
    if len(col_names) != spec.n_effects + 1:
        raise InvalidGenerationSpecError(f"Expected {spec.n_effects + 1} column names (effects then id), got {len(col_names)}")

    cross_ids = pd.DataFrame({"id": gen.choice(np.arange(1, num_ids + 1), size=samp_size, replace=True)})

    if spec.n_effects == 1 and not spec.correlations:
        values = sim_cross(
            num_ids,
            variance=spec.variances[0],
            dist=spec.generator,
            ther_sim=spec.simulate_moments,
            ther=spec.theoretical_moments,
            random_state=gen,
            **spec.extra_args,
        )
    else:
        values = generate_random_effects(spec, num_ids, random_state=gen)

    effect_cols = [f"c{j + 1}" for j in range(spec.n_effects)]
    cross_rand_eff = pd.DataFrame(values, columns=effect_cols)
    cross_rand_eff["id"] = np.arange(1, num_ids + 1)

    cross_eff = cross_ids.merge(cross_rand_eff, on="id", how="left", validate="many_to_one")
    cross_eff = cross_eff[effect_cols + ["id"]]
    cross_eff.columns = col_names

    return cross_eff


def sim_variable(
    n: Union[int, SampleSizes],
    var_type: str = "continuous",
    spec: Optional[GenerationSpec] = None,
    var_level: int = 2,
    codes: Optional[np.ndarray] = None,
    random_state: Optional[np.random.RandomState] = None,
) -> np.ndarray:
    """Simulate a cluster-level variable and optionally broadcast it to rows.

    Args:
        n: Unit count, or resolved sample sizes (the count at *var_level*
            is used).
        var_type: Only ``"continuous"`` is supported for random effects.
        spec: Generation parameters.
        var_level: Level the variable lives at when *n* is ``SampleSizes``.
        codes: ``(n_rows,)`` 0-based unit index per row; when given, the
            per-unit draws are expanded to rows.
        random_state: ``RandomState`` for reproducibility.

    Returns:
        ``(n_units, k)`` draws, or ``(n_rows, k)`` when *codes* is given.
    """
    if var_type != "continuous":
        raise InvalidGenerationSpecError(f"Random effects must be continuous, got var_type='{var_type}'")
    if spec is None:
        raise InvalidGenerationSpecError("sim_variable requires a generation spec")

    n_units = n.n_units(var_level) if isinstance(n, SampleSizes) else int(n)
    draws = generate_random_effects(spec, n_units, random_state=random_state)

    if codes is None:
        return draws
    return draws[np.asarray(codes, dtype=np.intp)]


def effect_column_names(spec: GenerationSpec, effect_names: List[str], cluster_id_var: str) -> List[str]:
    """Output column names: the spec's override or ``<effect>_<cluster>`` (``int`` for ``1``)."""
    if spec.column_names is not None:
        return list(spec.column_names)
    labels = ["int" if e.strip() == "1" else e.replace(" ", "") for e in effect_names]
    return [f"{label}_{cluster_id_var}" for label in labels]
