"""
Validation utilities for MLSim.

This module provides validation functions for random-effect generation
specs, correlations, sample sizes and run settings.
"""

from dataclasses import dataclass
from math import comb
from typing import Any, Dict, List, Optional, Tuple, Type, Union

import numpy as np

from ..core.specs import DEFAULT_GENERATOR, DEFAULT_MOMENTS, GenerationSpec, RandomEffectTermSpec
from ..errors import InvalidCorrelationSpecError, InvalidGenerationSpecError, InvalidSampleSizeError
from .parsers import parse_correlations

__all__ = []

_GENERATION_KEYS = {
    "variances",
    "generator",
    "theoretical_moments",
    "simulate_moments",
    "correlations",
    "cross_class",
    "num_ids",
    "var_level",
    "column_names",
    "extra_args",
}

_SIZE_KEYS = {"level1", "level2", "level3"}
_RANDOM_SIZE_KEYS = {"mean", "sd", "min", "max"}


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self, error_cls: Type[Exception] = ValueError):
        """Raise *error_cls* if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise error_cls(error_msg)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if isinstance(value, bool) and bool not in expected_types:
            return f"{name} must be {expected_types[0].__name__}, got bool"
        if not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()

_NUMBER = (int, float, np.integer, np.floating)


def _validate_correlations(correlations: Optional[List[float]], n_effects: int) -> _ValidationResult:
    """Check correlation count against ``choose(n_effects, 2)`` and values against [-1, 1]."""
    if correlations is None:
        return _ValidationResult(True, [], [])

    errors = []
    expected = comb(n_effects, 2)
    if len(correlations) != expected:
        errors.append(f"Expected {expected} correlations for {n_effects} effects, got {len(correlations)}")

    for i, value in enumerate(correlations):
        if not np.isfinite(value):
            errors.append(f"Correlation {i + 1} is not finite")
        elif not -1 <= value <= 1:
            errors.append(f"Correlation {i + 1} must be between -1 and 1, got {value}")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_generation_spec(
    raw: Any,
    term: RandomEffectTermSpec,
    name: str = "",
) -> GenerationSpec:
    """Validate one random-effect parameter bundle against its term.

    Args:
        raw: Mapping of generation options, or an existing ``GenerationSpec``.
        term: The parsed term the bundle belongs to.
        name: Label used in error messages.

    Returns:
        A normalised :class:`GenerationSpec`.

    Raises:
        InvalidCorrelationSpecError: For correlation count or range errors.
        InvalidGenerationSpecError: For any other problem.
    """
    from ..stats.distributions import get_sampler

    label = name or term.cluster_id_var

    if isinstance(raw, GenerationSpec):
        raw = {k: getattr(raw, k) for k in _GENERATION_KEYS}
    if not isinstance(raw, dict):
        raise InvalidGenerationSpecError(f"Random effect '{label}' must be a mapping of options, got {type(raw).__name__}")

    errors: List[str] = []

    unknown = set(raw) - _GENERATION_KEYS
    if unknown:
        errors.append(f"Unknown options {sorted(unknown)}. Valid: {', '.join(sorted(_GENERATION_KEYS))}")

    # Variances
    variances = raw.get("variances")
    if variances is None:
        errors.append("'variances' is required")
        variances = []
    else:
        if isinstance(variances, _NUMBER):
            variances = [variances]
        variances = list(variances)
        for i, v in enumerate(variances):
            type_error = _validator._check_type(v, _NUMBER, f"Variance {i + 1}")
            if type_error:
                errors.append(type_error)
            elif not np.isfinite(v) or v < 0:
                errors.append(f"Variance {i + 1} must be a finite non-negative number, got {v}")
        if len(variances) != term.n_effects:
            errors.append(
                f"{len(variances)} variances supplied for {term.n_effects} effects ({', '.join(term.effect_names)}) of group '{term.cluster_id_var}'"
            )

    # Generator
    generator = raw.get("generator", DEFAULT_GENERATOR)
    if generator is None:
        errors.append("'generator' is required")
    else:
        try:
            get_sampler(generator)
        except InvalidGenerationSpecError as e:
            errors.append(str(e))

    # Standardisation moments
    moments = raw.get("theoretical_moments")
    if moments is None:
        moments = DEFAULT_MOMENTS
    else:
        try:
            moments = tuple(float(m) for m in moments)
        except (TypeError, ValueError):
            moments = ()
        if len(moments) != 2:
            errors.append("'theoretical_moments' must be a (mean, sd) pair")
            moments = DEFAULT_MOMENTS
        elif not moments[1] > 0:
            errors.append(f"Theoretical standard deviation must be positive, got {moments[1]}")

    simulate_moments = raw.get("simulate_moments", False)
    if not isinstance(simulate_moments, (bool, np.bool_)):
        errors.append(f"'simulate_moments' must be True or False, got {simulate_moments!r}")

    # Cross-classification
    cross_class = raw.get("cross_class")
    crossed = cross_class is not None and cross_class is not False
    num_ids = raw.get("num_ids")
    if crossed:
        if num_ids is None:
            errors.append("'num_ids' is required for a cross-classified random effect")
        else:
            type_error = _validator._check_type(num_ids, (int, np.integer), "num_ids")
            errors.extend([type_error] if type_error else [])
            if not type_error:
                range_error = _validator._check_range(num_ids, 1, None, "num_ids")
                errors.extend([range_error] if range_error else [])

    var_level = raw.get("var_level")
    if var_level is not None and not crossed:
        type_error = _validator._check_type(var_level, (int, np.integer), "var_level")
        if type_error:
            errors.append(type_error)
        elif var_level not in (2, 3):
            errors.append(f"var_level must be 2 or 3, got {var_level}")

    column_names = raw.get("column_names")
    if column_names is not None:
        column_names = [column_names] if isinstance(column_names, str) else list(column_names)
        if len(column_names) != term.n_effects:
            errors.append(f"{len(column_names)} column names supplied for {term.n_effects} effects")

    extra_args = raw.get("extra_args") or {}
    if not isinstance(extra_args, dict):
        errors.append(f"'extra_args' must be a mapping, got {type(extra_args).__name__}")
        extra_args = {}

    result = _ValidationResult(len(errors) == 0, errors, [])
    if not result.is_valid:
        result.errors = [f"random effect '{label}': {err}" for err in errors]
        result.raise_if_invalid(InvalidGenerationSpecError)

    correlations = parse_correlations(raw.get("correlations"), term.effect_names)
    corr_result = _validate_correlations(correlations, term.n_effects)
    corr_result.errors = [f"random effect '{label}': {err}" for err in corr_result.errors]
    corr_result.raise_if_invalid(InvalidCorrelationSpecError)

    return GenerationSpec(
        variances=[float(v) for v in variances],
        generator=generator,
        theoretical_moments=moments,
        simulate_moments=bool(simulate_moments),
        correlations=correlations,
        cross_class=cross_class,
        num_ids=int(num_ids) if crossed else None,
        var_level=None if crossed or var_level is None else int(var_level),
        column_names=column_names,
        extra_args=dict(extra_args),
        name=label,
    )


def _validate_size_entry(value: Any, name: str) -> List[str]:
    """Validate one level of a sample-size spec (int, sequence or random mapping)."""
    errors = []

    if isinstance(value, dict):
        unknown = set(value) - _RANDOM_SIZE_KEYS
        if unknown:
            errors.append(f"{name}: unknown keys {sorted(unknown)}. Valid: {', '.join(sorted(_RANDOM_SIZE_KEYS))}")
        for key in ("mean", "sd"):
            if key not in value:
                errors.append(f"{name}: random size requires '{key}'")
            else:
                type_error = _validator._check_type(value[key], _NUMBER, f"{name}['{key}']")
                if type_error:
                    errors.append(type_error)
        if not errors:
            if value["sd"] < 0:
                errors.append(f"{name}['sd'] must be >= 0, got {value['sd']}")
            lo = value.get("min", 1)
            hi = value.get("max")
            if lo < 1:
                errors.append(f"{name}['min'] must be >= 1, got {lo}")
            if hi is not None and hi < lo:
                errors.append(f"{name}['max'] ({hi}) must be >= min ({lo})")
        return errors

    if isinstance(value, (list, tuple, np.ndarray)):
        if len(value) == 0:
            errors.append(f"{name} must not be empty")
        for i, v in enumerate(value):
            type_error = _validator._check_type(v, (int, np.integer), f"{name}[{i}]")
            if type_error:
                errors.append(type_error)
            elif v < 1:
                errors.append(f"{name}[{i}] must be >= 1, got {v}")
        return errors

    type_error = _validator._check_type(value, (int, np.integer), name)
    if type_error:
        return [type_error]
    range_error = _validator._check_range(value, 1, None, name)
    return [range_error] if range_error else []


def _validate_sample_size(sample_size: Any) -> _ValidationResult:
    """Validate a ``{level1, level2[, level3]}`` sample-size specification."""
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(sample_size, dict):
        return _ValidationResult(False, [f"sample_size must be a mapping, got {type(sample_size).__name__}"], [])

    unknown = set(sample_size) - _SIZE_KEYS
    if unknown:
        errors.append(f"Unknown sample_size keys {sorted(unknown)}. Valid: level1, level2, level3")

    for key in ("level1", "level2"):
        if sample_size.get(key) is None:
            errors.append(f"sample_size requires '{key}'")
        else:
            errors.extend(_validate_size_entry(sample_size[key], key))

    level3 = sample_size.get("level3")
    if level3 is not None:
        type_error = _validator._check_type(level3, (int, np.integer), "level3")
        if type_error:
            errors.append(type_error)
        elif level3 < 1:
            errors.append(f"level3 must be >= 1, got {level3}")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_sample_size_or_raise(sample_size: Any) -> None:
    _validate_sample_size(sample_size).raise_if_invalid(InvalidSampleSizeError)


def _validate_replicates(n_replicates: Any) -> _ValidationResult:
    """Validate the number of replicates."""
    errors = []
    type_error = _validator._check_type(n_replicates, (int, np.integer), "n_replicates")
    if type_error:
        errors.append(type_error)
    elif n_replicates < 1:
        errors.append(f"n_replicates must be >= 1, got {n_replicates}")
    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_parallel_settings(n_jobs: Any) -> Tuple[int, _ValidationResult]:
    """Validate the number of parallel workers.

    Args:
        n_jobs: Positive int, or -1 for all cores.

    Returns:
        (n_jobs, ValidationResult)
    """
    import multiprocessing as mp

    errors = []
    max_cores = mp.cpu_count()

    if n_jobs == -1:
        return max_cores, _ValidationResult(True, [], [])

    if isinstance(n_jobs, bool) or not isinstance(n_jobs, (int, np.integer)) or n_jobs <= 0:
        errors.append(f"n_jobs must be a positive integer or -1, got {n_jobs!r}")
        return 1, _ValidationResult(False, errors, [])

    return min(int(n_jobs), max_cores), _ValidationResult(True, [], [])


def _validate_sim_args(sim_args: Any) -> Dict[str, Any]:
    """Check the top-level shape of simulation arguments."""
    if not isinstance(sim_args, dict):
        raise InvalidGenerationSpecError(f"sim_args must be a mapping, got {type(sim_args).__name__}")
    randomeffect = sim_args.get("randomeffect")
    if not isinstance(randomeffect, dict) or not randomeffect:
        raise InvalidGenerationSpecError("sim_args['randomeffect'] must be a non-empty mapping of random-effect specifications")
    return sim_args
