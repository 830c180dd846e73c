"""Random samplers for MLSim.

Random-effect draws come from samplers resolved by name through a registry,
so generation specs can name a distribution (``"normal"``, ``"t"``, ...)
the way a formula names a variable.

Built-in samplers wrap ``scipy.stats`` distributions and take scipy's
parameter names (``loc``, ``scale``, ``df``, ``s``, ``a``). R-style aliases
(``rnorm``, ``rchisq``, ...) resolve to the same samplers.

Usage:
    from mlsim.stats.distributions import get_sampler
    draws = get_sampler("t").sample(100, np.random.RandomState(1), df=5)
"""

from typing import Any, Dict, Protocol, Tuple, Union, runtime_checkable

import numpy as np
from scipy import stats

from ..errors import InvalidGenerationSpecError

__all__ = [
    "RandomSampler",
    "ScipySampler",
    "register_sampler",
    "get_sampler",
    "available_samplers",
]


@runtime_checkable
class RandomSampler(Protocol):
    """Protocol defining the sampler interface.

    ``moments`` is optional; samplers without it can only be standardised
    with supplied or simulated moments.
    """

    def sample(self, n: int, random_state: Any, **params: Any) -> np.ndarray:
        """Draw *n* values.

        Args:
            n: Number of draws.
            random_state: ``np.random.RandomState`` (or the ``np.random``
                module) providing the stream.
            **params: Distribution parameters.

        Returns:
            1-D array of length ``n``.
        """
        ...


class ScipySampler:
    """Sampler backed by a ``scipy.stats`` continuous distribution.

    Args:
        dist: A ``scipy.stats`` distribution object (e.g. ``stats.norm``).
        defaults: Parameter defaults applied before user parameters
            (e.g. ``{"df": 1}`` for chi-square).
    """

    def __init__(self, dist, defaults: Dict[str, Any] = None):
        self.dist = dist
        self.defaults = dict(defaults or {})

    def _params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(self.defaults)
        merged.update(params)
        return merged

    def sample(self, n: int, random_state: Any, **params: Any) -> np.ndarray:
        rs = None if random_state is np.random else random_state
        try:
            draws = self.dist.rvs(size=n, random_state=rs, **self._params(params))
        except (TypeError, ValueError) as e:
            raise InvalidGenerationSpecError(f"Invalid parameters for {self.dist.name} sampler: {e}") from e
        return np.asarray(draws, dtype=float)

    def moments(self, **params: Any) -> Tuple[float, float]:
        """Theoretical ``(mean, sd)`` for the given parameters."""
        mean, var = self.dist.stats(moments="mv", **self._params(params))
        return float(mean), float(np.sqrt(var))

    def __repr__(self) -> str:
        return f"ScipySampler({self.dist.name})"


_REGISTRY: Dict[str, RandomSampler] = {}


def register_sampler(name: str, sampler: RandomSampler, *aliases: str) -> None:
    """Register *sampler* under *name* and any *aliases*.

    Raises:
        TypeError: If *sampler* has no ``sample`` method.
    """
    if not isinstance(sampler, RandomSampler):
        raise TypeError(f"Sampler for '{name}' must implement sample(n, random_state, **params)")
    for key in (name, *aliases):
        _REGISTRY[key.lower().strip()] = sampler


def get_sampler(generator: Union[str, RandomSampler]) -> RandomSampler:
    """Resolve a registry name or pass a sampler instance through.

    Raises:
        InvalidGenerationSpecError: If the name is not registered.
    """
    if isinstance(generator, str):
        key = generator.lower().strip()
        if key not in _REGISTRY:
            raise InvalidGenerationSpecError(f"Unknown generator '{generator}'. Available: {', '.join(available_samplers())}")
        return _REGISTRY[key]
    if isinstance(generator, RandomSampler):
        return generator
    raise InvalidGenerationSpecError(f"generator must be a registered name or a sampler, got {type(generator).__name__}")


def available_samplers():
    """Sorted names (including aliases) of all registered samplers."""
    return sorted(_REGISTRY)


register_sampler("normal", ScipySampler(stats.norm), "rnorm", "norm")
register_sampler("t", ScipySampler(stats.t, {"df": 3}), "rt")
register_sampler("chisquare", ScipySampler(stats.chi2, {"df": 1}), "rchisq", "chi2")
register_sampler("laplace", ScipySampler(stats.laplace), "rlaplace")
register_sampler("uniform", ScipySampler(stats.uniform), "runif")
register_sampler("gamma", ScipySampler(stats.gamma, {"a": 1.0}), "rgamma")
register_sampler("lognormal", ScipySampler(stats.lognorm, {"s": 1.0}), "rlnorm")
register_sampler("exponential", ScipySampler(stats.expon), "rexp")
