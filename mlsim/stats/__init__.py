"""Statistical building blocks: samplers, random-effect generation and cluster structure."""

from . import distributions, random_effects, structure

__all__ = [
    "distributions",
    "random_effects",
    "structure",
]
