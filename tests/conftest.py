"""
Shared pytest fixtures for MLSim tests.
"""

import numpy as np
import pandas as pd
import pytest

from tests.config import SEED

# Set random seed for reproducible tests
np.random.seed(42)


@pytest.fixture
def rng():
    """Fresh RandomState with the shared test seed."""
    return np.random.RandomState(SEED)


@pytest.fixture
def nested_args():
    """Two-level design with a correlated random intercept and slope."""
    return {
        "formula": "y ~ x1 + (1 + x1 | school)",
        "sample_size": {"level1": 10, "level2": 30},
        "randomeffect": {
            "school": {"variances": [8, 2], "correlations": [0.3]},
        },
    }


@pytest.fixture
def crossed_args():
    """Nested school intercept plus a cross-classified neighborhood intercept."""
    return {
        "formula": "y ~ x1 + (1 | school) + (1 | neighborhood)",
        "sample_size": {"level1": 20, "level2": 25},
        "randomeffect": {
            "school": {"variances": 4},
            "neighborhood": {"variances": 2, "cross_class": True, "num_ids": 5},
        },
    }


@pytest.fixture
def three_level_args():
    """Students in classrooms in schools."""
    return {
        "formula": "y ~ 1 + (1 | classroom) + (1 | school)",
        "sample_size": {"level1": 5, "level2": 4, "level3": 6},
        "randomeffect": {
            "classroom": {"variances": 1},
            "school": {"variances": 3},
        },
    }


@pytest.fixture
def existing_data():
    """Existing dataset with shuffled (non-contiguous) school ids."""
    gen = np.random.RandomState(123)
    school = np.repeat(np.arange(1, 13), 8)
    gen.shuffle(school)
    return pd.DataFrame(
        {
            "school": school,
            "x1": gen.normal(size=len(school)),
        },
        index=pd.RangeIndex(100, 100 + len(school)),
    )
