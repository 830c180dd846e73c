"""
Tests for the MLSim model class.
"""

import pandas as pd
import pytest

from tests.config import SEED


@pytest.fixture
def school_sim():
    from mlsim import MLSim

    sim = MLSim("y ~ x1 + (1 + x1 | school) + (1 | neighborhood)")
    sim.set_sample_size(level1=10, level2=30)
    sim.set_random_effect("school", variances=[8, 2], correlations=[0.3])
    sim.set_random_effect("neighborhood", variances=4, cross_class=True, num_ids=12)
    return sim


class TestMLSimInit:
    """Test MLSim initialization."""

    def test_formula_parts(self):
        from mlsim import MLSim

        sim = MLSim(" y ~ x1 + (1 + x1 | school) ")
        assert sim.equation == "y ~ x1 + (1 + x1 | school)"
        assert sim.outcome == "y"
        assert sim.fixed_formula == "~ x1"
        assert sim.cluster_vars == ["school"]

    def test_default_values(self):
        from mlsim import MLSim

        sim = MLSim("y ~ (1 | g)")
        assert sim.seed == 2137
        assert sim.n_jobs == 1

    def test_requires_random_terms(self):
        from mlsim import MalformedFormulaError, MLSim

        with pytest.raises(MalformedFormulaError):
            MLSim("y ~ x1 + x2")

    def test_malformed_term(self):
        from mlsim import MalformedTermError, MLSim

        with pytest.raises(MalformedTermError):
            MLSim("y ~ x1 + (1 g1)")


class TestMLSimConfiguration:
    """Test chainable setters."""

    def test_chaining(self):
        from mlsim import MLSim

        sim = MLSim("y ~ (1 | g)")
        result = sim.set_sample_size(level1=5, level2=10).set_random_effect("g", variances=1).set_seed(7)
        assert result is sim
        assert sim.seed == 7

    def test_sim_args(self, school_sim):
        args = school_sim.sim_args
        assert args["formula"] == "y ~ x1 + (1 + x1 | school) + (1 | neighborhood)"
        assert args["sample_size"] == {"level1": 10, "level2": 30}
        assert list(args["randomeffect"]) == ["school", "neighborhood"]
        assert args["randomeffect"]["neighborhood"]["num_ids"] == 12

    def test_sim_args_follow_formula_order(self):
        from mlsim import MLSim

        sim = MLSim("y ~ (1 | a) + (1 | b)")
        sim.set_random_effect("b", variances=2)
        sim.set_random_effect("a", variances=1)
        assert list(sim.sim_args["randomeffect"]) == ["a", "b"]

    def test_missing_random_effect(self):
        from mlsim import InvalidGenerationSpecError, MLSim

        sim = MLSim("y ~ (1 | a) + (1 | b)")
        sim.set_random_effect("a", variances=1)
        with pytest.raises(InvalidGenerationSpecError, match="not set for: b"):
            sim.sim_args

    def test_unknown_cluster(self):
        from mlsim import InvalidGenerationSpecError, MLSim

        sim = MLSim("y ~ (1 | a)")
        with pytest.raises(InvalidGenerationSpecError, match="not a grouping variable"):
            sim.set_random_effect("z", variances=1)

    def test_repeated_cluster_requires_term(self):
        from mlsim import InvalidGenerationSpecError, MLSim

        sim = MLSim("y ~ x1 + (1 | school) + (x1 | school)")
        with pytest.raises(InvalidGenerationSpecError, match="pass term="):
            sim.set_random_effect("school", variances=1)

        sim.set_random_effect("school", variances=1, term=1)
        sim.set_random_effect("school", variances=1, term=2)
        assert list(sim.sim_args["randomeffect"]) == ["school_1", "school_2"]

    def test_term_must_match_cluster(self):
        from mlsim import InvalidGenerationSpecError, MLSim

        sim = MLSim("y ~ (1 | a) + (1 | b)")
        with pytest.raises(InvalidGenerationSpecError, match="not grouped by 'a'"):
            sim.set_random_effect("a", variances=1, term=2)

    def test_invalid_sample_size(self):
        from mlsim import InvalidSampleSizeError, MLSim

        sim = MLSim("y ~ (1 | g)")
        with pytest.raises(InvalidSampleSizeError):
            sim.set_sample_size(level1=0, level2=10)

    @pytest.mark.parametrize("seed", [-1, 1.5, True])
    def test_invalid_seed(self, seed):
        from mlsim import MLSim

        with pytest.raises(ValueError, match="seed"):
            MLSim("y ~ (1 | g)").set_seed(seed)

    def test_seed_none(self):
        from mlsim import MLSim

        assert MLSim("y ~ (1 | g)").set_seed(None).seed is None

    def test_set_parallel(self):
        from mlsim import MLSim

        sim = MLSim("y ~ (1 | g)")
        sim.set_parallel(n_jobs=1)
        assert sim.n_jobs == 1
        sim.set_parallel(enable=False)
        assert sim.n_jobs == 1
        sim.set_parallel()
        assert sim.n_jobs >= 1

    def test_set_parallel_invalid(self):
        from mlsim import MLSim

        with pytest.raises(ValueError, match="n_jobs"):
            MLSim("y ~ (1 | g)").set_parallel(n_jobs=0)


class TestMLSimSimulate:
    """Test simulation through the model class."""

    def test_simulate(self, school_sim):
        data = school_sim.simulate()
        assert list(data.columns) == [
            "int_school",
            "x1_school",
            "int_neighborhood",
            "neighborhood",
            "level1_id",
            "school",
        ]
        assert len(data) == 300

    def test_simulate_matches_function(self, school_sim):
        from mlsim import simulate_randomeffect

        expected = simulate_randomeffect(None, school_sim.sim_args, seed=school_sim.seed)
        pd.testing.assert_frame_equal(school_sim.simulate(), expected)

    def test_simulate_reproducible(self, school_sim):
        school_sim.set_seed(SEED)
        pd.testing.assert_frame_equal(school_sim.simulate(), school_sim.simulate())

    def test_simulate_existing_data(self, existing_data):
        from mlsim import MLSim

        sim = MLSim("y ~ x1 + (1 + x1 | school)").set_random_effect("school", variances=[1, 0.5])
        data = sim.simulate(existing_data)
        assert list(data.columns) == ["school", "x1", "int_school", "x1_school"]

    def test_simulate_replicates(self, school_sim):
        datasets = school_sim.simulate_replicates(3)
        assert len(datasets) == 3

    def test_simulate_replicates_combined(self, school_sim):
        combined = school_sim.simulate_replicates(2, combine=True)
        assert len(combined) == 600
        assert set(combined["replicate"]) == {1, 2}
