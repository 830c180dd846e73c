"""
End-to-end tests for simulate_randomeffect.
"""

import numpy as np
import pandas as pd
import pytest

from mlsim import simulate_randomeffect
from mlsim.core.simulation import prepare_randomeffect
from mlsim.errors import (
    DatasetAlignmentError,
    InvalidCorrelationSpecError,
    InvalidGenerationSpecError,
    InvalidSampleSizeError,
    MalformedFormulaError,
    MalformedTermError,
    NonPositiveSemiDefiniteCovarianceWarning,
)
from tests.config import SEED, VARIANCE_REL_TOL


class TestFreshDataset:
    """Simulating without existing data."""

    def test_columns_and_rows(self, nested_args):
        data = simulate_randomeffect(None, nested_args, seed=SEED)
        assert list(data.columns) == ["int_school", "x1_school", "level1_id", "school"]
        assert len(data) == 300
        assert data["school"].nunique() == 30
        np.testing.assert_array_equal(data["level1_id"], np.arange(1, 301))

    def test_constant_within_cluster(self, nested_args):
        data = simulate_randomeffect(None, nested_args, seed=SEED)
        per_school = data.groupby("school")[["int_school", "x1_school"]].nunique()
        assert (per_school == 1).all().all()

    def test_deterministic_with_seed(self, nested_args):
        a = simulate_randomeffect(None, nested_args, seed=SEED)
        b = simulate_randomeffect(None, nested_args, seed=SEED)
        pd.testing.assert_frame_equal(a, b)

    def test_seed_changes_draws(self, nested_args):
        a = simulate_randomeffect(None, nested_args, seed=1)
        b = simulate_randomeffect(None, nested_args, seed=2)
        assert not np.allclose(a["int_school"], b["int_school"])

    def test_random_state_matches_seed(self, nested_args):
        a = simulate_randomeffect(None, nested_args, seed=3)
        b = simulate_randomeffect(None, nested_args, random_state=np.random.RandomState(3))
        pd.testing.assert_frame_equal(a, b)

    def test_global_state(self, nested_args):
        np.random.seed(5)
        a = simulate_randomeffect(None, nested_args)
        np.random.seed(5)
        b = simulate_randomeffect(None, nested_args)
        pd.testing.assert_frame_equal(a, b)

    def test_cluster_variance_recovery(self):
        sim_args = {
            "formula": "y ~ (1 | school)",
            "sample_size": {"level1": 1, "level2": 20000},
            "randomeffect": {"school": {"variances": 8}},
        }
        data = simulate_randomeffect(None, sim_args, seed=SEED)
        assert data["int_school"].var() == pytest.approx(8, rel=VARIANCE_REL_TOL)

    def test_column_name_override(self, nested_args):
        nested_args["randomeffect"]["school"]["column_names"] = ["u0", "u1"]
        data = simulate_randomeffect(None, nested_args, seed=SEED)
        assert list(data.columns) == ["u0", "u1", "level1_id", "school"]

    def test_unbalanced_sizes(self):
        sim_args = {
            "formula": "y ~ x1 + (1 | school)",
            "sample_size": {"level1": [2, 5, 3], "level2": 3},
            "randomeffect": {"school": {"variances": 1}},
        }
        data = simulate_randomeffect(None, sim_args, seed=SEED)
        assert data.groupby("school").size().tolist() == [2, 5, 3]

    def test_non_normal_generator(self):
        sim_args = {
            "formula": "y ~ (1 | g)",
            "sample_size": {"level1": 2, "level2": 50},
            "randomeffect": {"g": {"variances": 2, "generator": "rchisq", "simulate_moments": True, "extra_args": {"df": 3}}},
        }
        data = simulate_randomeffect(None, sim_args, seed=SEED)
        assert np.all(np.isfinite(data["int_g"]))


class TestThreeLevels:
    """Students in classrooms in schools."""

    def test_ids_nested(self, three_level_args):
        data = simulate_randomeffect(None, three_level_args, seed=SEED)
        assert list(data.columns) == ["int_classroom", "int_school", "level1_id", "classroom", "school"]
        assert len(data) == 120
        assert data["classroom"].nunique() == 24
        assert data["school"].nunique() == 6
        assert (data.groupby("classroom")["school"].nunique() == 1).all()

    def test_effects_constant_at_their_level(self, three_level_args):
        data = simulate_randomeffect(None, three_level_args, seed=SEED)
        assert (data.groupby("school")["int_school"].nunique() == 1).all()
        assert (data.groupby("classroom")["int_classroom"].nunique() == 1).all()
        assert data["int_school"].nunique() == 6

    def test_explicit_levels(self, three_level_args):
        three_level_args["formula"] = "y ~ 1 + (1 | school) + (1 | classroom)"
        three_level_args["randomeffect"] = {
            "school": {"variances": 3, "var_level": 3},
            "classroom": {"variances": 1},
        }
        data = simulate_randomeffect(None, three_level_args, seed=SEED)
        assert data["school"].nunique() == 6
        assert data["classroom"].nunique() == 24


class TestCrossClassified:
    """Cross-classified effects on sampled membership."""

    def test_columns(self, crossed_args):
        data = simulate_randomeffect(None, crossed_args, seed=SEED)
        assert list(data.columns) == ["int_school", "int_neighborhood", "neighborhood", "level1_id", "school"]
        assert len(data) == 500

    def test_broadcast(self, crossed_args):
        crossed_args["sample_size"] = {"level1": 10, "level2": 100}
        data = simulate_randomeffect(None, crossed_args, seed=SEED)
        assert set(data["neighborhood"]) == set(range(1, 6))
        per_id = data.groupby("neighborhood")["int_neighborhood"]
        assert (per_id.nunique() == 1).all()
        assert data["int_neighborhood"].nunique() == 5

    def test_crossed_not_nested_in_school(self, crossed_args):
        data = simulate_randomeffect(None, crossed_args, seed=SEED)
        assert (data.groupby("school")["neighborhood"].nunique() > 1).any()

    def test_only_cross_classified_term(self):
        sim_args = {
            "formula": "y ~ (1 | item)",
            "sample_size": {"level1": 10, "level2": 10},
            "randomeffect": {"item": {"variances": 1, "cross_class": "crossed", "num_ids": 7}},
        }
        data = simulate_randomeffect(None, sim_args, seed=SEED)
        assert list(data.columns) == ["int_item", "item", "level1_id"]
        assert len(data) == 100

    def test_correlated_crossed_slope(self):
        sim_args = {
            "formula": "y ~ x1 + (1 | school) + (1 + x1 | rater)",
            "sample_size": {"level1": 10, "level2": 20},
            "randomeffect": {
                "school": {"variances": 1},
                "rater": {"variances": [1, 0.5], "correlations": [0.2], "cross_class": True, "num_ids": 8},
            },
        }
        data = simulate_randomeffect(None, sim_args, seed=SEED)
        assert {"int_rater", "x1_rater", "rater"} <= set(data.columns)
        assert (data.groupby("rater")[["int_rater", "x1_rater"]].nunique() == 1).all().all()


class TestExistingData:
    """Extending an existing dataset."""

    def _args(self):
        return {
            "formula": "y ~ x1 + (1 + x1 | school)",
            "randomeffect": {"school": {"variances": [8, 2], "correlations": "corr(1, x1)=0.3"}},
        }

    def test_columns_appended(self, existing_data):
        data = simulate_randomeffect(existing_data, self._args(), seed=SEED)
        assert list(data.columns) == ["school", "x1", "int_school", "x1_school"]
        pd.testing.assert_index_equal(data.index, existing_data.index)
        pd.testing.assert_frame_equal(data[["school", "x1"]], existing_data)

    def test_non_contiguous_clusters(self, existing_data):
        data = simulate_randomeffect(existing_data, self._args(), seed=SEED)
        per_school = data.groupby("school")[["int_school", "x1_school"]].nunique()
        assert (per_school == 1).all().all()
        assert data["int_school"].nunique() == 12

    def test_input_not_modified(self, existing_data):
        before = existing_data.copy()
        simulate_randomeffect(existing_data, self._args(), seed=SEED)
        pd.testing.assert_frame_equal(existing_data, before)

    def test_cross_classified_on_existing(self, existing_data):
        args = self._args()
        args["formula"] = "y ~ x1 + (1 + x1 | school) + (1 | rater)"
        args["randomeffect"]["rater"] = {"variances": 1, "cross_class": True, "num_ids": 4}
        data = simulate_randomeffect(existing_data, args, seed=SEED)
        assert len(data) == len(existing_data)
        assert set(data["rater"]) <= {1, 2, 3, 4}

    def test_matching_sample_size_accepted(self, existing_data):
        args = self._args()
        args["sample_size"] = {"level1": 8, "level2": 12}
        data = simulate_randomeffect(existing_data, args, seed=SEED)
        assert len(data) == 96

    def test_sample_size_mismatch(self, existing_data):
        args = self._args()
        args["sample_size"] = {"level1": 10, "level2": 30}
        with pytest.raises(DatasetAlignmentError, match="300 rows"):
            simulate_randomeffect(existing_data, args, seed=SEED)

    @pytest.mark.parametrize(
        "sample_size",
        [
            {"level1": "abc", "level2": 2},
            {"level1": 8},
            {"level1": 8, "level2": 12, "level4": 2},
            "level1=8",
        ],
    )
    def test_malformed_sample_size_rejected(self, existing_data, sample_size):
        args = self._args()
        args["sample_size"] = sample_size
        with pytest.raises(InvalidSampleSizeError):
            simulate_randomeffect(existing_data, args, seed=SEED)

    def test_missing_cluster_column(self, existing_data):
        with pytest.raises(DatasetAlignmentError, match="'school' is not a column"):
            simulate_randomeffect(existing_data.drop(columns="school"), self._args(), seed=SEED)

    def test_column_clash(self, existing_data):
        clashing = existing_data.assign(int_school=0.0)
        with pytest.raises(DatasetAlignmentError, match="int_school"):
            simulate_randomeffect(clashing, self._args(), seed=SEED)

    def test_not_a_dataframe(self):
        with pytest.raises(DatasetAlignmentError):
            simulate_randomeffect([[1, 2]], self._args(), seed=SEED)


class TestPlan:
    """Term routing of a prepared plan."""

    def test_all_nested(self, nested_args):
        plan = prepare_randomeffect(nested_args)
        assert plan.crossed_terms == []
        assert plan.nested_terms == [0]

    def test_crossed_and_nested(self, crossed_args):
        plan = prepare_randomeffect(crossed_args)
        assert plan.crossed_terms == [1]
        assert plan.nested_terms == [0]

    def test_multi_effect_crossed_term_listed_once(self, crossed_args):
        crossed_args["formula"] = "y ~ x1 + (1 | school) + (1 + x1 | neighborhood)"
        crossed_args["randomeffect"]["neighborhood"]["variances"] = [2, 1]
        plan = prepare_randomeffect(crossed_args)
        assert plan.crossed_terms == [1]


class TestErrors:
    """Error taxonomy surfaced by simulate_randomeffect."""

    def test_missing_tilde(self, nested_args):
        nested_args["formula"] = "y x1 + (1|g1)"
        with pytest.raises(MalformedFormulaError):
            simulate_randomeffect(None, nested_args)

    def test_term_without_pipe(self, nested_args):
        nested_args["formula"] = "y ~ x1 + (1 g1)"
        with pytest.raises(MalformedTermError):
            simulate_randomeffect(None, nested_args)

    def test_no_random_terms(self, nested_args):
        nested_args["formula"] = "y ~ x1"
        with pytest.raises(MalformedFormulaError, match="no random-effect terms"):
            simulate_randomeffect(None, nested_args)

    def test_missing_formula(self, nested_args):
        del nested_args["formula"]
        with pytest.raises(MalformedFormulaError):
            simulate_randomeffect(None, nested_args)

    def test_spec_count_mismatch(self, nested_args):
        nested_args["randomeffect"]["extra"] = {"variances": 1}
        with pytest.raises(InvalidGenerationSpecError, match="2 random-effect specifications"):
            simulate_randomeffect(None, nested_args)

    def test_correlation_count(self, nested_args):
        nested_args["randomeffect"]["school"]["correlations"] = [0.1, 0.2, 0.3]
        with pytest.raises(InvalidCorrelationSpecError):
            simulate_randomeffect(None, nested_args)

    def test_missing_sample_size(self, nested_args):
        del nested_args["sample_size"]
        with pytest.raises(InvalidSampleSizeError):
            simulate_randomeffect(None, nested_args)

    def test_duplicate_output_columns(self, nested_args):
        nested_args["randomeffect"]["school"]["column_names"] = ["school", "u1"]
        with pytest.raises(InvalidGenerationSpecError, match="Duplicate output columns: school"):
            simulate_randomeffect(None, nested_args)

    def test_all_errors_are_value_errors(self, nested_args):
        nested_args["formula"] = "y ~ (1 | )"
        with pytest.raises(ValueError):
            simulate_randomeffect(None, nested_args)

    def test_not_psd_warns(self):
        sim_args = {
            "formula": "y ~ x1 + x2 + (1 + x1 + x2 | g)",
            "sample_size": {"level1": 5, "level2": 40},
            "randomeffect": {"g": {"variances": [1, 1, 1], "correlations": [0.9, 0.9, -0.9]}},
        }
        with pytest.warns(NonPositiveSemiDefiniteCovarianceWarning):
            data = simulate_randomeffect(None, sim_args, seed=SEED)
        assert np.isfinite(data[["int_g", "x1_g", "x2_g"]].to_numpy()).all()
