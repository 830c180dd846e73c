"""
Cross-Classified Random Effects Example
=======================================

Students are nested in schools but also live in neighborhoods that cut
across schools. Neighborhood membership is sampled per student and every
student in the same neighborhood shares its effect.
"""

from mlsim import simulate_randomeffect

sim_args = {
    "formula": "y ~ x1 + (1 | school) + (1 | neighborhood)",
    "sample_size": {"level1": {"mean": 20, "sd": 4, "min": 10, "max": 30}, "level2": 30},
    "randomeffect": {
        "school": {"variances": 4},
        "neighborhood": {"variances": 2, "cross_class": True, "num_ids": 15},
    },
}

data = simulate_randomeffect(None, sim_args, seed=2137)

print("=" * 60)
print("CROSS-CLASSIFIED RANDOM EFFECTS")
print("=" * 60)
print(f"\nRows: {len(data)}")
print(f"Schools: {data['school'].nunique()}, neighborhoods: {data['neighborhood'].nunique()}")
print(f"Neighborhoods per school (mean): {data.groupby('school')['neighborhood'].nunique().mean():.1f}")
print("\nFirst rows:")
print(data.head())
