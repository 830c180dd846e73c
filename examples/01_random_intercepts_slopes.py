"""
Random Intercepts and Slopes Example
====================================

This example simulates students nested in schools with a random intercept
and a random slope for study time that are correlated across schools.
"""

import mlsim

print("=" * 60)
print("RANDOM INTERCEPTS AND SLOPES")
print("=" * 60)

# 1. Define the model using an lme4-style formula
sim = mlsim.MLSim("score ~ study_time + (1 + study_time | school)")

# 2. 25 students in each of 40 schools
sim.set_sample_size(level1=25, level2=40)

# 3. Intercept variance 8, slope variance 2, correlated at 0.3
sim.set_random_effect("school", variances=[8, 2], correlations="corr(1, study_time)=0.3")

data = sim.simulate()

print(f"\nFormula: {sim.equation}")
print(f"Rows: {len(data)}, schools: {data['school'].nunique()}")
print("\nFirst rows:")
print(data.head())

# 4. One row per school to check the generated variances and correlation
per_school = data.groupby("school")[["int_school", "study_time_school"]].first()
print("\nSchool-level variances:")
print(per_school.var().round(2))
print(f"Correlation: {per_school.corr().iloc[0, 1]:.2f}")
