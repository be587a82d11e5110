import numpy as np

from gscsynth import estimate, wald_test
from gscsynth.utils.simutils import simulate_panel

df = simulate_panel(n_units=15, n_periods=50, b=(1.0, 2.0), random_state=7)

# H0: b1 - b2 + 1 = 0 (true in this simulation)
restricted = estimate(
    df, "y", ["d1", "d2"],
    restriction_fn=lambda b: b[0] - b[1] + 1.0,
    restriction_grad=lambda b: np.array([1.0, -1.0]),
)
unrestricted = estimate(df, "y", ["d1", "d2"])

result = wald_test(
    df, "y", ["d1", "d2"], restricted,
    n_boot=999, random_state=0, n_jobs=4,
    unrestricted_result=unrestricted,
    display_graphs=True,
)
print(result.summary())
