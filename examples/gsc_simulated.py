import os

import numpy as np

from gscsynth import GSC
from gscsynth.utils.datautils import PanelData
from gscsynth.utils.estutils import twoway_fe
from gscsynth.utils.simutils import simulate_panel

# Fifteen units, fifty periods, two continuous treatments that load on the
# same latent factors as the outcome.
df = simulate_panel(n_units=15, n_periods=50, b=(1.0, 2.0), n_factors=2, random_state=2024)
truth = np.array(df.attrs["b"])

panel = PanelData.from_frame(df, "unit", "time", "y", ["d1", "d2"])
print("Two-way fixed effects:", twoway_fe(panel))

# Define the output directory
save_directory = os.path.join(os.getcwd(), "gsc")
os.makedirs(save_directory, exist_ok=True)

for method in ("onestep", "twostep.aggte", "twostep.indiv"):
    config = {
        "df": df,
        "outcome": "y",
        "treatments": ["d1", "d2"],
        "unitid": "unit",
        "time": "time",
        "method": method,
        "random_state": 0,
        "display_graphs": True,
        "save": {"filename": f"GSC_{method}", "extension": "png", "directory": save_directory},
    }
    res = GSC(config).fit()
    print(method, res.b, "converged:", res.converged, "iterations:", res.iterations)
    print(res.summary())
    print("distance to truth:", np.linalg.norm(res.b - truth))
