from .estimators.gsc import GSC, estimate
from .estimators.waldtest import GSCWaldTest, WaldTestResult, wald_test
from .config_models import GSCConfig, WaldTestConfig, GSCResults
from .utils.datautils import PanelData
from .utils.simutils import simulate_panel

# Define __all__ to specify the public API of the gscsynth package
__all__ = [
    "GSC",
    "GSCWaldTest",
    "estimate",
    "wald_test",
    "GSCConfig",
    "WaldTestConfig",
    "GSCResults",
    "WaldTestResult",
    "PanelData",
    "simulate_panel",
]
