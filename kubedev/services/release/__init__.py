"""Release deployment and session pod resolution."""
from .chart import BaseChartDeployer, ChartRelease, HelmChartDeployer, build_value_overrides
from .coordinator import ReleaseCoordinator

__all__ = [
    "BaseChartDeployer",
    "ChartRelease",
    "HelmChartDeployer",
    "build_value_overrides",
    "ReleaseCoordinator",
]
