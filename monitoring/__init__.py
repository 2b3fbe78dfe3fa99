"""Statistics drift detection and collection health."""

from monitoring.drift_detector import DriftResult, StatisticsDriftDetector
from monitoring.pipeline_monitor import CollectionMonitor, HealthReport

__all__ = ["CollectionMonitor", "DriftResult", "HealthReport", "StatisticsDriftDetector"]
