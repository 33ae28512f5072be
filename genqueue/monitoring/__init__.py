"""
Backend health monitoring.
"""

from .health_monitor import HealthMonitor, HealthResult

__all__ = ["HealthMonitor", "HealthResult"]
