"""Background workers."""
from .maintenance import MaintenanceJob, MaintenanceWorker

__all__ = ["MaintenanceJob", "MaintenanceWorker"]
