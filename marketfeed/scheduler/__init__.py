"""
Task Scheduler

Periodic housekeeping jobs.
"""
from marketfeed.scheduler.maintenance import MaintenanceScheduler

__all__ = ["MaintenanceScheduler"]
