"""
Background Jobs for BI Incidents.

- notification_sweep: sends due email alerts and scheduled incident
  notifications from the queue
"""

from .notification_sweep import run_notification_sweep

__all__ = ["run_notification_sweep"]
