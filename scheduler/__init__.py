"""Scheduled jobs: stale-slot reaping and appointment reminders."""

from .jobs import check_and_send_reminders, run_reaper, setup_scheduler, shutdown_scheduler

__all__ = ["check_and_send_reminders", "run_reaper", "setup_scheduler", "shutdown_scheduler"]
