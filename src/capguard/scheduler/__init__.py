"""Scheduler package for capguard."""

from capguard.scheduler.service import SchedulerService

__all__ = ["SchedulerService"]
