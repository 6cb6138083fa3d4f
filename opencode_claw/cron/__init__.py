"""Cron scheduling module."""

from opencode_claw.cron.scheduler import CronScheduler, next_fire_time

__all__ = ["CronScheduler", "next_fire_time"]
