"""Cron module for kvsync: minute-resolution recurring jobs."""

from .expression import CronExpression, CronField
from .job import CallableCronJob, CronJob, CronScheduler

__all__ = ["CronExpression", "CronField", "CronJob", "CallableCronJob", "CronScheduler"]
