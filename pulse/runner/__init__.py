"""Scheduler runner: guarded job ticks and the interval loop."""

from .jobs import HttpTrigger, JobNotRegistered, JobRunner, RunReport, TriggerError
from .loop import SchedulerLoop
