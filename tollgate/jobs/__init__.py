"""Background jobs."""

from tollgate.jobs.scheduler import JobScheduler

__all__ = ["JobScheduler"]
