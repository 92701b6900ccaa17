"""
Distributed Task Scheduler

Multiple independent dispatcher processes consume a shared job queue and
execute every job at most once, with postponed, recurring and retried jobs.
"""

__version__ = "1.0.0"
