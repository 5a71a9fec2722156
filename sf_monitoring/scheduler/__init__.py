from .job_scheduler import JobScheduler, parse_cron_expression
from .run_scheduler import RunScheduler

__all__ = ["JobScheduler", "RunScheduler", "parse_cron_expression"]
