"""Background workers."""
from .job_replay import replay_stale_jobs, start_job_replay_worker

__all__ = ["replay_stale_jobs", "start_job_replay_worker"]
