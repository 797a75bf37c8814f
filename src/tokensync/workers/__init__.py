"""Background workers for async processing tasks."""

from tokensync.workers.integrity_worker import run_integrity_pass, run_integrity_worker

__all__ = [
    "run_integrity_pass",
    "run_integrity_worker",
]
