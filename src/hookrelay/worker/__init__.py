"""hookrelay worker service.

In-process runtime for:
- Bounded-concurrency execution of typed jobs with crash recovery
- Signed, retried webhook delivery behind a shared circuit breaker
- Periodic retention sweeps

Usage:
    # Console script
    hookrelay-worker

    # Or as a module
    python -m hookrelay.worker.main
"""

from hookrelay.worker.main import Worker, run

__all__ = ["Worker", "run"]
