"""hookrelay - in-process job processing and reliable webhook delivery.

Provides a bounded-concurrency job queue with delayed execution and crash
recovery, a circuit breaker for failure isolation, a periodic scheduler, and
an at-least-once webhook delivery subsystem built on top of them.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
