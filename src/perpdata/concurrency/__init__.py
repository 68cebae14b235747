"""Async concurrency primitives: token bucket rate limiting and bounded worker pools."""

from perpdata.concurrency.rate_limiter import TokenBucketLimiter
from perpdata.concurrency.worker_pool import run_worker_pool

__all__ = ["TokenBucketLimiter", "run_worker_pool"]
