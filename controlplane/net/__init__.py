"""httpx implementations of the readiness probe and webhook notifier."""
