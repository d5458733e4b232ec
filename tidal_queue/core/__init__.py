"""
Core queue engine.

This package contains the primary logic. The `JobQueue` owns job records and
their lifecycle, the `QueueWorker` drains it through a host-supplied
download executor, and the error classifier decides which failures are
worth retrying.
"""
