"""
Resilient Distributed Job Execution Core

Runs scheduled background jobs across many service instances with distributed
locking and fencing tokens, retry/backoff with circuit breaking, and a
dead-letter queue for work that exhausts its retry budget.
"""

__version__ = "1.0.0"
