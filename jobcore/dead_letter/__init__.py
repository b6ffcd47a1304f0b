"""
Dead letter queue for jobs that exhausted their retries.
"""

from jobcore.dead_letter.queue import DeadLetterQueue, entry_key, job_index_key

__all__ = ["DeadLetterQueue", "entry_key", "job_index_key"]
