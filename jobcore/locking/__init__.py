"""
Distributed locking with fencing tokens.
"""

from jobcore.locking.manager import LockHandle, LockManager, lock_key_for

__all__ = ["LockManager", "LockHandle", "lock_key_for"]
