"""Per-owner serialization for work that reads then writes a user's Finicity state."""

import asyncio
import uuid
import weakref

# One in-flight provisioning or sync per owner within this process
_owner_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def owner_lock(owner_id: uuid.UUID) -> asyncio.Lock:
    key = str(owner_id)
    lock = _owner_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _owner_locks[key] = lock
    return lock
