#!/usr/bin/env python3
"""Advisory lock files shared by independent invocations of the tool.

A lock is an exclusive ``flock`` on a persistent ``<name>.lock`` file. The
kernel drops the lock when its holder exits, so a crashed invocation never
leaves a lock behind. Lock files are never deleted: unlinking one while
another process waits on it would let two processes lock different inodes
of the same name.
"""

import fcntl
import os
import time
from pathlib import Path

from .exceptions import Timeout


ALLOCATION_LOCK = "allocation"


class FileLock:
    """Exclusive lock file, usable as a context manager"""

    poll_interval = 0.1

    def __init__(self, locks_dir, name, timeout=10):
        self.path = Path(locks_dir) / f"{name}.lock"
        self.name = name
        self.timeout = timeout
        self.handle = None

    @property
    def held(self):
        return self.handle is not None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, 'a+')
        deadline = time.monotonic() + self.timeout

        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise Timeout(
                        f"Timed out waiting for lock '{self.name}' "
                        f"(held by PID {self.owner_pid() or 'unknown'}, lock file {self.path})"
                    )
                time.sleep(self.poll_interval)

        # The PID is informational only, for the timeout message
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self.handle = handle
        return self

    def release(self):
        if self.handle is None:
            return
        handle, self.handle = self.handle, None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def owner_pid(self):
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
