"""
Lock management for autoloop.

Uses flock on a lock file in the state directory so only one driver runs
against a backlog at a time. Read-only commands never take the lock.
"""

import atexit
import fcntl
import os
import signal
import sys
import time
from contextlib import contextmanager
from pathlib import Path

from autoloop.lib.constants import LOCK_FILE


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


def is_locked(lock_file: Path) -> bool:
    """True if another process currently holds the lock."""
    if not lock_file.exists():
        return False
    try:
        with open(lock_file, 'r') as fd:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        return False
    return False


def lock_holder_pid(lock_file: Path) -> int | None:
    """PID written by the current holder, if any."""
    try:
        text = lock_file.read_text().strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    # Open without truncating so a waiting process doesn't wipe the holder's PID
    fd = open(lock_file, 'a+')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start >= timeout:
                fd.close()
                holder = lock_holder_pid(lock_file)
                suffix = f" (held by pid {holder})" if holder else ""
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s{suffix}")
            time.sleep(min(1.0, max(0.05, timeout / 10)))

    # Register cleanup
    def cleanup():
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
        except (OSError, ValueError):
            pass

    atexit.register(cleanup)
    original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))

    try:
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        atexit.unregister(cleanup)
        signal.signal(signal.SIGTERM, original_sigterm)
        cleanup()


@contextmanager
def driver_lock(state_dir: Path, timeout: float = 10):
    """
    Acquire the single-driver lock, yield, release on exit.

    Raises:
        LockTimeout: another driver holds the lock
    """
    with _acquire_lock(state_dir / LOCK_FILE, timeout, "driver lock"):
        yield
