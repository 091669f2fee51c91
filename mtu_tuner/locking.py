"""
Named, filesystem-visible mutual exclusion.

Serializes anything that mutates a live interface (and writes to the state
directory) across threads and processes. Built on fcntl.flock: each
acquisition opens its own file description, so two threads of the same
process exclude each other just like two processes do, and the kernel drops
the lock when its holder dies.
"""

import errno
import fcntl
import json
import logging
import os
import socket
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class InterfaceLock:
    """Advisory lock with owner metadata and bounded acquisition."""

    def __init__(self, name: str, lock_dir: str, attempts: int = 30,
                 backoff: float = 1.0, interface: Optional[str] = None):
        """
        Initialize the lock.

        Args:
            name: Lock name; the lock file is <lock_dir>/<name>.lock
            lock_dir: Directory holding lock files (created on demand)
            attempts: Maximum number of acquisition attempts
            backoff: Fixed delay between attempts in seconds
            interface: Interface the lock protects, used for error context
        """
        self.name = name
        self.lock_dir = lock_dir
        self.path = os.path.join(lock_dir, f"{name}.lock")
        self.attempts = attempts
        self.backoff = backoff
        self.interface = interface
        self._fd: Optional[int] = None
        self._guard = threading.Lock()

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """
        Acquire the lock, polling up to `attempts` times.

        Raises:
            LockTimeoutError: if the lock is still held after the last attempt
        """
        os.makedirs(self.lock_dir, exist_ok=True)
        for attempt in range(1, self.attempts + 1):
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                os.close(fd)
                if e.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                    raise LockTimeoutError(
                        f"Cannot lock {self.path}", interface=self.interface, cause=e
                    )
                owner = self.owner()
                logger.debug(
                    f"Lock {self.name} busy (owner={owner}), "
                    f"attempt {attempt} of {self.attempts}"
                )
                if attempt < self.attempts:
                    time.sleep(self.backoff)
                continue

            self._reclaim_if_stale(fd)
            self._write_owner(fd)
            with self._guard:
                self._fd = fd
            logger.debug(f"Lock {self.name} acquired")
            return

        logger.error(f"Failed to acquire lock {self.name} after {self.attempts} attempts")
        raise LockTimeoutError(
            f"Lock {self.name} not acquired after {self.attempts} attempts",
            interface=self.interface, value=self.owner(),
        )

    def release(self) -> None:
        """Release the lock. Safe to call when not held."""
        with self._guard:
            fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Lock {self.name} released")

    def owner(self) -> Optional[Dict[str, Any]]:
        """Return the owner metadata recorded in the lock file, if any."""
        try:
            with open(self.path, "r") as f:
                content = f.read().strip()
        except OSError:
            return None
        if not content:
            return None
        try:
            data = json.loads(content)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _reclaim_if_stale(self, fd: int) -> None:
        # A non-empty lock file we could lock means the holder never released
        owner = self._read_fd(fd)
        if not owner:
            return
        pid = owner.get("pid")
        if isinstance(pid, int) and pid != os.getpid() and not pid_alive(pid):
            logger.warning(f"Reclaimed stale lock {self.name} from dead process {pid}")
        elif owner:
            logger.warning(f"Reclaimed lock {self.name} left behind by {owner}")

    @staticmethod
    def _read_fd(fd: int) -> Optional[Dict[str, Any]]:
        os.lseek(fd, 0, os.SEEK_SET)
        raw = b""
        while True:
            chunk = os.read(fd, 4096)
            if not chunk:
                break
            raw += chunk
        if not raw.strip():
            return None
        try:
            data = json.loads(raw.decode("utf-8", errors="replace"))
        except ValueError:
            return {"raw": raw[:64].decode("utf-8", errors="replace")}
        return data if isinstance(data, dict) else None

    def _write_owner(self, fd: int) -> None:
        meta = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "thread": threading.current_thread().name,
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(meta).encode("utf-8"))
        os.fsync(fd)

    def __enter__(self) -> "InterfaceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
