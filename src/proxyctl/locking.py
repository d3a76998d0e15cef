"""File-based locks that serialise provisioning transactions.

Locks are advisory ``flock`` locks on files under the runtime directory. The
lock file is left behind after release so operators can see which process
last held it.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "proxyctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Metadata about an acquired lock."""

    path: Path
    wait_ms: int


@dataclass(frozen=True, slots=True)
class LockBundle:
    """Set of locks acquired together."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-domain locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide proxyctl lock."""
        with self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def domain_lock(self, domain: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for *domain*."""
        with self._acquire(self.lock_path(domain), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_domain(self, domain: str, *, timeout: float | None = None) -> Iterator[LockBundle]:
        """Acquire the global lock followed by the lock for *domain*."""
        with ExitStack() as stack:
            handles = (
                stack.enter_context(self.global_lock(timeout=timeout)),
                stack.enter_context(self.domain_lock(domain, timeout=timeout)),
            )
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
