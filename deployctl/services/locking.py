from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from deployctl.errors import DeploymentLockedError
from deployctl.logger import get_logger

_logger = get_logger("services.locking")


@contextmanager
def run_lock(path: str | Path) -> Iterator[Path]:
    """Hold an exclusive advisory lock on ``path`` for one orchestrator run.

    Non-blocking: a second holder gets DeploymentLockedError immediately.
    """
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise DeploymentLockedError(str(lock_path)) from exc
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        _logger.debug("lock.acquire", "Acquired run lock", path=str(lock_path), pid=os.getpid())
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            _logger.debug("lock.release", "Released run lock", path=str(lock_path))
    finally:
        os.close(fd)
