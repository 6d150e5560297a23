"""Advisory lock preventing two runs against the same state directory."""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path

from cluster_bootstrap.exceptions import LockError
from cluster_bootstrap.logging_config import get_logger

logger = get_logger(__name__)

LOCK_FILE = ".lock"


@contextmanager
def state_lock(state_dir: Path):
    """Hold an exclusive, non-blocking flock on ``<state_dir>/.lock``.

    Raises:
        LockError: If another process holds the lock
    """
    state_dir = Path(state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    lock_path = state_dir / LOCK_FILE

    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(
                f"Another bootstrap run holds {lock_path}",
                "Wait for it to finish; runs against the same cluster must not overlap",
            )
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        logger.debug(f"Acquired {lock_path}")
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug(f"Released {lock_path}")
    finally:
        os.close(fd)
