"""PID file for the daemon process.

Ensures a single daemon per state directory and lets `stop`/`status`
find the running daemon.
"""

import os
from pathlib import Path
from types import TracebackType

PID_FILENAME = "daemon.pid"


def pid_alive(pid: int) -> bool:
    """Check if a process with the given PID exists.

    Args:
        pid: Process ID to check

    Returns:
        True if the process exists (even if owned by another user)
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


class DaemonLock:
    """PID-file lock held by the running daemon.

    Usage:
        with DaemonLock(state_dir):
            daemon.run()

    Attributes:
        pid_path: Path to the PID file
    """

    def __init__(self, state_dir: Path) -> None:
        self.pid_path = state_dir / PID_FILENAME

    def holder_pid(self) -> int | None:
        """PID recorded in the file, or None if absent or unreadable."""
        if not self.pid_path.exists():
            return None
        try:
            return int(self.pid_path.read_text().strip())
        except ValueError:
            return None

    def running_pid(self) -> int | None:
        """PID of a live daemon holding the lock, or None."""
        pid = self.holder_pid()
        if pid is not None and pid_alive(pid):
            return pid
        return None

    def acquire(self) -> bool:
        """Take the lock unless a live daemon holds it.

        A PID file left behind by a dead daemon is overwritten.

        Returns:
            True if acquired
        """
        holder = self.running_pid()
        if holder is not None and holder != os.getpid():
            return False
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Remove the PID file if this process owns it."""
        if self.holder_pid() == os.getpid():
            self.pid_path.unlink()

    def __enter__(self) -> "DaemonLock":
        if not self.acquire():
            raise RuntimeError(f"Daemon already running (PID: {self.holder_pid()})")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
