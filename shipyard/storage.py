"""File helpers shared by the persisted documents.

Documents read by other processes are written to a temporary file in the
same directory and renamed over the target, so readers see either the old
or the new content. Paths with concurrent writers additionally take an
advisory lock on a sibling lock file.
"""

import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to path atomically (write temp file, rename over target).

    Args:
        path: Destination file
        data: JSON-serializable document
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    os.replace(tmp, path)


@contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on lock_path for the block's duration."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
