"""Helper utility functions for APM-CLI."""

import os
import shutil
import tempfile
from pathlib import Path


def atomic_write_text(path, data: str, prefix: str = ".apm-write-") -> None:
    """Write text to path through a temporary file and an atomic rename.

    Args:
        path: Destination file
        data: Text content
        prefix: Prefix for the temporary file created next to path
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=prefix, dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def remove_dir_and_empty_parents(directory: Path, stop_at: Path) -> None:
    """Delete directory, then every parent left empty, up to (not including) stop_at."""
    if directory.exists():
        shutil.rmtree(directory)
    stop_at = stop_at.resolve()
    parent = directory.parent.resolve()
    while parent != stop_at and stop_at in parent.parents:
        if any(parent.iterdir()):
            break
        parent.rmdir()
        parent = parent.parent
