import logging
import os
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def atomic_write(path: Union[str, Path], data: bytes) -> bool:
    """
    Write `data` to `path` all-or-nothing.

    The bytes go to a temporary file in the target directory, which is flushed,
    fsynced and then renamed over the target. Any failure before the rename
    removes the temporary file and leaves the target exactly as it was.
    """
    path = Path(path)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        logger.error("File %s couldn't be opened for writing: %s", path, e)
        return False

    try:
        with os.fdopen(fd, "wb") as f:
            written = f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if written != len(data):
            raise OSError(f"short write: {written} of {len(data)} bytes")
        os.replace(tmp_name, path)
    except OSError as e:
        logger.error("Failed to write %s, keeping previous content: %s", path, e)
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        return False
    return True
