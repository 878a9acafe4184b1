import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def atomic_write_json(path: PathLike, data: Any, mode: Optional[int] = None) -> None:
    """Write JSON to path so a crash never leaves a half-written file.

    The payload goes to a temporary file in the destination directory, is
    flushed and fsynced, then renamed over the destination.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            try:
                os.chmod(temp_path, mode)
            except OSError:
                logger.debug(f"Could not set mode {oct(mode)} on {temp_path}")
        os.replace(temp_path, target)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read_json(path: PathLike) -> Any:
    """Read a JSON document. Raises OSError or ValueError on failure."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)
