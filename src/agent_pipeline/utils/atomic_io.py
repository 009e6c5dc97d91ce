"""JSON persistence with crash-safe writes."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def atomic_write_json(file_path: Path, data: Any, indent: int = 2, max_retries: int = 3) -> None:
    """
    Serialize ``data`` and replace ``file_path`` in one rename.

    Readers see either the previous document or the new one, never a torn
    write. Missing parent directories are created.

    Args:
        file_path: Target file path
        data: JSON-serializable value
        indent: JSON indentation
        max_retries: Write attempts before giving up

    Raises:
        TypeError: ``data`` is not JSON-serializable
        OSError: every attempt failed
    """
    content = json.dumps(data, indent=indent)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = file_path.with_name(f".{file_path.name}.{os.getpid()}.tmp")

    last_error: Optional[OSError] = None
    for attempt in range(1, max_retries + 1):
        try:
            tmp_file.write_text(content)
            os.replace(tmp_file, file_path)
            return
        except OSError as e:
            last_error = e
            logger.warning(f"Write to {file_path} failed (attempt {attempt}/{max_retries}): {e}")
        finally:
            tmp_file.unlink(missing_ok=True)

    raise last_error


def read_json(file_path: Path) -> Optional[Any]:
    """Parsed contents of ``file_path``, or None if it does not exist.

    Raises:
        OSError, json.JSONDecodeError: unreadable or corrupt file
    """
    if not file_path.exists():
        return None
    return json.loads(file_path.read_text())
