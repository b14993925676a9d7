"""Atomic file I/O operations."""

import os
import logging
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Atomically write content to a file using temp file + rename.

    The temp file lives in the target directory so the final rename never
    crosses a filesystem boundary. Readers see either the previous content
    or the new content, never a partial write.

    Args:
        file_path: Target file path
        content: Text content to write
        max_retries: Maximum number of retry attempts on failure

    Raises:
        OSError: If write fails after all retries
    """
    file_path = Path(file_path)
    # Use PID to avoid temp file collisions between processes
    tmp_file = file_path.with_name(f".{file_path.name}.tmp.{os.getpid()}")

    last_error = None
    for attempt in range(max_retries):
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
            continue
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_model(file_path: Path, model: BaseModel, indent: int = 2) -> None:
    """
    Atomically write a Pydantic model to a JSON file.

    Fields are written by alias and unset optionals are dropped, which keeps
    the on-disk format camelCase and compact.
    """
    atomic_write_text(
        file_path,
        model.model_dump_json(indent=indent, by_alias=True, exclude_none=True),
    )
