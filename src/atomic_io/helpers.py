"""Atomic write helpers for whole-content writes.

Each helper writes a complete value in one call, with all-or-nothing
semantics inherited from ``with_output_file``:
1. Content goes to a temp file in the same directory as the target
2. The temp file gets the mode and ownership of any existing target
3. The temp file is renamed over the target, or removed on any failure
"""

import json
from pathlib import Path
from typing import Any

from atomic_io.writer import with_output_file


def _ensure_parent(target_path: str | Path) -> Path:
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    return target_path


def atomic_write_bytes(data: bytes, target_path: str | Path, *, durable: bool = False) -> None:
    """Write bytes to target_path atomically, creating parent directories."""
    target_path = _ensure_parent(target_path)
    with_output_file(target_path, lambda f: f.write(data), binary=True, durable=durable)


def atomic_write_text(
    content: str,
    target_path: str | Path,
    *,
    encoding: str = "utf-8",
    durable: bool = False,
) -> None:
    """Write text content to target_path atomically.

    Content is written exactly as given; no trailing newline is added.

    Args:
        content: Text content to write
        target_path: Destination file path
        encoding: Text encoding
        durable: fsync before and after the rename

    Raises:
        OSError: If write or rename fails
    """
    target_path = _ensure_parent(target_path)
    with_output_file(
        target_path, lambda f: f.write(content), encoding=encoding, durable=durable
    )


def atomic_write_json(data: Any, target_path: str | Path, *, durable: bool = False) -> None:
    """Write data to target_path as JSON atomically.

    Args:
        data: Python object to serialize as JSON
        target_path: Destination file path
        durable: fsync before and after the rename

    Raises:
        OSError: If write or rename fails
        TypeError: If data is not JSON-serializable (target left unchanged)
    """
    target_path = _ensure_parent(target_path)

    def dump(f: Any) -> None:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")  # Trailing newline for better git diffs

    with_output_file(target_path, dump, durable=durable)
