"""Atomic replacement of file contents.

Allows one to replace the contents of a file atomically by leveraging the
atomicity of ``rename``: everything is written to a temporary file next to
the target, which is then renamed over it. Readers of the target see either
the old file or the complete new one, never a partial write.

Example:
    >>> def write_config(f):
    ...     f.write("[core]\\n")
    ...     f.write("editor = vim\\n")
    >>> with_output_file("settings.ini", write_config)
"""

import codecs
import contextlib
import os
import secrets
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any, NamedTuple, TypeVar

from atomic_io.attributes import AttributeBackend, default_backend
from atomic_io.logging import get_logger
from atomic_io.transaction import transact

T = TypeVar("T")

TEMP_MARKER = ".atomic"

_NEWLINES = (None, "", "\n", "\r", "\r\n")

_OPEN_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOINHERIT", 0) | getattr(os, "O_BINARY", 0)


class TempFile(NamedTuple):
    """A temporary file owned by one in-flight transaction."""

    path: Path
    handle: IO[Any]


def temp_prefix(target_path: str | Path) -> str:
    """Name prefix of temporary files belonging to ``target_path``."""
    return f".{Path(target_path).name}{TEMP_MARKER}"


def temp_files_for(target_path: str | Path) -> list[Path]:
    """List temporary files left next to ``target_path``.

    Only a hard crash (power loss, SIGKILL) can leave these behind, since
    every other exit path removes its temp file.
    """
    target_path = Path(target_path)
    prefix = temp_prefix(target_path)
    try:
        entries = list(target_path.parent.iterdir())
    except FileNotFoundError:
        return []
    return sorted(p for p in entries if p.name.startswith(prefix) and p.is_file())


def remove_stale_temp_files(target_path: str | Path) -> list[Path]:
    """Delete leftover temporary files of ``target_path``.

    Must not run while a transaction on the same target is in flight in
    another process: its temp file would be removed from under it.

    Returns:
        The paths that were removed
    """
    removed = []
    for stale in temp_files_for(target_path):
        stale.unlink(missing_ok=True)
        get_logger().debug("Removed stale temp file", path=str(stale))
        removed.append(stale)
    return removed


def _open_temp_file(
    directory: Path, prefix: str, binary: bool, encoding: str | None, newline: str | None
) -> TempFile:
    """Exclusively create a fresh file in ``directory`` and open it.

    The file gets default creation permissions (0o666 filtered by the umask),
    the same a plain ``open(path, "w")`` would give it.
    """
    for _ in range(tempfile.TMP_MAX):
        path = directory / f"{prefix}{secrets.token_hex(4)}"
        try:
            fd = os.open(path, _OPEN_FLAGS, 0o666)
        except FileExistsError:
            continue

        try:
            if binary:
                handle = os.fdopen(fd, "wb")
            else:
                handle = os.fdopen(fd, "w", encoding=encoding, newline=newline)
        except BaseException:
            # fdopen may already have closed fd
            with contextlib.suppress(OSError):
                os.close(fd)
            os.unlink(path)
            raise
        return TempFile(path, handle)

    raise FileExistsError(f"No usable temporary file name found in {directory}")


def _fsync_directory(directory: Path) -> None:
    """Flush a rename in ``directory`` to disk (best effort)."""
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError as e:
        # e.g. Windows, where directories cannot be opened
        get_logger().debug("Skipping directory fsync", path=str(directory), error=str(e))
        return
    try:
        os.fsync(dir_fd)
    except OSError as e:
        # The rename has already happened, so this cannot fail the commit
        get_logger().warning(f"Directory fsync failed for {directory}: {e}")
    finally:
        os.close(dir_fd)


def with_output_file(
    target_path: str | Path,
    action: Callable[[IO[Any]], T],
    *,
    binary: bool = False,
    encoding: str | None = None,
    newline: str | None = None,
    durable: bool = False,
    attributes: AttributeBackend | None = None,
) -> T:
    """Like ``open(path, "w")`` but replaces the contents atomically.

    Creates a temporary file in the target's directory and passes its open
    handle to ``action``. After ``action`` returns, the temporary file is
    renamed over ``target_path``. If ``action`` (or the rename) fails, the
    temporary file is removed and ``target_path`` is left untouched.

    If ``target_path`` already exists, its permission bits and owner/group
    are copied to the new file before ``action`` runs. Failing to copy them
    (e.g. chown without privilege) aborts the replacement. A new file gets
    default creation permissions.

    Args:
        target_path: Final file path. Its directory must exist and be writable.
        action: Writes the new contents to the handle it is given
        binary: Pass a binary handle instead of a text one
        encoding: Text encoding (default UTF-8); text mode only
        newline: Newline translation as for ``open()``; text mode only
        durable: fsync the file before the rename and the directory after.
            A failed directory fsync is only logged, since the target has
            already been replaced by then.
        attributes: Attribute backend (default: chosen for the platform)

    Returns:
        Whatever ``action`` returns

    Raises:
        ValueError: If text-only options are combined with ``binary``, or
            ``encoding`` or ``newline`` is not usable
        OSError: If creating, chmod/chown, renaming or removing fails
        Exception: Whatever ``action`` raises
    """
    if binary and (encoding is not None or newline is not None):
        raise ValueError("encoding and newline are not supported in binary mode")
    if not binary and encoding is None:
        encoding = "utf-8"
    if newline not in _NEWLINES:
        raise ValueError(f"Invalid newline: {newline!r}")
    if encoding is not None:
        try:
            codecs.lookup(encoding)
        except LookupError as e:
            raise ValueError(f"Unknown encoding: {encoding!r}") from e

    target_path = Path(target_path)
    temp_dir = target_path.parent
    backend = attributes if attributes is not None else default_backend()
    logger = get_logger()

    def begin() -> TempFile:
        temp = _open_temp_file(temp_dir, temp_prefix(target_path), binary, encoding, newline)
        logger.debug("Created temp file", path=str(temp.path))
        return temp

    def copy_attributes(temp: TempFile) -> None:
        if not target_path.is_file():
            return
        attrs = backend.read(target_path)
        if attrs is None:
            return
        backend.apply(temp.path, attrs)
        logger.debug("Copied attributes", source=str(target_path), attrs=str(attrs))

    def commit(temp: TempFile) -> None:
        temp.handle.flush()
        if durable:
            os.fsync(temp.handle.fileno())
        temp.handle.close()
        os.replace(temp.path, target_path)
        logger.debug("Committed", target=str(target_path))
        if durable:
            _fsync_directory(temp_dir)

    def rollback(temp: TempFile) -> None:
        try:
            temp.handle.close()
        except OSError as e:
            # Buffered data failed to flush; the descriptor is closed anyway
            logger.debug("Error closing temp file during rollback", error=str(e))
        temp.path.unlink(missing_ok=True)
        logger.debug("Rolled back", target=str(target_path))

    def run(temp: TempFile) -> T:
        copy_attributes(temp)
        return action(temp.handle)

    return transact(begin, commit, rollback, run)
