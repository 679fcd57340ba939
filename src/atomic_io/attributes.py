"""Reading and applying file attributes across a replacement.

Since an atomic replacement creates an entirely new file, the permission
bits and ownership of the file being replaced have to be copied onto it
explicitly. How that is done is platform-specific, so the writer only talks
to an ``AttributeBackend``:

- POSIX: ``PosixAttributes`` copies mode bits, owner and group
- Elsewhere: ``NullAttributes`` copies nothing

Extended attributes (ACLs, xattrs) and the change-time are not preserved.
"""

import os
import stat
import sys
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field


class FileAttributes(BaseModel, frozen=True):
    """Snapshot of the attributes copied from a replaced file."""

    mode: int = Field(..., ge=0, le=0o7777, description="Permission bits, as from stat.S_IMODE")
    uid: int = Field(..., ge=0)
    gid: int = Field(..., ge=0)

    def __str__(self) -> str:
        return f"mode={self.mode:04o} uid={self.uid} gid={self.gid}"


class AttributeBackend(Protocol):
    """Platform capability for copying attributes between files."""

    def read(self, path: Path) -> FileAttributes | None:
        """Return the attributes of ``path``, or None if there are none to copy."""
        ...

    def apply(self, path: Path, attrs: FileAttributes) -> None:
        """Apply ``attrs`` to ``path``."""
        ...


class PosixAttributes:
    """Copies permission bits and uid/gid using stat, chown and chmod."""

    def read(self, path: Path) -> FileAttributes | None:
        st = os.stat(path)
        return FileAttributes(mode=stat.S_IMODE(st.st_mode), uid=st.st_uid, gid=st.st_gid)

    def apply(self, path: Path, attrs: FileAttributes) -> None:
        # chown succeeds only if the owner already matches or the process
        # has CAP_CHOWN. Failure is not swallowed.
        # chown runs first since it may clear setuid/setgid bits.
        os.chown(path, attrs.uid, attrs.gid)
        os.chmod(path, attrs.mode)


class NullAttributes:
    """Backend for platforms without POSIX ownership: copies nothing."""

    def read(self, path: Path) -> FileAttributes | None:
        return None

    def apply(self, path: Path, attrs: FileAttributes) -> None:
        pass


def default_backend() -> AttributeBackend:
    """Pick the attribute backend for the running platform."""
    if sys.platform == "win32":
        return NullAttributes()
    return PosixAttributes()
