"""Atomic file replacement.

This package contains:
- with_output_file: replace a file's contents through a writable handle
- transact: the begin/commit/rollback sequencer it is built on
- Attribute backends that carry mode and ownership over to the new file
- Whole-content helpers for bytes, text and JSON
"""

from .attributes import FileAttributes, NullAttributes, PosixAttributes, default_backend
from .helpers import atomic_write_bytes, atomic_write_json, atomic_write_text
from .transaction import masked, transact
from .writer import remove_stale_temp_files, temp_files_for, with_output_file

__version__ = "0.1.0"

__all__ = [
    "FileAttributes",
    "NullAttributes",
    "PosixAttributes",
    "atomic_write_bytes",
    "atomic_write_json",
    "atomic_write_text",
    "default_backend",
    "masked",
    "remove_stale_temp_files",
    "temp_files_for",
    "transact",
    "with_output_file",
]
