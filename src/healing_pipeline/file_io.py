"""File helpers for pipeline documents, run records and step reports."""

from __future__ import annotations

import os
import tempfile
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

REPLACE_ATTEMPTS = 8
REPLACE_BACKOFF_SECONDS = 0.01

# utf-8 always goes first; latin-1 maps every byte, so the chain ends there.
_LEGACY_ENCODINGS = ("cp1252", "latin-1")

_writer_locks_guard = threading.Lock()
_writer_locks: dict[str, threading.Lock] = {}


def writer_lock(path: Path) -> threading.Lock:
    """The in-process lock shared by every writer of *path* (aliases included)."""
    key = os.path.normcase(str(path.resolve()))
    with _writer_locks_guard:
        return _writer_locks.setdefault(key, threading.Lock())


def replace_with_retry(src: Path, dst: Path) -> None:
    """``os.replace`` that rides out brief sharing violations.

    On Windows a scanner or indexer holding *dst* open makes the rename fail
    with ``PermissionError`` for a few milliseconds. Other errors propagate
    immediately.
    """
    for attempt in range(1, REPLACE_ATTEMPTS + 1):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if attempt == REPLACE_ATTEMPTS:
                raise
            time.sleep(REPLACE_BACKOFF_SECONDS * attempt)


def atomic_write_text(path: str | Path, content: str) -> None:
    """Write UTF-8 *content* so readers see either the old file or the new one."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=target.parent,
        prefix=f"{target.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(content)
        staged = Path(handle.name)
    try:
        with writer_lock(target):
            replace_with_retry(staged, target)
    finally:
        with suppress(OSError):
            staged.unlink(missing_ok=True)


@dataclass(frozen=True, slots=True)
class DecodedText:
    text: str
    encoding: str = "utf-8"

    @property
    def is_legacy(self) -> bool:
        return self.encoding != "utf-8"


def read_text_lenient(path: str | Path) -> DecodedText:
    """Read *path*, accepting the legacy code pages build tools still emit.

    A BOM is kept as ``\\ufeff`` in the text. ``OSError`` (including a
    missing file) propagates.
    """
    raw = Path(path).read_bytes()
    try:
        return DecodedText(raw.decode("utf-8"))
    except UnicodeDecodeError:
        pass
    for encoding in _LEGACY_ENCODINGS:
        try:
            return DecodedText(raw.decode(encoding), encoding)
        except UnicodeDecodeError:
            continue
    return DecodedText(raw.decode("utf-8", errors="replace"), "utf-8-replace")  # pragma: no cover
