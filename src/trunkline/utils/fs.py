"""
trunkline — filesystem utilities

File: src/trunkline/utils/fs.py
Last updated: 2026-10-19

Purpose
- Replace state documents atomically so a concurrent reader (or a crash) never sees half a file.

Functional requirements
- The temp file lives beside the target, is fsynced, then renamed over it with ``os.replace``.
- JSON documents are serialized canonically: sorted keys, compact separators, trailing newline.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

PathLike = str | os.PathLike[str]


def canonical_json(payload: Mapping[str, object]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n"


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Write ``data`` to ``path`` through a synced sibling temp file and a rename."""

    target = Path(path)
    directory = target.parent.resolve()
    directory.mkdir(parents=True, exist_ok=True)
    payload = data.encode(encoding) if isinstance(data, str) else data

    with tempfile.NamedTemporaryFile(
        dir=directory, prefix=f".{target.name}.", suffix=".tmp", delete=False
    ) as handle:
        temp_path = Path(handle.name)
        try:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        except BaseException:
            handle.close()
            temp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(temp_path, target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    _sync_directory(directory)


def atomic_write_json(path: PathLike, payload: Mapping[str, object]) -> None:
    atomic_write(path, canonical_json(payload))


def _sync_directory(directory: Path) -> None:
    # Directory fsync makes the rename durable; not every platform allows it.
    if os.name == "nt":
        return
    with contextlib.suppress(OSError):
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


__all__ = ["atomic_write", "atomic_write_json", "canonical_json"]
