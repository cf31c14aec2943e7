"""Short-lived local handles for decrypted record content."""

from __future__ import annotations

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

__all__ = ["EphemeralHandle", "ephemeral_handle"]


@dataclass
class EphemeralHandle:
    path: Path
    size: int
    released: bool = False

    def read_bytes(self) -> bytes:
        if self.released:
            raise RuntimeError("handle already released")
        return self.path.read_bytes()


def _write(fd: int, data: bytes) -> None:
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


@asynccontextmanager
async def ephemeral_handle(data: bytes, suffix: str = "") -> AsyncIterator[EphemeralHandle]:
    """Write *data* to a private temp file and remove it on exit.

    The file is removed even when the body raises or the task is cancelled.
    """
    fd, name = tempfile.mkstemp(prefix="medvault-", suffix=suffix)
    handle = EphemeralHandle(path=Path(name), size=len(data))
    try:
        await asyncio.to_thread(_write, fd, data)
        yield handle
    finally:
        handle.path.unlink(missing_ok=True)
        handle.released = True
