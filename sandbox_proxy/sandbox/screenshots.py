"""Select the freshest screenshot for the clipboard proxy.

The directory is re-scanned on every call; freshness is evaluated against the
wall clock at request time. Nothing on disk is modified.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

DEFAULT_MAX_AGE = 120.0
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"})


@dataclass(frozen=True)
class ScreenshotCandidate:
    path: Path
    mtime: float


@dataclass(frozen=True)
class Found:
    path: Path
    data: bytes

    found = True


@dataclass(frozen=True)
class NotFound:
    reason: str

    found = False


class ScreenshotSelector:
    """Newest image directly under a directory, if younger than max_age."""

    def __init__(
        self,
        directory: Path,
        max_age: float = DEFAULT_MAX_AGE,
        extensions: Iterable[str] = IMAGE_EXTENSIONS,
    ) -> None:
        self.directory = Path(directory)
        self.max_age = max_age
        self.extensions = frozenset(e.lower() for e in extensions)

    def candidates(self) -> list[ScreenshotCandidate]:
        """Image files directly under the directory (no recursion).

        Symlinks are followed and judged by their target; dangling ones are skipped.
        """
        result = []
        with os.scandir(self.directory) as entries:
            for entry in entries:
                if not entry.is_file():
                    continue
                if Path(entry.name).suffix.lower() not in self.extensions:
                    continue
                try:
                    mtime = entry.stat().st_mtime
                except OSError:
                    continue
                result.append(ScreenshotCandidate(Path(entry.path), mtime))
        return result

    def latest_image(self, now: float | None = None) -> Found | NotFound:
        now = time.time() if now is None else now
        try:
            candidates = self.candidates()
        except OSError as e:
            return NotFound(f"cannot read {self.directory}: {e.strerror or e}")

        if not candidates:
            return NotFound(f"no screenshot found in {self.directory}")

        newest = max(candidates, key=lambda c: c.mtime)
        age = now - newest.mtime
        if age > self.max_age:
            return NotFound(
                f"no screenshot younger than {self.max_age:g}s in {self.directory} "
                f"(newest is {age:.0f}s old)"
            )

        try:
            return Found(newest.path, newest.path.read_bytes())
        except OSError as e:
            return NotFound(f"failed to read {newest.path}: {e.strerror or e}")


def latest_image(directory: Path, max_age: float = DEFAULT_MAX_AGE) -> Found | NotFound:
    return ScreenshotSelector(directory, max_age).latest_image()
