from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from .errors import StoreError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_CURSOR_FILENAME = "blablabot_update_id.txt"


class CursorStore(Protocol):
    def load(self) -> int: ...

    def save(self, update_id: int) -> None: ...


def _check_value(update_id: int) -> None:
    if isinstance(update_id, bool) or not isinstance(update_id, int):
        raise ValueError(f"cursor must be an integer, got {update_id!r}")
    if update_id < 0:
        raise ValueError(f"cursor must be non-negative, got {update_id}")


class MemoryCursorStore:
    def __init__(self, update_id: int = 0) -> None:
        _check_value(update_id)
        self.value = update_id
        self.saves: list[int] = []

    def load(self) -> int:
        return self.value

    def save(self, update_id: int) -> None:
        _check_value(update_id)
        self.value = update_id
        self.saves.append(update_id)


class FileCursorStore:
    """Cursor persisted as a single decimal integer in a text file.

    Saves go through a temp file and ``os.replace`` so a completed save
    survives a crash intact.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> int:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("cursor.missing", path=str(self.path))
            return 0
        except OSError as exc:
            raise StoreError(
                f"Failed to read cursor file {self.path}: {exc}"
            ) from exc
        text = raw.strip()
        if not text:
            return 0
        try:
            value = int(text)
        except ValueError:
            raise StoreError(
                f"Malformed cursor file {self.path}: expected an integer, got {text!r}"
            ) from None
        if value < 0:
            raise StoreError(f"Malformed cursor file {self.path}: negative value {value}")
        logger.info("cursor.loaded", path=str(self.path), update_id=value)
        return value

    def save(self, update_id: int) -> None:
        _check_value(update_id)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(f"{update_id}\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StoreError(
                f"Failed to save cursor to {self.path}: {exc}"
            ) from exc
        logger.debug("cursor.saved", path=str(self.path), update_id=update_id)
