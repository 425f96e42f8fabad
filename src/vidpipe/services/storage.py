"""Local filesystem storage rooted at ``storage.path``."""

import os
from pathlib import Path

from loguru import logger

from ..exceptions import StorageUnavailableError, ValidationError
from .base import StorageBackend


class LocalStorage(StorageBackend):
    """Files live under one root directory and are addressed relative to it.

    Paths are normalized so a relative path can never escape the root.
    """

    def __init__(self, root: str = "./storage"):
        self.root = Path(root).resolve()

    def get_full_path(self, file_path: str) -> str:
        full = (self.root / file_path).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValidationError(f"Path escapes storage root: {file_path}")
        return str(full)

    def save_file(self, data: bytes, file_path: str) -> str:
        full = Path(self.get_full_path(file_path))
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(data)
        logger.info(f"File saved: {full}")
        return str(full)

    def get_file(self, file_path: str) -> bytes:
        return Path(self.get_full_path(file_path)).read_bytes()

    def delete_file(self, file_path: str) -> None:
        full = Path(self.get_full_path(file_path))
        full.unlink()
        logger.info(f"File deleted: {full}")

    def file_exists(self, file_path: str) -> bool:
        return Path(self.get_full_path(file_path)).exists()

    def get_file_size(self, file_path: str) -> int:
        return Path(self.get_full_path(file_path)).stat().st_size

    def ensure_available(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create storage root {self.root}: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise StorageUnavailableError(f"Storage root is not writable: {self.root}")
