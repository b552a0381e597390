"""Local file storage for uploaded documents."""
import uuid
from pathlib import Path

import aiofiles

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class FileStoreError(Exception):
    """Raised when a stored file cannot be read or written."""
    pass


class LocalFileStore:
    """Keeps uploaded files under a root directory, one folder per user."""

    def __init__(self, root: Path = config.UPLOAD_DIR):
        self.root = Path(root)

    def _resolve(self, file_path: str) -> Path:
        path = (self.root / file_path).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise FileStoreError(f"Path escapes storage root: {file_path}")
        return path

    async def save(self, data: bytes, user_id: str, filename: str) -> str:
        """Store file bytes.

        Returns:
            Storage path relative to the root, used later for download
        """
        relative = Path(user_id) / f"{uuid.uuid4().hex}_{Path(filename).name}"
        path = self._resolve(str(relative))
        path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(path, 'wb') as f:
            await f.write(data)

        logger.info(f"Saved {filename} ({len(data)} bytes) to {relative}")
        return str(relative)

    async def download(self, file_path: str) -> bytes:
        path = self._resolve(file_path)
        if not path.exists():
            raise FileStoreError(f"File not found: {file_path}")
        async with aiofiles.open(path, 'rb') as f:
            return await f.read()

    async def delete(self, file_path: str) -> None:
        path = self._resolve(file_path)
        if path.exists():
            path.unlink()
