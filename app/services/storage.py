"""
CaseCompass - Evidence Storage
Local-disk object store for evidence files, one folder per user.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from app.core.config import get_settings
from app.core.errors import NotFoundError, ValidationFailed
from app.core.security import sanitize_filename

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    storage_path: str  # "<user_id>/<unique>_<name>", relative to the storage root
    name: str
    size: int
    sha256: str


class EvidenceStorage:
    """Reads and writes evidence bytes under the configured upload directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_settings().upload_dir)

    def _resolve(self, storage_path: str) -> Path:
        path = (self.root / storage_path).resolve()
        if self.root.resolve() not in path.parents:
            raise ValidationFailed("Invalid storage path")
        return path

    async def save(self, user_id: str, filename: str, content: bytes) -> StoredObject:
        name = sanitize_filename(filename) or "evidence"
        storage_path = f"{user_id}/{uuid.uuid4().hex[:12]}_{name}"
        path = self._resolve(storage_path)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        async with aiofiles.open(path, "wb") as f:
            await f.write(content)

        digest = hashlib.sha256(content).hexdigest()
        logger.info("Stored evidence %s (%d bytes)", storage_path, len(content))
        return StoredObject(storage_path=storage_path, name=name, size=len(content), sha256=digest)

    async def read(self, storage_path: str) -> bytes:
        path = self._resolve(storage_path)
        if not path.exists():
            raise NotFoundError("Stored file not found", details={"storage_path": storage_path})
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def delete(self, storage_path: str) -> None:
        path = self._resolve(storage_path)
        if path.exists():
            await aiofiles.os.remove(path)


def get_storage() -> EvidenceStorage:
    return EvidenceStorage()
