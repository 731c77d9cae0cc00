"""
Durable binary storage for recordings, media and rendered documents
"""

import asyncio
from pathlib import Path
from typing import Protocol, Union

from clinic_scribe.core.errors import StorageFailure
from clinic_scribe.core.logging import get_logger

logger = get_logger(__name__)


class BlobStore(Protocol):
    async def put(self, data: bytes, path: str, content_type: str) -> str:
        """Stores ``data`` under ``path`` and returns its public URL."""
        ...

    async def get(self, path: str) -> bytes:
        ...


class LocalBlobStore:
    """
    Filesystem backed blob store. Files live under ``root`` and are served by
    the API under ``public_base_url`` (see the ``/blobs`` static mount).
    """

    def __init__(self, root: Union[str, Path], public_base_url: str):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root not in target.parents:
            raise StorageFailure(f"Invalid blob path: {path}")
        return target

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"

    async def put(self, data: bytes, path: str, content_type: str) -> str:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            logger.error(f"Failed to store blob {path}: {e}", exc_info=True)
            raise StorageFailure("Failed to upload file") from e
        logger.info("Stored blob", path=path, content_type=content_type, size_bytes=len(data))
        return self.public_url(path)

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as e:
            raise StorageFailure(f"Stored file {path} is missing") from e
        except OSError as e:
            logger.error(f"Failed to read blob {path}: {e}", exc_info=True)
            raise StorageFailure("Failed to read file") from e

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
