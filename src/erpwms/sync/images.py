"""
Product image side channel.

Product rows may reference an ERP attachment. The image bytes are copied
to a content-addressed blob store and the public URL is sent along with
the product. The image has its own hash on the status row, so an unchanged
picture is never uploaded twice, and any failure here falls back to the
previously known URL instead of failing the product.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional

from erpwms.erp.client import ServiceLayerError
from erpwms.sync.fingerprint import fingerprint_bytes

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".jpg"
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


class BlobStoreError(RuntimeError):
    """Raised when an image cannot be stored."""


@dataclass
class AssetState:
    url: Optional[str] = None
    hash: Optional[str] = None
    synced_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status) -> "AssetState":
        if status is None:
            return cls()
        return cls(status.image_url, status.image_hash, status.image_sync_time)


def _sanitize(value: str) -> str:
    return _UNSAFE.sub("_", value) if value else "unknown"


def blob_name(company: str, item_code: str, digest: str, extension: str) -> str:
    """{company}/{item}_{hash[:8]}{ext} with unsafe characters replaced."""
    return f"{_sanitize(company)}/{_sanitize(item_code)}_{digest[:8]}{extension or DEFAULT_EXTENSION}"


class LocalBlobStore:
    """Filesystem blob store; blobs are served from base_url if one is given.

    File I/O runs in the thread pool so it doesn't block the event loop.
    """

    def __init__(self, root, base_url: str = "", max_file_size: int = 10_485_760):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.max_file_size = max_file_size

    def _path(self, name: str) -> Path:
        return self.root.joinpath(*PurePosixPath(name).parts)

    def url_for(self, name: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{name}"
        return self._path(name).resolve().as_uri()

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def exists(self, name: str) -> bool:
        return await self._run(self._path(name).exists)

    def _write_sync(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def upload(self, name: str, data: bytes) -> str:
        if len(data) > self.max_file_size:
            raise BlobStoreError(
                f"Image {name} is {len(data)} bytes, over the {self.max_file_size} byte limit"
            )
        try:
            await self._run(self._write_sync, self._path(name), data)
        except OSError as exc:
            raise BlobStoreError(f"Failed to store {name}: {exc}") from exc
        return self.url_for(name)


class NullAssetSync:
    """Used when no blob store is configured: keeps whatever URL is stored."""

    async def sync(self, scope: str, key: str, record, existing) -> AssetState:
        return AssetState.from_status(existing)


def _attachment_file(meta: dict) -> Optional[tuple]:
    """(path, extension) of the first file in Attachments2 metadata."""
    lines = meta.get("Attachments2_Lines") or []
    if lines:
        line = lines[0]
        name = line.get("FileName") or ""
        ext = line.get("FileExtension") or ""
        source = (line.get("SourcePath") or "").rstrip("\\/")
        file_name = f"{name}.{ext}" if ext else name
        path = f"{source}\\{file_name}" if source else file_name
        return path, f".{ext.lower()}" if ext else ""
    path = meta.get("TargetPath") or ""
    if not path:
        return None
    return path, Path(meta.get("FileName") or path).suffix.lower()


class ProductImageSync:
    """Copies a product's ERP attachment image into the blob store."""

    def __init__(self, erp, blob_store, clock=datetime.utcnow):
        self.erp = erp
        self.blob_store = blob_store
        self._clock = clock

    async def sync(self, scope: str, key: str, record, existing) -> AssetState:
        """
        Returns the image state to store for this product. Never raises for
        ERP or storage failures; the previous state is returned instead.
        """
        previous = AssetState.from_status(existing)
        entry = record.as_int("AttachEntry")
        if entry <= 0:
            return previous

        try:
            meta = await self.erp.get_attachment(entry)
            located = _attachment_file(meta) if meta else None
            if located is None:
                return previous
            path, extension = located
            data = await self.erp.download_attachment(path)
            if not data:
                logger.debug("No image bytes for product %s", key)
                return previous

            digest = fingerprint_bytes(data)
            if digest == previous.hash and previous.url:
                logger.debug("Image unchanged for product %s", key)
                return previous

            name = blob_name(scope, key, digest, extension)
            if await self.blob_store.exists(name):
                url = self.blob_store.url_for(name)
            else:
                logger.info("Uploading image for product %s", key)
                url = await self.blob_store.upload(name, data)
        except (ServiceLayerError, BlobStoreError) as exc:
            logger.error("Image sync failed for product %s: %s", key, exc)
            return previous

        return AssetState(url=url, hash=digest, synced_at=self._clock())
