import asyncio
import uuid
from pathlib import Path
from typing import Optional

import httpx
import structlog

from estate_messaging import config
from estate_messaging.errors import UploadError
from estate_messaging.schemas.messaging import AttachmentFile

logger = structlog.get_logger()


class BlobStore:

    async def upload(self, file: AttachmentFile) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return

    def _check_size(self, file: AttachmentFile) -> None:
        if len(file.content) > config.MAX_ATTACHMENT_BYTES:
            raise UploadError(f"{file.filename} exceeds maximum size of {config.MAX_ATTACHMENT_BYTES} bytes")

    @staticmethod
    def object_name(file: AttachmentFile) -> str:
        # Safe filename: keep extension, unique prefix
        ext = Path(file.filename or "file").suffix
        return f"{uuid.uuid4().hex[:12]}{ext}"


class HttpBlobStore(BlobStore):
    """Posts each file to an upload endpoint that answers ``{"url": ...}``."""

    def __init__(self, upload_url: str, token: str = "", client: Optional[httpx.AsyncClient] = None) -> None:
        self._upload_url = upload_url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(timeout=30.0, headers=headers)

    async def upload(self, file: AttachmentFile) -> str:
        self._check_size(file)
        name = self.object_name(file)
        try:
            response = await self._client.post(
                self._upload_url,
                files={"file": (name, file.content, file.content_type)},
            )
            response.raise_for_status()
            url = response.json().get("url")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("attachment_upload_failed", filename=file.filename, error=str(exc))
            raise UploadError(f"Upload of {file.filename} failed: {exc}") from exc
        if not url:
            raise UploadError(f"Upload of {file.filename} returned no URL")
        return url

    async def close(self) -> None:
        await self._client.aclose()


class LocalBlobStore(BlobStore):
    """Saves files under ``UPLOADS_DIR`` and serves them from the API host."""

    def __init__(self, base_dir: Optional[str] = None, public_base_url: Optional[str] = None) -> None:
        self._base_dir = Path(base_dir or config.UPLOADS_DIR)
        self._public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")

    async def upload(self, file: AttachmentFile) -> str:
        self._check_size(file)
        name = self.object_name(file)
        target = self._base_dir / "attachments" / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, file.content)
        except OSError as exc:
            logger.error("attachment_upload_failed", filename=file.filename, error=str(exc))
            raise UploadError(f"Failed to save {file.filename}: {exc}") from exc
        return f"{self._public_base_url}/uploads/attachments/{name}"


def get_blob_store() -> BlobStore:
    if config.BLOB_BACKEND == "http" and config.BLOB_UPLOAD_URL:
        return HttpBlobStore(config.BLOB_UPLOAD_URL, config.BLOB_UPLOAD_TOKEN)
    return LocalBlobStore()
