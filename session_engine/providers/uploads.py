"""GeminiFileUploader: attachments through the Gemini Files API.

Uses the two-step resumable protocol: a ``start`` request returns an upload
URL, then the bytes are sent with ``upload, finalize``.
"""

from __future__ import annotations

import hashlib
import logging

import httpx

from ..errors import NetworkTimeoutError, UploadError
from ..types import AttachmentRef, FileInput, UploadConfig
from ..core.validator import validate_file
from .base import error_for_status, parse_retry_after

logger = logging.getLogger(__name__)

UPLOAD_BASE = "https://generativelanguage.googleapis.com/upload/v1beta/files"
FILES_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GeminiFileUploader:
    """``UploadService`` backed by Gemini file storage."""

    provider_name = "gemini"

    def __init__(
        self,
        api_key: str,
        config: UploadConfig | None = None,
        timeout: float = 60.0,
        upload_url: str = UPLOAD_BASE,
        files_url: str = FILES_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.config = config or UploadConfig()
        self.upload_url = upload_url
        self.files_url = files_url.rstrip("/")
        self._client = httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(timeout, connect=10.0))

    def _raise_for(self, resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            raise error_for_status(
                resp.status_code,
                resp.text,
                self.provider_name,
                retry_after=parse_retry_after(resp.headers),
            )

    async def upload(self, file: FileInput) -> AttachmentRef:
        """Validate, then upload. Raises AttachmentValidationError with no
        network traffic when the file is not acceptable."""
        validate_file(file, self.config)

        try:
            start = await self._client.post(
                self.upload_url,
                headers={
                    "x-goog-api-key": self.api_key,
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Header-Content-Length": str(file.size_bytes),
                    "X-Goog-Upload-Header-Content-Type": file.mime_type,
                },
                json={"file": {"display_name": file.filename}},
            )
            self._raise_for(start)
            session_url = start.headers.get("x-goog-upload-url")
            if not session_url:
                raise UploadError("Upload start response carried no upload URL", provider=self.provider_name)

            resp = await self._client.post(
                session_url,
                headers={
                    "Content-Length": str(file.size_bytes),
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=file.data,
            )
            self._raise_for(resp)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(f"Upload timed out: {e}", provider=self.provider_name) from e
        except httpx.TransportError as e:
            raise UploadError(f"Upload failed: {e}", provider=self.provider_name) from e

        info = resp.json().get("file", {})
        ref = AttachmentRef(
            id=info.get("name", ""),
            remote_uri=info.get("uri", ""),
            mime_type=info.get("mimeType", file.mime_type),
            size_bytes=int(info.get("sizeBytes", file.size_bytes)),
            sha256=hashlib.sha256(file.data).hexdigest(),
        )
        logger.info("Uploaded %s (%d bytes) as %s", file.filename, file.size_bytes, ref.id)
        return ref

    async def delete(self, ref: AttachmentRef) -> None:
        try:
            resp = await self._client.delete(
                f"{self.files_url}/{ref.id}",
                headers={"x-goog-api-key": self.api_key},
            )
        except httpx.HTTPError as e:
            raise UploadError(f"Delete failed: {e}", provider=self.provider_name) from e
        if resp.status_code != 404:
            self._raise_for(resp)

    async def aclose(self) -> None:
        await self._client.aclose()
