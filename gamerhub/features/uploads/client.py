"""
gamerhub/features/uploads/client.py

Chunked media upload client.

Splits a file into fixed-size byte ranges and POSTs them one at a time to the
upload endpoint. The first request carries no upload id; the server returns
one, and every later request sends it back with the absolute chunk offset and
the total size so the server can assemble the ranges in order.

There is no chunk-level retry and no resume: any failure ends the call and a
new call starts again from offset zero.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Optional
import asyncio
import logging
import math
import mimetypes

import httpx


logger = logging.getLogger(__name__)

CHUNK_SIZE = 10 * 1024 * 1024  # 10MB chunks
MAX_VIDEO_SIZE = 500 * 1024 * 1024  # 500MB
ALLOWED_VIDEO_FORMATS = ("video/mp4", "video/webm", "video/quicktime")

# Files whose extension says video but whose MIME type is wrong get corrected
VIDEO_EXTENSION_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
}

PROGRESS_CAP = 99.0


class UploadError(Exception):
    """Base exception for upload failures."""


class UploadValidationError(UploadError):
    """Raised before any request is made when the file is not acceptable."""


class UploadTransportError(UploadError):
    """Non-2xx response, network failure, abort or unreadable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UploadIncompleteError(UploadError):
    """The file was fully sent but the server never signalled completion."""


@dataclass(frozen=True)
class UploadSource:
    """A seekable binary stream with a known size, name and MIME type."""
    stream: BinaryIO
    size: int
    name: str
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "UploadSource":
        p = Path(path)
        guessed, _ = mimetypes.guess_type(p.name)
        return cls(
            stream=p.open("rb"),
            size=p.stat().st_size,
            name=p.name,
            content_type=content_type or guessed or "application/octet-stream",
        )

    def read_range(self, offset: int, length: int) -> bytes:
        self.stream.seek(offset)
        return self.stream.read(length)

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower()


@dataclass(frozen=True)
class UploadProgress:
    progress: float
    status: str  # uploading | processing | complete | error
    error: Optional[str] = None
    url: Optional[str] = None


ProgressCallback = Callable[[UploadProgress], None]


def is_video(source: UploadSource) -> bool:
    return source.content_type.startswith("video/") or source.extension in VIDEO_EXTENSION_TYPES


def validate_video(source: UploadSource) -> UploadSource:
    """Check size and format; return the source with a corrected MIME type."""
    if source.size > MAX_VIDEO_SIZE:
        raise UploadValidationError("Video file size must be less than 500MB.")

    corrected = VIDEO_EXTENSION_TYPES.get(source.extension)
    if corrected:
        if corrected != source.content_type:
            logger.info(
                "[upload] corrected video MIME type",
                extra={"file_name": source.name, "original_type": source.content_type, "new_type": corrected},
            )
        return replace(source, content_type=corrected)

    if not source.content_type.startswith("video/"):
        raise UploadValidationError("File is not a video. Please upload a video file.")

    if source.content_type not in ALLOWED_VIDEO_FORMATS:
        raise UploadValidationError(
            f"Unsupported video format: {source.content_type}. Please upload MP4, WebM, or MOV files only."
        )
    return source


def chunk_count(total_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return math.ceil(total_size / chunk_size) if total_size > 0 else 0


def format_file_size(num_bytes: int) -> str:
    if num_bytes == 0:
        return "0 Bytes"
    k = 1024
    sizes = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes, k))), len(sizes) - 1)
    value = round(num_bytes / math.pow(k, i), 2)
    return f"{value:g} {sizes[i]}"


def _error_message(response: httpx.Response) -> str:
    fallback = f"Upload failed with status {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        return fallback
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or fallback
    if isinstance(error, str) and error:
        return error
    return fallback


class ChunkedUploader:
    """Sequential chunked uploader for a single endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: int = CHUNK_SIZE,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 300.0,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.endpoint = endpoint
        self.chunk_size = chunk_size
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._client = client

    async def upload(self, source: UploadSource, on_progress: Optional[ProgressCallback] = None) -> str:
        """Upload `source` and return the final resource URL."""
        last = UploadProgress(progress=0.0, status="uploading")

        def report(update: UploadProgress) -> None:
            nonlocal last
            last = update
            if on_progress:
                on_progress(update)

        try:
            if is_video(source):
                source = validate_video(source)

            report(UploadProgress(progress=0.0, status="uploading"))

            if self._client is not None:
                return await self._upload_chunks(self._client, source, report)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._upload_chunks(client, source, report)
        except asyncio.CancelledError:
            report(UploadProgress(progress=last.progress, status="error", error="Upload aborted"))
            raise
        except Exception as exc:
            logger.error(
                "[upload] failed",
                extra={"file_name": source.name, "total_size": source.size, "error": str(exc)},
            )
            report(UploadProgress(progress=last.progress, status="error", error=str(exc) or "Unknown error occurred"))
            raise

    async def _upload_chunks(self, client: httpx.AsyncClient, source: UploadSource, report) -> str:
        upload_id: Optional[str] = None
        offset = 0
        total_size = source.size

        logger.info(
            "[upload] starting",
            extra={
                "file_name": source.name,
                "total_size": total_size,
                "chunks": chunk_count(total_size, self.chunk_size),
            },
        )

        while offset < total_size:
            chunk = source.read_range(offset, self.chunk_size)
            data = {"chunkStart": str(offset), "totalSize": str(total_size)}
            if upload_id:
                data["uploadId"] = upload_id

            body = await self._post_chunk(
                client,
                data=data,
                files={"file": (source.name, chunk, source.content_type)},
            )

            if body.get("complete") and body.get("url"):
                url = body["url"]
                report(UploadProgress(progress=100.0, status="complete", url=url))
                logger.info("[upload] complete", extra={"file_name": source.name, "upload_id": upload_id, "url": url})
                return url

            if body.get("uploadId"):
                upload_id = body["uploadId"]

            offset += self.chunk_size
            report(
                UploadProgress(
                    progress=min(offset / total_size * 100, PROGRESS_CAP),
                    status="uploading",
                )
            )

        raise UploadIncompleteError("Upload failed to complete")

    async def _post_chunk(self, client: httpx.AsyncClient, *, data: Dict[str, str], files) -> Dict[str, Any]:
        try:
            response = await client.post(self.endpoint, data=data, files=files, headers=self.headers)
        except httpx.TransportError as exc:
            raise UploadTransportError("Upload failed") from exc

        if not response.is_success:
            raise UploadTransportError(_error_message(response), status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise UploadTransportError("Failed to parse upload response", status_code=response.status_code) from exc
        if not isinstance(body, dict):
            raise UploadTransportError("Failed to parse upload response", status_code=response.status_code)
        return body


async def upload_media(
    source: UploadSource,
    endpoint: str,
    *,
    on_progress: Optional[ProgressCallback] = None,
    headers: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """One-shot helper around ChunkedUploader."""
    uploader = ChunkedUploader(endpoint, client=client, headers=headers)
    return await uploader.upload(source, on_progress)
