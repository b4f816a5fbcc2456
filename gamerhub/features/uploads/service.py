"""
gamerhub/features/uploads/service.py

Server side of the chunked upload protocol.

Each request carries one byte range. The first range (no upload id) opens a
session after the storage entitlement check; later ranges must continue the
session exactly where the previous one stopped. When the last byte arrives the
file is moved into place, the owner's storage counter grows by the file size
and the response carries the public URL.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4
from urllib.parse import quote
import logging
import shutil

from sqlalchemy import select, insert, update

from gamerhub.core.config import settings
from gamerhub.core.database import get_db_session, upload_sessions
from gamerhub.core.logging import log_event
from gamerhub.core.errors import (
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    PermissionError,
    QuotaExceededError,
    ValidationError,
)
from gamerhub.features.entitlements.service import EntitlementService, get_entitlement_service
from gamerhub.features.uploads.client import MAX_VIDEO_SIZE, VIDEO_EXTENSION_TYPES
from gamerhub.features.usage.service import add_storage_used


logger = logging.getLogger(__name__)


def _upload_dir() -> Path:
    path = Path(settings.UPLOAD_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _partial_dir() -> Path:
    # Kept outside UPLOAD_DIR, which is served publicly under /media
    configured = settings.UPLOAD_PARTIAL_DIR
    uploads = Path(settings.UPLOAD_DIR).resolve()
    path = Path(configured) if configured else uploads.with_name(uploads.name + ".partial")
    path.mkdir(parents=True, exist_ok=True)
    return path


def _safe_name(file_name: Optional[str]) -> str:
    name = Path(file_name or "").name
    if name in ("", ".", ".."):
        return "upload.bin"
    return name


def _partial_path(upload_id: str) -> Path:
    return _partial_dir() / f"{upload_id}.part"


def _public_url(upload_id: str, file_name: str) -> str:
    return f"{settings.MEDIA_BASE_URL.rstrip('/')}/{upload_id}/{quote(file_name)}"


def _looks_like_video(file_name: str, content_type: Optional[str]) -> bool:
    return (content_type or "").startswith("video/") or Path(file_name).suffix.lower() in VIDEO_EXTENSION_TYPES


def _open_session(
    user_id: str,
    *,
    total_size: int,
    file_name: str,
    content_type: Optional[str],
    entitlements: EntitlementService,
) -> str:
    if _looks_like_video(file_name, content_type) and total_size > MAX_VIDEO_SIZE:
        raise PayloadTooLargeError("Video file size must be less than 500MB.")

    decision = entitlements.can_upload_file(user_id, total_size)
    if not decision.allowed:
        raise QuotaExceededError(decision.reason or "Storage limit exceeded.")

    upload_id = uuid4().hex
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            insert(upload_sessions).values(
                upload_id=upload_id,
                user_id=user_id,
                file_name=file_name,
                content_type=content_type,
                total_size=total_size,
                received_bytes=0,
                completed=False,
                created_at=now,
                updated_at=now,
            )
        )
    _partial_path(upload_id).touch()
    logger.info(
        "[upload] session opened",
        extra={"user_id": user_id, "upload_id": upload_id, "total_size": total_size, "file_name": file_name},
    )
    return upload_id


def _load_session(upload_id: str, user_id: str):
    with get_db_session() as session:
        row = session.execute(
            select(upload_sessions).where(upload_sessions.c.upload_id == upload_id)
        ).first()
    if not row:
        raise NotFoundError(f"Upload session {upload_id} not found")
    if row.user_id != user_id:
        raise PermissionError("Upload session belongs to another user")
    if row.completed:
        raise ConflictError("Upload session already completed")
    return row


def receive_chunk(
    user_id: str,
    *,
    chunk: bytes,
    chunk_start: int,
    total_size: int,
    upload_id: Optional[str] = None,
    file_name: Optional[str] = None,
    content_type: Optional[str] = None,
    entitlements: Optional[EntitlementService] = None,
) -> Dict[str, Any]:
    """Accept one byte range; return the protocol response body."""
    if total_size <= 0:
        raise ValidationError("totalSize must be a positive integer")
    if chunk_start < 0:
        raise ValidationError("chunkStart must not be negative")
    if not chunk:
        raise ValidationError("No file uploaded")
    if chunk_start + len(chunk) > total_size:
        raise ValidationError("Chunk extends past totalSize")

    name = _safe_name(file_name)

    if not upload_id:
        if chunk_start != 0:
            raise ValidationError("First chunk must start at offset 0")
        upload_id = _open_session(
            user_id,
            total_size=total_size,
            file_name=name,
            content_type=content_type,
            entitlements=entitlements or get_entitlement_service(),
        )
        received = 0
    else:
        row = _load_session(upload_id, user_id)
        if row.total_size != total_size:
            raise ValidationError("totalSize does not match the upload session")
        if row.received_bytes != chunk_start:
            raise ConflictError(
                f"Expected chunk at offset {row.received_bytes}, got {chunk_start}"
            )
        name = row.file_name
        received = row.received_bytes

    part = _partial_path(upload_id)
    try:
        with part.open("ab") as fh:
            fh.write(chunk)
        received += len(chunk)
        if received < total_size:
            _record_progress(upload_id, received)
    except Exception:
        # Drop bytes the session row does not account for
        with part.open("r+b") as fh:
            fh.truncate(chunk_start)
        raise

    if received < total_size:
        return {"uploadId": upload_id, "complete": False}

    return _finalize(user_id, upload_id, name, received)


def _record_progress(upload_id: str, received: int) -> None:
    with get_db_session() as session:
        session.execute(
            update(upload_sessions)
            .where(upload_sessions.c.upload_id == upload_id)
            .values(received_bytes=received, updated_at=datetime.now(timezone.utc))
        )


def _finalize(user_id: str, upload_id: str, file_name: str, total_size: int) -> Dict[str, Any]:
    target_dir = _upload_dir() / upload_id
    target_dir.mkdir(parents=True, exist_ok=True)
    shutil.move(str(_partial_path(upload_id)), str(target_dir / file_name))

    url = _public_url(upload_id, file_name)
    with get_db_session() as session:
        session.execute(
            update(upload_sessions)
            .where(upload_sessions.c.upload_id == upload_id)
            .values(
                received_bytes=total_size,
                completed=True,
                url=url,
                updated_at=datetime.now(timezone.utc),
            )
        )
    add_storage_used(user_id, total_size)

    log_event(
        "info",
        "upload.complete",
        user_id=user_id,
        event_type="upload.complete",
        extra={"upload_id": upload_id, "total_size": total_size, "url": url},
    )
    return {"url": url, "uploadId": upload_id, "complete": True}
