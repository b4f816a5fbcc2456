"""
Chunked media upload endpoint.

POST /api/upload accepts one byte range per request as multipart form data:
- file: the chunk bytes
- chunkStart: absolute offset of the chunk
- totalSize: size of the whole file
- uploadId: omitted on the first chunk, echoed back afterwards
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from gamerhub.core.auth import get_current_user_id
from gamerhub.features.uploads.service import receive_chunk
from gamerhub.features.usage.service import get_or_create_user


router = APIRouter(tags=["uploads"])


@router.post("/upload")
async def upload_chunk(
    file: UploadFile = File(...),
    chunk_start: int = Form(..., alias="chunkStart"),
    total_size: int = Form(..., alias="totalSize"),
    upload_id: Optional[str] = Form(None, alias="uploadId"),
    user_id: str = Depends(get_current_user_id),
):
    """
    Receive one chunk.

    Returns:
        {"uploadId": str, "complete": false} while bytes are outstanding
        {"url": str, "uploadId": str, "complete": true} after the last chunk

    Errors:
        400: Malformed chunk (bad offsets, size mismatch)
        401: Missing X-User-Id
        403: Storage quota exceeded
        404: Unknown uploadId
        409: Out-of-order chunk or session already complete
        413: Video larger than 500MB
    """
    chunk = await file.read()
    get_or_create_user(user_id)
    return receive_chunk(
        user_id,
        chunk=chunk,
        chunk_start=chunk_start,
        total_size=total_size,
        upload_id=upload_id or None,
        file_name=file.filename,
        content_type=file.content_type,
    )
