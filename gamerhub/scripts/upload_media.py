#!/usr/bin/env python3
"""
Upload a media file through the chunked upload endpoint.

Usage:
    python -m gamerhub.scripts.upload_media path/to/clip.mp4 \\
        --user-id user_123 \\
        --endpoint http://localhost:8000/api/upload

Prints a progress line while uploading and the final URL on success.
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from gamerhub.core.config import settings
from gamerhub.features.uploads.client import (
    CHUNK_SIZE,
    ChunkedUploader,
    UploadError,
    UploadProgress,
    UploadSource,
    format_file_size,
)


def print_progress(update: UploadProgress) -> None:
    if update.status == "error":
        print(f"\n❌ {update.error}", file=sys.stderr)
        return
    end = "\n" if update.status == "complete" else ""
    print(f"\r{update.status:<10} {update.progress:6.2f}%", end=end, flush=True)


async def run_upload(path: str, endpoint: str, user_id: str, chunk_size: int = CHUNK_SIZE) -> str:
    source = UploadSource.from_path(path)
    try:
        print(f"Uploading {source.name} ({format_file_size(source.size)}) to {endpoint}")
        uploader = ChunkedUploader(
            endpoint,
            chunk_size=chunk_size,
            headers={"X-User-Id": user_id},
            timeout=settings.UPLOAD_TIMEOUT_SECONDS,
        )
        return await uploader.upload(source, print_progress)
    finally:
        source.stream.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Upload a media file in chunks.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--user-id", required=True, help="User id sent as X-User-Id")
    parser.add_argument("--endpoint", default=settings.UPLOAD_ENDPOINT, help="Upload endpoint URL")
    parser.add_argument("--chunk-size", type=int, default=CHUNK_SIZE, help="Chunk size in bytes")
    args = parser.parse_args(argv)

    try:
        url = asyncio.run(run_upload(args.path, args.endpoint, args.user_id, args.chunk_size))
    except (UploadError, OSError) as e:
        print(f"Upload failed: {e}", file=sys.stderr)
        return 1

    print(f"✅ {url}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
