# Attachment intake: validation and on-disk storage for grievance uploads

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import List, Optional

from fastapi import HTTPException, UploadFile

from .config import (
    UPLOAD_DIR, MAX_ATTACHMENTS, MAX_ATTACHMENT_BYTES, ALLOWED_ATTACHMENT_TYPES, now_utc,
)
from .db import executor

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: Optional[str]) -> str:
    base = Path(name or "").name
    base = _UNSAFE_CHARS.sub("_", base).strip("._")
    return base[:120] or "attachment"


async def read_attachments(files: List[UploadFile]) -> List[tuple]:
    """Validate uploads and return ``(upload, content)`` pairs.

    Everything is checked before anything is written, so a rejected
    request leaves no files behind.
    """
    files = [f for f in (files or []) if f is not None and f.filename]
    if len(files) > MAX_ATTACHMENTS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_ATTACHMENTS} attachments are allowed")
    accepted = []
    for upload in files:
        if upload.content_type not in ALLOWED_ATTACHMENT_TYPES:
            raise HTTPException(status_code=400,
                                detail=f"Invalid file type for {upload.filename}: only JPEG, PNG and PDF are allowed")
        content = await upload.read(MAX_ATTACHMENT_BYTES + 1)
        if len(content) > MAX_ATTACHMENT_BYTES:
            raise HTTPException(status_code=400, detail=f"{upload.filename} exceeds the 10MB limit")
        accepted.append((upload, content))
    return accepted


async def store_attachments(accepted: List[tuple], upload_dir: Optional[Path] = None) -> List[dict]:
    """Write validated uploads to ``upload_dir`` and return their metadata."""
    upload_dir = Path(upload_dir or UPLOAD_DIR)
    if not accepted:
        return []
    def write_all():
        upload_dir.mkdir(parents=True, exist_ok=True)
        stored = []
        stamp = int(time.time() * 1000)
        for index, (upload, content) in enumerate(accepted):
            filename = f"{stamp}-{index}-{safe_filename(upload.filename)}"
            path = upload_dir / filename
            path.write_bytes(content)
            stored.append({
                "filename": filename, "original_name": upload.filename, "path": str(path),
                "mimetype": upload.content_type, "size": len(content), "uploaded_at": now_utc(),
            })
        return stored
    loop = asyncio.get_event_loop()
    stored = await loop.run_in_executor(executor, write_all)
    logger.info("Stored %d attachment(s) in %s", len(stored), upload_dir)
    return stored


def find_attachment(grievance: dict, filename: str) -> Optional[dict]:
    for attachment in grievance.get("attachments") or []:
        if attachment.get("filename") == filename:
            return attachment
    return None


def discard_attachments(stored: List[dict]) -> None:
    """Remove files written by ``store_attachments`` whose grievance was never saved."""
    for attachment in stored:
        try:
            Path(attachment["path"]).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Could not remove orphaned attachment %s: %s", attachment["path"], e)
