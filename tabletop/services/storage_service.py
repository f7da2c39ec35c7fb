"""
tabletop.services.storage_service — Blob Storage for Image Bytes
=================================================================

Rulebook pages, example images and covers are stored under a local blob
directory (``TABLETOP_STORAGE_DIR`` or ``storage_dir`` in ``config.yaml``).
A blob is addressed by its *path* relative to that directory::

    {owner_id}/{game_id}/{uuid}{ext}

Uploads made before a game exists go under ``{owner_id}/unassigned/``.
Paths are what the database stores in ``GameImage.image_url``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import os
import re
import shutil
import uuid
from pathlib import Path

from tabletop.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STORAGE_DIR = Path(os.getenv("TABLETOP_STORAGE_DIR", "storage"))
MAX_FILE_SIZE = 25 * 1024 * 1024  # 25 MB
UNASSIGNED = "unassigned"
ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
ALLOWED_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
}

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def set_storage_dir(path: str | Path) -> None:
    """Point the service at a different blob directory."""
    global STORAGE_DIR
    STORAGE_DIR = Path(path)


def ensure_storage_dir() -> None:
    STORAGE_DIR.mkdir(parents=True, exist_ok=True)


def _segment(value: str, label: str) -> str:
    if not _SEGMENT_RE.match(value):
        raise ValidationError(f"Invalid {label}: {value!r}")
    return value


def _resolve(path: str) -> Path:
    """Map a blob path to a file under :data:`STORAGE_DIR`.

    Rejects absolute paths and anything that escapes the directory.
    """
    if not path or path.startswith(("/", "\\")) or ".." in Path(path).parts:
        raise ValidationError(f"Invalid storage path: {path!r}")
    root = STORAGE_DIR.resolve()
    target = (root / path).resolve()
    if not target.is_relative_to(root):
        raise ValidationError(f"Invalid storage path: {path!r}")
    return target


def owns_path(owner_id: str, path: str) -> bool:
    """True if *path* lives under the owner's folder."""
    return path.startswith(f"{owner_id}/")


def guess_mime(path: str) -> str:
    mime, _ = mimetypes.guess_type(path)
    return mime or "application/octet-stream"


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------
async def save_upload(
    owner_id: str,
    game_id: str | None,
    filename: str,
    content: bytes,
    content_type: str | None = None,
    max_bytes: int = MAX_FILE_SIZE,
) -> str:
    """Validate and persist an uploaded image.

    Parameters
    ----------
    owner_id:
        The uploading user; first path segment.
    game_id:
        Game the image belongs to, or ``None`` before the game exists.
    filename:
        Original filename from the upload (only its extension is kept).
    content:
        Raw file bytes.
    content_type:
        MIME type from the upload header.

    Returns
    -------
    str
        Blob path, e.g. ``"u1/5d1c…/9f0e….png"``.

    Raises
    ------
    ValidationError
        Empty, too large, or not an allowed image type.
    """
    if not content:
        raise ValidationError("Uploaded file is empty")

    if len(content) > max_bytes:
        raise ValidationError(
            f"File too large: {len(content)} bytes (max {max_bytes // 1024 // 1024}MB)"
        )

    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(
            f"File type not allowed: {ext!r}. "
            f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    if content_type and content_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            f"MIME type not allowed: {content_type!r}. "
            f"Allowed: {', '.join(sorted(ALLOWED_MIME_TYPES))}"
        )

    folder = f"{_segment(owner_id, 'owner id')}/{_segment(game_id or UNASSIGNED, 'game id')}"
    path = f"{folder}/{uuid.uuid4().hex}{ext}"
    dest = _resolve(path)

    def _write() -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)

    await asyncio.to_thread(_write)
    logger.info("Stored blob %s (%d bytes)", path, len(content))
    return path


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------
async def download(path: str) -> bytes:
    """Read a blob's bytes.

    Raises
    ------
    NotFoundError
        No blob at *path*.
    """
    target = _resolve(path)
    if not target.is_file():
        raise NotFoundError(f"Failed to download image: {path}")
    return await asyncio.to_thread(target.read_bytes)


async def download_data_url(path: str) -> str:
    """Blob contents as an inline ``data:<mime>;base64,…`` URL."""
    content = await download(path)
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{guess_mime(path)};base64,{encoded}"


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------
def delete_blob(path: str) -> bool:
    """Remove one blob.  Returns True if it existed."""
    target = _resolve(path)
    if target.is_file():
        target.unlink()
        return True
    return False


def delete_prefix(owner_id: str, game_id: str) -> int:
    """Remove every blob a user stored for a game.  Returns the count."""
    folder = _resolve(f"{_segment(owner_id, 'owner id')}/{_segment(game_id, 'game id')}")
    if not folder.is_dir():
        return 0
    count = sum(1 for p in folder.rglob("*") if p.is_file())
    shutil.rmtree(folder)
    logger.info("Deleted %d blob(s) under %s/%s", count, owner_id, game_id)
    return count
