import logging
import os
from pathlib import Path
from typing import List, Optional

from fastapi import UploadFile
from PIL import Image

from .errors import FilesystemError, PayloadTooLarge, ValidationError
from .storage import ArtifactStore

logger = logging.getLogger(__name__)


def _present(part: Optional[UploadFile]) -> bool:
    # browsers send an empty filename for an unselected file input
    return part is not None and bool(part.filename)


def _part_size(part: UploadFile) -> int:
    if part.size is not None:
        return part.size
    f = part.file
    pos = f.tell()
    f.seek(0, os.SEEK_END)
    size = f.tell()
    f.seek(pos)
    return size


def _verify_image(part: UploadFile, label: str) -> None:
    part.file.seek(0)
    try:
        with Image.open(part.file) as image:
            image.verify()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise ValidationError(f"{label} is not a readable image") from exc
    finally:
        part.file.seek(0)


class UploadManager:
    """Validates multipart parts and writes them into the staging area."""

    def __init__(self, store: ArtifactStore, max_upload_bytes: int, verify_carrier: bool = False):
        self.store = store
        self.max_upload_bytes = max_upload_bytes
        self.verify_carrier = verify_carrier

    async def stage_encode(
        self, carrier: Optional[UploadFile], payload: Optional[UploadFile]
    ) -> List[Path]:
        if not _present(carrier) or not _present(payload):
            raise ValidationError("Both cover image and secret file are required")
        return await self._stage([carrier, payload], "Cover image")

    async def stage_decode(self, carrier: Optional[UploadFile]) -> List[Path]:
        if not _present(carrier):
            raise ValidationError("Stego image is required")
        return await self._stage([carrier], "Stego image")

    async def _stage(self, parts: List[UploadFile], carrier_label: str) -> List[Path]:
        total = sum(_part_size(p) for p in parts)
        if total > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise PayloadTooLarge(f"Upload exceeds the {limit_mb:g}MB limit")

        if self.verify_carrier:
            _verify_image(parts[0], carrier_label)

        staged: List[Path] = []
        try:
            for part in parts:
                dest = self.store.new_staging_path(part.filename)
                staged.append(dest)
                await part.seek(0)
                dest.write_bytes(await part.read())
        except OSError as exc:
            logger.error("Staging failed: %s", exc)
            self.store.discard(staged)
            raise FilesystemError("Server error: could not stage upload") from exc

        logger.info("Staged %d upload(s): %s", len(staged), ", ".join(p.name for p in staged))
        return staged
