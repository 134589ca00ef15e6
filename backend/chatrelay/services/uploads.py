"""Write uploaded files to the upload directory."""

from pathlib import Path
from typing import List
import random
import time

from chatrelay.schemas.chat import AttachmentFile


def storage_name(filename: str) -> str:
    """Unique on-disk name keeping the original basename."""
    basename = Path(filename or "upload").name
    return f"files-{int(time.time() * 1000)}-{random.randint(0, 10**9)}-{basename}"


def save_upload(upload_dir: str, filename: str, mimetype: str, content: bytes) -> AttachmentFile:
    directory = Path(upload_dir)
    directory.mkdir(parents=True, exist_ok=True)

    path = directory / storage_name(filename)
    path.write_bytes(content)

    return AttachmentFile(
        filename=filename,
        path=str(path),
        mimetype=mimetype or "application/octet-stream",
    )


def discard_uploads(files: List[AttachmentFile]) -> None:
    """Remove stored uploads that no session will refer to."""
    for file in files:
        Path(file.path).unlink(missing_ok=True)
