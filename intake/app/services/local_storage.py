"""
Direct multipart uploads to the local upload directory.

Files are streamed chunk by chunk from the spooled multipart part to disk.
A client that disconnects mid-upload leaves a truncated file behind.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Union

import anyio

logger = logging.getLogger("intake.local_storage")

CHUNK_SIZE = 64 * 1024


class UploadPart(Protocol):
    filename: str

    async def read(self, size: int = -1) -> bytes:
        ...


@dataclass(frozen=True)
class StoredFile:
    filename: str
    bytes: int
    saved_path: str


class LocalUploadStore:
    def __init__(self, upload_dir: Union[str, Path]) -> None:
        self.root = Path(upload_dir).resolve()

    def plate_path(self, registration_id: str, plate_number: str, filename: str) -> Path:
        return self._contained(
            self.root / registration_id / "plates" / f"{plate_number}_{filename}"
        )

    def general_path(self, registration_id: str, filename: str) -> Path:
        return self._contained(self.root / registration_id / "general" / filename)

    def _contained(self, path: Path) -> Path:
        """
        Resolve `path` and ensure it stays inside the upload directory.

        Raises ValueError for path segments that would escape it.
        """
        candidate = path.resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Upload path escapes upload directory: {candidate}")
        if candidate == self.root:
            raise ValueError("Upload path must name a file")
        return candidate

    async def save(self, part: UploadPart, destination: Path) -> StoredFile:
        await anyio.Path(destination.parent).mkdir(parents=True, exist_ok=True)

        written = 0
        async with await anyio.open_file(destination, "wb") as out:
            while True:
                chunk = await part.read(CHUNK_SIZE)
                if not chunk:
                    break
                await out.write(chunk)
                written += len(chunk)

        logger.info(
            "local_upload_saved",
            extra={"saved_path": str(destination), "bytes": written},
        )
        return StoredFile(
            filename=part.filename,
            bytes=written,
            saved_path=str(destination),
        )
