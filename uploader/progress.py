"""Resumable upload progress records persisted as JSON."""

import os
from pathlib import Path
from typing import List, Set

from pydantic import BaseModel, Field, ValidationError

from common.logging_config import get_logger

logger = get_logger(__name__)


def _compact(address: str) -> str:
    return "".join(address.split())


class PlannedChunk(BaseModel):
    """One planned chunk write; `write_reference` is empty until it succeeds."""
    index: int
    payload_hex: str = ""
    write_reference: str = ""


class UploadProgress(BaseModel):
    """Progress of one cartridge upload."""
    app_id: int
    cartridge_id: int
    cartridge_address: str
    total_chunks: int
    checksum_hex: str = ""
    sent_chunks: int = 0
    failed_chunks: List[int] = Field(default_factory=list)
    header_reference: str = ""
    catalog_reference: str = ""
    plan: List[PlannedChunk] = Field(default_factory=list)

    def matches(
        self, app_id: int, cartridge_id: int, address: str, total_chunks: int, checksum_hex: str = ""
    ) -> bool:
        """
        Whether this record belongs to the given upload.

        Checksums are compared only when both sides carry one, so content
        edited without changing its size is not resumed.
        """
        if self.checksum_hex and checksum_hex and self.checksum_hex.lower() != checksum_hex.lower():
            return False
        return (
            self.app_id == app_id
            and self.cartridge_id == cartridge_id
            and _compact(self.cartridge_address) == _compact(address)
            and self.total_chunks == total_chunks
        )

    def completed_indices(self) -> Set[int]:
        return {c.index for c in self.plan if c.write_reference}

    @property
    def all_chunks_sent(self) -> bool:
        return len(self.completed_indices()) >= self.total_chunks

    def planned(self, index: int) -> PlannedChunk:
        """Plan slot for a chunk index, created if missing."""
        if index < len(self.plan) and self.plan[index].index == index:
            return self.plan[index]
        for planned in self.plan:
            if planned.index == index:
                return planned
        planned = PlannedChunk(index=index)
        self.plan.append(planned)
        return planned

    def mark_sent(self, index: int, payload_hex: str, reference: str) -> None:
        """Record a successful chunk write (idempotent per index)."""
        planned = self.planned(index)
        if not planned.write_reference:
            self.sent_chunks += 1
        planned.payload_hex = payload_hex
        planned.write_reference = reference
        if index in self.failed_chunks:
            self.failed_chunks.remove(index)

    def mark_failed(self, index: int) -> None:
        if index not in self.failed_chunks:
            self.failed_chunks.append(index)


class ProgressStore:
    """
    Stores one JSON file per (app id, cartridge id) in a directory.

    Files are written atomically and left in place after completion.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, app_id: int, cartridge_id: int) -> Path:
        return self.directory / f"upload_cartridge_{app_id}_{cartridge_id}.json"

    def load(
        self, app_id: int, cartridge_id: int, address: str, total_chunks: int, checksum_hex: str = ""
    ) -> UploadProgress:
        """
        Load saved progress when it belongs to the same upload, else start fresh.

        A record whose app id, cartridge id, address, chunk count or content
        checksum differs, or that cannot be parsed, is ignored.

        Returns:
            Progress record to continue from
        """
        fresh = UploadProgress(
            app_id=app_id,
            cartridge_id=cartridge_id,
            cartridge_address=address,
            total_chunks=total_chunks,
            checksum_hex=checksum_hex,
        )
        path = self.path_for(app_id, cartridge_id)
        if not path.exists():
            return fresh

        try:
            saved = UploadProgress.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            logger.warning(f"Ignoring unreadable progress file {path}: {e}")
            return fresh

        if not saved.matches(app_id, cartridge_id, address, total_chunks, checksum_hex):
            logger.warning(
                f"Progress file {path} belongs to a different upload "
                f"[address={saved.cartridge_address}, total={saved.total_chunks}], starting fresh"
            )
            return fresh

        saved.sent_chunks = len(saved.completed_indices())
        if not saved.checksum_hex:
            saved.checksum_hex = checksum_hex
        logger.info(
            f"Resuming upload: {len(saved.completed_indices())}/{total_chunks} chunks already sent "
            f"[path={path}]"
        )
        return saved

    def save(self, progress: UploadProgress) -> Path:
        """
        Write progress atomically (temp file + rename).

        Returns:
            Path of the progress file
        """
        path = self.path_for(progress.app_id, progress.cartridge_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(progress.model_dump_json(indent=2))
        os.replace(tmp_path, path)
        logger.debug(f"Saved progress {progress.sent_chunks}/{progress.total_chunks} [path={path}]")
        return path
