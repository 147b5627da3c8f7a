#!/usr/bin/env python3
"""
Collection Archive Writer for PFP Forge
Streams per-token images and metadata into a single ZIP container
"""

import json
import logging
import os
import threading
import zipfile
from pathlib import Path
from typing import Optional

from errors import ArchiveWriteFailure
from metadata_builder import build_placeholder_metadata
from settings import ARCHIVE_COMPRESSLEVEL

logger = logging.getLogger(__name__)

IMAGES_FOLDER = "images"
METADATA_FOLDER = "metadata"
REVEAL_FOLDER = "reveal_data"


def image_entry_name(token_id: int, extension: str) -> str:
    return f"{IMAGES_FOLDER}/{token_id}.{extension}"


def metadata_entry_name(token_id: int) -> str:
    # No .json extension: marketplaces resolve <base>/<id> directly.
    return f"{METADATA_FOLDER}/{token_id}"


def reveal_entry_name(token_id: int) -> str:
    return f"{REVEAL_FOLDER}/{token_id}.json"


class CollectionArchive:
    """
    Single-writer ZIP archive that is either finalized once or discarded.

    Entries are written to ``<destination>.part`` as they arrive, so the
    archive never has to hold more than one entry in memory. ``finalize``
    renames the part file into place; until then nothing exists at
    ``destination``.
    """

    def __init__(self, destination, compresslevel: int = ARCHIVE_COMPRESSLEVEL):
        self.destination = Path(destination)
        self.part_path = self.destination.with_name(self.destination.name + '.part')
        self.entry_count = 0
        self.finalized = False
        self.discarded = False
        self._lock = threading.Lock()

        try:
            self.destination.parent.mkdir(parents=True, exist_ok=True)
            self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
                self.part_path, 'w', zipfile.ZIP_DEFLATED, compresslevel=compresslevel
            )
        except OSError as e:
            raise ArchiveWriteFailure(f"Could not create archive {self.part_path}: {e}") from e

    def __enter__(self) -> 'CollectionArchive':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.finalized:
            self.discard()

    def add_entry(self, name: str, data, token_id: Optional[int] = None) -> None:
        """Append one named entry (bytes or str)."""
        with self._lock:
            if self._zip is None:
                state = "finalized" if self.finalized else "discarded"
                raise ArchiveWriteFailure(f"Cannot write {name}: archive already {state}", token_id)
            try:
                self._zip.writestr(name, data)
            except (OSError, ValueError, zipfile.BadZipFile) as e:
                raise ArchiveWriteFailure(f"Failed to write {name}: {e}", token_id) from e
            self.entry_count += 1

    def add_token(self, token_id: int, image_bytes: bytes, extension: str, metadata_json: str,
                  reveal_record: Optional[dict] = None) -> None:
        self.add_entry(image_entry_name(token_id, extension), image_bytes, token_id)
        self.add_entry(metadata_entry_name(token_id), metadata_json, token_id)
        if reveal_record is not None:
            self.add_entry(reveal_entry_name(token_id), json.dumps(reveal_record, indent=2), token_id)

    def finalize(self) -> Path:
        """Close the container and move it into place. Allowed exactly once."""
        with self._lock:
            if self.finalized or self._zip is None:
                raise ArchiveWriteFailure(f"Archive {self.destination} cannot be finalized twice or after discard")
            try:
                self._zip.close()
                self._zip = None
                os.replace(self.part_path, self.destination)
            except OSError as e:
                self._zip = None
                self._remove_part()
                raise ArchiveWriteFailure(f"Failed to finalize {self.destination}: {e}") from e
            self.finalized = True

        logger.info(f"Finalized archive {self.destination} with {self.entry_count} entries")
        return self.destination

    def discard(self) -> None:
        """Drop the partial archive. Safe to call more than once."""
        with self._lock:
            if self.finalized or self.discarded:
                return
            if self._zip is not None:
                try:
                    self._zip.close()
                except OSError as e:
                    logger.warning(f"Error closing partial archive {self.part_path}: {e}")
                self._zip = None
            self._remove_part()
            self.discarded = True
        logger.info(f"Discarded partial archive {self.part_path}")

    def _remove_part(self) -> None:
        try:
            self.part_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial archive {self.part_path}: {e}")


def build_placeholder_metadata_archive(destination, count: int, media_base_uri: str,
                                       extension: str = "png") -> Path:
    """
    Create a ZIP of empty metadata documents for placeholder minting.

    Returns:
        Path of the finalized archive
    """
    if count <= 0:
        raise ValueError("Placeholder count must be a positive integer")

    with CollectionArchive(destination, compresslevel=9) as archive:
        for token_id in range(1, count + 1):
            document = build_placeholder_metadata(token_id, media_base_uri, extension)
            archive.add_entry(metadata_entry_name(token_id), json.dumps(document, indent=2), token_id)
        return archive.finalize()
