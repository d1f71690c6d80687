"""
Safe extraction and structural checks for uploaded container archives.

Rules applied to every archive entry, in this order:
- no absolute paths and no ``..`` segments
- no hidden/system entries (``.name`` or ``__MACOSX`` at any depth)
- no nested archives
- directory entries are skipped

Extracted files then go through a content check for the DICOM magic (``DICM`` at offset 128).
"""

from __future__ import annotations

import logging
import shutil
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Iterable

from upload_scanner.core.config import settings


logger = logging.getLogger(__name__)

HIDDEN_PREFIXES = (".", "__macosx")

DICOM_PREAMBLE_LENGTH = 128
DICOM_MAGIC = b"DICM"
DICOM_MIN_LENGTH = DICOM_PREAMBLE_LENGTH + len(DICOM_MAGIC)

COPY_CHUNK_BYTES = 81920


class ArchiveValidationError(Exception):
    """An archive or an extracted file failed a safety or content check."""


def container_extensions() -> list[str]:
    return list(settings.CONTAINER_EXTENSIONS or [".zip"])


def is_container_filename(filename: str | None) -> bool:
    name = (filename or "").strip().lower()
    return any(name.endswith(ext) for ext in container_extensions())


def _segments(entry_name: str) -> list[str]:
    normalized = entry_name.replace("\\", "/")
    return [s for s in normalized.split("/") if s]


def check_entry_name(entry_name: str) -> None:
    """
    Raise ArchiveValidationError if ``entry_name`` must not be extracted.
    """
    normalized = entry_name.replace("\\", "/")
    segments = _segments(entry_name)

    if normalized.startswith("/") or (segments and len(segments[0]) == 2 and segments[0][1] == ":"):
        raise ArchiveValidationError(f"Archive entry has an absolute path: {entry_name}")

    if any(s == ".." for s in segments):
        raise ArchiveValidationError(f"Archive entry contains path traversal: {entry_name}")

    if any(s.lower().startswith(HIDDEN_PREFIXES) for s in segments):
        raise ArchiveValidationError(f"Archive contains hidden or system entry: {entry_name}")

    if not normalized.endswith("/") and is_container_filename(normalized):
        raise ArchiveValidationError(f"Nested archives are not allowed: {entry_name}")


def _destination(extract_dir: Path, entry_name: str) -> Path:
    root = extract_dir.resolve()
    destination = root.joinpath(*PurePosixPath("/".join(_segments(entry_name))).parts).resolve()
    if destination != root and root not in destination.parents:
        raise ArchiveValidationError(f"Archive entry escapes extraction directory: {entry_name}")
    return destination


def _check_limits(entries: list[zipfile.ZipInfo]) -> None:
    if len(entries) > settings.ARCHIVE_MAX_ENTRIES:
        raise ArchiveValidationError(
            f"Archive has too many entries ({len(entries)} > {settings.ARCHIVE_MAX_ENTRIES})"
        )
    declared = sum(e.file_size for e in entries)
    if declared > settings.ARCHIVE_MAX_TOTAL_BYTES:
        raise ArchiveValidationError(
            f"Archive expands to too many bytes ({declared} > {settings.ARCHIVE_MAX_TOTAL_BYTES})"
        )


def extract_and_validate(archive_path: Path | str, extract_dir: Path | str) -> list[Path]:
    """
    Extract every acceptable entry of ``archive_path`` under ``extract_dir`` and return the
    extracted file paths. Any rejected entry aborts the whole archive; nothing is skipped
    silently except directory entries.
    """
    archive_path = Path(archive_path)
    extract_dir = Path(extract_dir)
    extract_dir.mkdir(parents=True, exist_ok=True)

    extracted: list[Path] = []
    try:
        with zipfile.ZipFile(archive_path) as zf:
            entries = zf.infolist()
            _check_limits(entries)

            for info in entries:
                logger.debug("Inspecting archive entry %s (size=%s)", info.filename, info.file_size)
                check_entry_name(info.filename)

                if info.is_dir():
                    logger.debug("Skipping directory entry %s", info.filename)
                    continue

                destination = _destination(extract_dir, info.filename)
                destination.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(destination, "wb") as out:
                    shutil.copyfileobj(src, out, COPY_CHUNK_BYTES)

                extracted.append(destination)
                logger.debug("Extracted %s -> %s", info.filename, destination)
    except zipfile.BadZipFile as exc:
        raise ArchiveValidationError(f"Not a readable archive: {archive_path.name}") from exc
    except (zlib.error, RuntimeError, NotImplementedError, EOFError) as exc:
        # Corrupt deflate data, encrypted entries, unsupported compression, truncated members.
        raise ArchiveValidationError(f"Not a readable archive: {archive_path.name} ({exc})") from exc

    logger.info("Extracted %s file(s) from %s", len(extracted), archive_path.name)
    return extracted


def validate_dicom_file(path: Path | str) -> bool:
    """
    Return True if the DICM magic is present, False if it is absent (tolerated: implicit VR
    files may omit the preamble). Files too short to hold the magic are rejected.
    """
    path = Path(path)
    with open(path, "rb") as fh:
        fh.seek(0, 2)
        length = fh.tell()
        if length < DICOM_MIN_LENGTH:
            raise ArchiveValidationError(f"Invalid DICOM file (length={length}): {path.name}")
        fh.seek(DICOM_PREAMBLE_LENGTH)
        magic = fh.read(len(DICOM_MAGIC))

    if magic == DICOM_MAGIC:
        return True

    logger.warning("File %s missing DICM magic; accepting as implicit VR DICOM", path.name)
    return False


def validate_dicom_files(paths: Iterable[Path | str]) -> None:
    count = 0
    for path in paths:
        if Path(path).is_dir():
            continue
        validate_dicom_file(path)
        count += 1
    logger.info("DICOM validation passed for %s file(s)", count)
