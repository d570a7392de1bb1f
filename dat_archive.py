# -*- coding: utf-8 -*-
"""
dat_archive.py

Format detection and a single interface over Fallout 1 (DAT1) and Fallout 2
(DAT2) archives.

Neither format carries a signature. An archive is treated as DAT1 when its
first two big-endian words look like a plausible directory count followed by
one of the known DAT1 format identifiers; anything else is opened as DAT2.
"""

import enum
import os
import struct
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import dat1_format
import dat2_format
from dat_common import (
    AddSource,
    DatError,
    ExtractionMode,
    FileEntry,
    ListingRow,
    NamePolicy,
    sources_from_paths,
    validate_compression_level,
)

DETECT_HEADER = struct.Struct(">II")
MAX_DAT1_DIRECTORIES = 1000
DAT1_FORMAT_IDS = (dat1_format.FORMAT_ID, dat1_format.FORMAT_ID_ALT)


class ArchiveFormat(enum.Enum):
    DAT1 = "dat1"
    DAT2 = "dat2"


def detect_format(data: bytes) -> ArchiveFormat:
    """Guesses the archive format from the first 8 bytes."""
    if len(data) < DETECT_HEADER.size:
        return ArchiveFormat.DAT2
    dir_count, format_id = DETECT_HEADER.unpack_from(data, 0)
    if 0 < dir_count < MAX_DAT1_DIRECTORIES and format_id in DAT1_FORMAT_IDS:
        return ArchiveFormat.DAT1
    return ArchiveFormat.DAT2


_CODECS = {
    ArchiveFormat.DAT1: dat1_format.Dat1Archive,
    ArchiveFormat.DAT2: dat2_format.Dat2Archive,
}


class DatArchive:
    """
    A DAT archive of either format.

    Holds exactly one codec instance and forwards every operation to it.
    """

    def __init__(self, archive_format: ArchiveFormat, codec: Union[dat1_format.Dat1Archive, dat2_format.Dat2Archive]):
        self.format = archive_format
        self._codec = codec

    @classmethod
    def new(cls, archive_format: ArchiveFormat = ArchiveFormat.DAT2, name_policy: NamePolicy = NamePolicy.LEGACY) -> "DatArchive":
        codec_class = _CODECS[archive_format]
        return cls(archive_format, codec_class(name_policy=name_policy))

    @classmethod
    def new_dat1(cls, name_policy: NamePolicy = NamePolicy.LEGACY) -> "DatArchive":
        return cls.new(ArchiveFormat.DAT1, name_policy)

    @classmethod
    def new_dat2(cls, name_policy: NamePolicy = NamePolicy.LEGACY) -> "DatArchive":
        return cls.new(ArchiveFormat.DAT2, name_policy)

    @classmethod
    def from_bytes(cls, data: bytes, name_policy: NamePolicy = NamePolicy.LEGACY) -> "DatArchive":
        archive_format = detect_format(data)
        return cls(archive_format, _CODECS[archive_format].from_bytes(data, name_policy))

    @classmethod
    def open(cls, path: str, name_policy: NamePolicy = NamePolicy.LEGACY) -> "DatArchive":
        """Reads and parses an archive file."""
        if not os.path.exists(path):
            raise FileNotFoundError(f'DAT file not found: "{path}"')
        try:
            with open(path, "rb") as f_in:
                data = f_in.read()
        except OSError as e:
            raise DatError(f'Failed to read DAT file "{path}": {e}') from e
        return cls.from_bytes(data, name_policy)

    @property
    def name_policy(self) -> NamePolicy:
        return self._codec.name_policy

    # --- Operations ---
    def entries(self) -> List[FileEntry]:
        return self._codec.entries()

    def list(self, patterns: Sequence[str] = ()) -> Tuple[List[ListingRow], List[str]]:
        return self._codec.list(patterns)

    def read(self, name: str) -> bytes:
        """Returns the decompressed contents of one entry."""
        return self._codec.read(self._codec.find(name))

    def extract(self, output_dir: str, patterns: Sequence[str] = (), flat: bool = False, jobs: Optional[int] = None, verbose: bool = True) -> Tuple[int, List[str]]:
        mode = ExtractionMode.FLAT if flat else ExtractionMode.PRESERVE_STRUCTURE
        return self._codec.extract(output_dir, patterns, mode, jobs, verbose)

    def add(self, sources: Iterable[AddSource], compression: int, jobs: Optional[int] = None, verbose: bool = True) -> List[FileEntry]:
        return self._codec.add(sources, compression, jobs, verbose)

    def add_paths(self, paths: Sequence[str], compression: int, target_dir: Optional[str] = None, jobs: Optional[int] = None, verbose: bool = True) -> List[FileEntry]:
        """Adds local files, directories and glob patterns."""
        validate_compression_level(compression)
        return self.add(sources_from_paths(paths, target_dir), compression, jobs, verbose)

    def delete(self, names: Iterable[str], verbose: bool = True) -> List[str]:
        return self._codec.delete(names, verbose)

    def to_bytes(self) -> bytes:
        return self._codec.to_bytes()

    def save(self, path: str):
        self._codec.save(path)
