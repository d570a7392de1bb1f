# -*- coding: utf-8 -*-
"""
dat2_format.py

Reader and writer for Fallout 2 DAT archives (DAT2).

All integers are little-endian. The layout is:
1.  File data: every entry's stored bytes, concatenated. An entry is either
    stored as-is or zlib compressed.
2.  Directory tree:
    - File count (4 bytes, uint32)
    - For each file:
        - Filename size (4 bytes, uint32)
        - Filename (backslash separated, not NUL terminated)
        - Compression type (1 byte): 0 stored, 1 zlib
        - Real size (4 bytes, uint32)
        - Packed size (4 bytes, uint32)
        - Offset (4 bytes, uint32), absolute from the start of the file
3.  Footer (8 bytes):
    - Tree size (uint32): bytes from the file count to the end of the tree
    - DAT size (uint32): size of the whole archive

The game expects the file list sorted by name, case-insensitively.
"""

import struct
import zlib
from typing import Iterable, List, Optional, Sequence, Tuple

from dat_common import (
    AddSource,
    BinaryCursor,
    CompressionStreamError,
    ExtractionMode,
    FileEntry,
    InvalidFormatError,
    ListingRow,
    NamePolicy,
    check_u32,
    decode_filename,
    encode_filename,
    extract_entries,
    filter_entries,
    find_entry,
    listing_rows,
    normalize_archive_path,
    normalize_path_for_display,
    resolve_sources,
    run_parallel,
    sort_key,
    validate_compression_level,
    write_archive_file,
)

# --- Constants ---
FOOTER = struct.Struct("<II")  # tree_size, dat_size
FILE_COUNT = struct.Struct("<I")
NAME_SIZE = struct.Struct("<I")
ENTRY_FIELDS = struct.Struct("<BIII")  # compression_type, real_size, packed_size, offset
COMPRESSION_STORED = 0
COMPRESSION_ZLIB = 1
MIN_TREE_START = 4


class Dat2Archive:
    """
    A Fallout 2 archive held in memory.

    Entries parsed from an existing file point into the original buffer and
    are copied only when read or saved. Added entries carry their own bytes.
    """

    def __init__(self, data: bytes = b"", files: Optional[List[FileEntry]] = None, name_policy: NamePolicy = NamePolicy.LEGACY):
        self._data: bytes = data
        self._files: List[FileEntry] = files if files is not None else []
        self.name_policy = name_policy

    @classmethod
    def from_bytes(cls, data: bytes, name_policy: NamePolicy = NamePolicy.LEGACY) -> "Dat2Archive":
        """Parses a complete DAT2 archive."""
        data = bytes(data)
        if len(data) < FOOTER.size:
            raise InvalidFormatError(f"DAT2 file too small ({len(data)} bytes).")
        files = cls._parse_directory_tree(data, name_policy)
        return cls(data, files, name_policy)

    @staticmethod
    def _parse_directory_tree(data: bytes, name_policy: NamePolicy) -> List[FileEntry]:
        tree_size, dat_size = FOOTER.unpack_from(data, len(data) - FOOTER.size)
        if dat_size != len(data):
            raise InvalidFormatError(f"DAT size mismatch: footer says {dat_size}, file is {len(data)} bytes.")

        tree_start = dat_size - tree_size - FOOTER.size
        # A tree at offset 0 means an empty data region
        if tree_start < 0 or 0 < tree_start < MIN_TREE_START:
            raise InvalidFormatError(f"Invalid directory tree position {tree_start} (tree size {tree_size}, DAT size {dat_size}).")

        cursor = BinaryCursor(data, tree_start, len(data) - FOOTER.size)
        (file_count,) = cursor.read(FILE_COUNT, "file count")

        files = []
        for i in range(file_count):
            (name_size,) = cursor.read(NAME_SIZE, f"filename size of entry {i}")
            name = decode_filename(cursor.read_bytes(name_size, f"filename of entry {i}"), name_policy)
            compression_type, real_size, packed_size, offset = cursor.read(ENTRY_FIELDS, f'record of "{name}"')
            files.append(
                FileEntry(
                    name=name,
                    offset=offset,
                    size=real_size,
                    packed_size=packed_size,
                    compressed=compression_type == COMPRESSION_ZLIB,
                )
            )
        return files

    # --- Queries ---
    def entries(self) -> List[FileEntry]:
        return list(self._files)

    def list(self, patterns: Sequence[str] = ()) -> Tuple[List[ListingRow], List[str]]:
        """Returns listing rows for entries matching ``patterns`` and the patterns that matched nothing."""
        selected, missing = filter_entries(self._files, patterns)
        return listing_rows(selected), missing

    def find(self, name: str) -> FileEntry:
        return find_entry(self._files, name)

    def read(self, entry: FileEntry) -> bytes:
        """Returns the original bytes of an entry, inflating compressed ones."""
        packed = entry.read_packed(memoryview(self._data))
        if not entry.compressed:
            return bytes(packed)
        try:
            data = zlib.decompress(packed, bufsize=max(entry.size, 1))
        except zlib.error as e:
            raise CompressionStreamError(f'Failed to decompress "{entry.name}": {e}') from e
        if len(data) != entry.size:
            raise CompressionStreamError(f'Size mismatch after decompressing "{entry.name}": expected {entry.size}, got {len(data)}.')
        return data

    def extract(self, output_dir: str, patterns: Sequence[str] = (), mode: ExtractionMode = ExtractionMode.PRESERVE_STRUCTURE, jobs: Optional[int] = None, verbose: bool = True) -> Tuple[int, List[str]]:
        return extract_entries(self._files, self.read, output_dir, patterns, mode, jobs, verbose)

    # --- Modification ---
    @staticmethod
    def _prepare_entry(name: str, data: bytes, level: int) -> FileEntry:
        if level > 0:
            packed = zlib.compress(data, level)
            if len(packed) < len(data):
                return FileEntry.with_compression(name, data, packed)
        return FileEntry.stored(name, data)

    def add(self, sources: Iterable[AddSource], compression: int, jobs: Optional[int] = None, verbose: bool = True) -> List[FileEntry]:
        """
        Adds files, compressing each one on a thread pool.

        A file is stored compressed only when zlib makes it strictly smaller.
        Existing entries with the same name, ignoring case, are replaced;
        within the batch the first occurrence wins. The file list is re-sorted
        afterwards.
        """
        level = validate_compression_level(compression)
        resolved = resolve_sources(sources)

        def prepare(item: Tuple[str, bytes]) -> FileEntry:
            name, data = item
            encode_filename(name, self.name_policy)
            if verbose:
                print(f"Adding: {normalize_path_for_display(name)}")
            return self._prepare_entry(name, data, level)

        new_entries = run_parallel(prepare, resolved, jobs)

        new_names = {entry.name.lower() for entry in new_entries}
        self._files = [entry for entry in self._files if entry.name.lower() not in new_names]
        self._files.extend(new_entries)
        self._files.sort(key=sort_key)
        return new_entries

    def delete(self, names: Iterable[str], verbose: bool = True) -> List[str]:
        """Removes entries by name (either separator, any case); returns the names that were not found."""
        missing = []
        for name in names:
            target = normalize_archive_path(name).lower()
            kept = [entry for entry in self._files if entry.name.lower() != target]
            if len(kept) == len(self._files):
                missing.append(name)
                continue
            if verbose:
                print(f"Deleting: {normalize_path_for_display(normalize_archive_path(name))}")
            self._files = kept
        return missing

    # --- Serialization ---
    def to_bytes(self) -> bytes:
        """Serializes the archive: file data from offset 0, then the tree, then the footer."""
        source = memoryview(self._data)
        output = bytearray()
        offsets = []
        for entry in self._files:
            offsets.append(check_u32(len(output), f'Offset of "{entry.name}"'))
            output += entry.read_packed(source)

        tree_start = len(output)
        output += FILE_COUNT.pack(len(self._files))
        for entry, offset in zip(self._files, offsets):
            raw_name = encode_filename(entry.name, self.name_policy)
            output += NAME_SIZE.pack(len(raw_name))
            output += raw_name
            output += ENTRY_FIELDS.pack(COMPRESSION_ZLIB if entry.compressed else COMPRESSION_STORED, entry.size, entry.packed_size, offset)

        tree_size = len(output) - tree_start
        dat_size = check_u32(len(output) + FOOTER.size, "Archive size")
        output += FOOTER.pack(tree_size, dat_size)
        return bytes(output)

    def save(self, path: str):
        write_archive_file(path, self.to_bytes())
