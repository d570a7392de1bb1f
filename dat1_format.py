# -*- coding: utf-8 -*-
"""
dat1_format.py

Reader and writer for Fallout 1 DAT archives (DAT1).

All integers are big-endian. The layout is:
1.  Header (16 bytes): directory count, then three reserved words
    (the first is 0x0A or 0x5E in game archives).
2.  Directory names: for each directory a length byte and the name. The
    root directory is ".".
3.  Directory records, in the same order as the names:
    - File count and three reserved words (16 bytes)
    - For each file:
        - Name length (1 byte) and name, relative to the directory
        - Attributes (4 bytes): 0x40 LZSS compressed, 0x20 stored
        - Offset (4 bytes), absolute from the start of the file
        - Size (4 bytes), original length
        - Packed size (4 bytes), 0 for stored files
4.  File data, in record order.

Compressed entries are decoded with dat_lzss. New entries are always stored.
"""

import struct
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import dat_lzss
from dat_common import (
    ARCHIVE_SEPARATOR,
    AddSource,
    BinaryCursor,
    DatError,
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
    split_archive_path,
    validate_compression_level,
    write_archive_file,
)

# --- Constants ---
HEADER = struct.Struct(">IIII")  # dir_count + 3 reserved
DIR_HEADER = struct.Struct(">IIII")  # file_count + 3 reserved
FILE_FIELDS = struct.Struct(">IIII")  # attributes, offset, size, packed_size
NAME_LENGTH = struct.Struct(">B")
MAX_NAME_LENGTH = 255

ROOT_DIRECTORY = "."
ATTR_COMPRESSED = 0x40
ATTR_STORED = 0x20
FORMAT_ID = 0x0A
FORMAT_ID_ALT = 0x5E
DEFAULT_HEADER_RESERVED = (FORMAT_ID, 0, 0)
DEFAULT_DIRECTORY_RESERVED = (FORMAT_ID, 0x10, 0)


@dataclass
class Directory:
    """A DAT1 directory; ``files`` hold full archive names."""

    name: str
    files: List[FileEntry] = field(default_factory=list)
    reserved: Tuple[int, int, int] = DEFAULT_DIRECTORY_RESERVED

    def relative_name(self, entry: FileEntry) -> str:
        prefix = (self.name + ARCHIVE_SEPARATOR).lower()
        if self.name != ROOT_DIRECTORY and entry.name.lower().startswith(prefix):
            return entry.name[len(prefix):]
        return entry.name


class Dat1Archive:
    """A Fallout 1 archive held in memory, organized as a list of directories."""

    def __init__(
        self,
        data: bytes = b"",
        directories: Optional[List[Directory]] = None,
        header_reserved: Tuple[int, int, int] = DEFAULT_HEADER_RESERVED,
        name_policy: NamePolicy = NamePolicy.LEGACY,
    ):
        self._data: bytes = data
        self._directories: List[Directory] = directories if directories is not None else [Directory(ROOT_DIRECTORY)]
        self._header_reserved = tuple(header_reserved)
        self.name_policy = name_policy

    @classmethod
    def from_bytes(cls, data: bytes, name_policy: NamePolicy = NamePolicy.LEGACY) -> "Dat1Archive":
        """Parses a complete DAT1 archive. Entry data is not validated until read."""
        data = bytes(data)
        cursor = BinaryCursor(data)
        dir_count, *header_reserved = cursor.read(HEADER, "DAT1 header")

        dir_names = []
        for i in range(dir_count):
            (name_len,) = cursor.read(NAME_LENGTH, f"name length of directory {i}")
            dir_names.append(decode_filename(cursor.read_bytes(name_len, f"name of directory {i}"), name_policy))

        directories = []
        for dir_name in dir_names:
            file_count, *dir_reserved = cursor.read(DIR_HEADER, f'header of directory "{dir_name}"')
            files = []
            for j in range(file_count):
                (name_len,) = cursor.read(NAME_LENGTH, f'name length of file {j} in "{dir_name}"')
                name = decode_filename(cursor.read_bytes(name_len, f'name of file {j} in "{dir_name}"'), name_policy)
                attributes, offset, size, packed_size = cursor.read(FILE_FIELDS, f'record of "{name}" in "{dir_name}"')
                full_name = name if dir_name == ROOT_DIRECTORY else dir_name + ARCHIVE_SEPARATOR + name
                files.append(
                    FileEntry(
                        name=full_name,
                        offset=offset,
                        size=size,
                        packed_size=packed_size if packed_size else size,
                        compressed=bool(attributes & ATTR_COMPRESSED),
                    )
                )
            directories.append(Directory(dir_name, files, tuple(dir_reserved)))

        return cls(data, directories, tuple(header_reserved), name_policy)

    # --- Queries ---
    @property
    def directories(self) -> List[Directory]:
        return list(self._directories)

    def entries(self) -> List[FileEntry]:
        return [entry for directory in self._directories for entry in directory.files]

    def list(self, patterns: Sequence[str] = ()) -> Tuple[List[ListingRow], List[str]]:
        selected, missing = filter_entries(self.entries(), patterns)
        return listing_rows(selected), missing

    def find(self, name: str) -> FileEntry:
        return find_entry(self.entries(), name)

    def read(self, entry: FileEntry) -> bytes:
        """Returns the original bytes of an entry, running LZSS for compressed ones."""
        packed = entry.read_packed(self._data)
        if entry.compressed:
            return dat_lzss.decompress(packed)
        return bytes(packed)

    def extract(self, output_dir: str, patterns: Sequence[str] = (), mode: ExtractionMode = ExtractionMode.PRESERVE_STRUCTURE, jobs: Optional[int] = None, verbose: bool = True) -> Tuple[int, List[str]]:
        return extract_entries(self.entries(), self.read, output_dir, patterns, mode, jobs, verbose)

    # --- Modification ---
    def _directory_for(self, dir_name: str) -> Directory:
        """Returns the directory named ``dir_name`` in any case, creating it if needed."""
        target = dir_name.lower()
        for directory in self._directories:
            if directory.name.lower() == target:
                return directory
        directory = Directory(dir_name)
        self._directories.append(directory)
        return directory

    def add(self, sources: Iterable[AddSource], compression: int, jobs: Optional[int] = None, verbose: bool = True) -> List[FileEntry]:
        """
        Adds files as stored entries.

        An entry whose name matches an existing one, ignoring case, replaces it
        and goes into the existing directory.

        The compression level is validated but has no effect: DAT1 entries
        are never compressed on write. ``jobs`` is accepted for a uniform
        signature; adding is sequential.
        """
        validate_compression_level(compression)
        added = []
        for name, data in resolve_sources(sources):
            dir_name, base_name = split_archive_path(name)
            encode_filename(dir_name, self.name_policy, MAX_NAME_LENGTH)
            encode_filename(base_name, self.name_policy, MAX_NAME_LENGTH)
            if verbose:
                print(f"Adding: {normalize_path_for_display(name)}")

            target = name.lower()
            for directory in self._directories:
                directory.files = [entry for entry in directory.files if entry.name.lower() != target]
            directory = self._directory_for(dir_name)
            # Keep the spelling of an existing directory
            if directory.name != ROOT_DIRECTORY:
                name = directory.name + ARCHIVE_SEPARATOR + base_name
            entry = FileEntry.stored(name, data)
            directory.files.append(entry)
            added.append(entry)
        return added

    def delete(self, names: Iterable[str], verbose: bool = True) -> List[str]:
        """Removes entries by name (either separator, any case); returns the names that were not found."""
        missing = []
        for name in names:
            target = normalize_archive_path(name).lower()
            found = False
            for directory in self._directories:
                kept = [entry for entry in directory.files if entry.name.lower() != target]
                if len(kept) != len(directory.files):
                    found = True
                    directory.files = kept
            if not found:
                missing.append(name)
            elif verbose:
                print(f"Deleting: {normalize_path_for_display(normalize_archive_path(name))}")
        return missing

    # --- Serialization ---
    def to_bytes(self) -> bytes:
        """
        Serializes the archive in two passes.

        The first pass sizes every header and record to find where file data
        starts and assigns each entry its offset; the second emits headers,
        records and data.
        """
        dir_names = [encode_filename(directory.name, self.name_policy, MAX_NAME_LENGTH) for directory in self._directories]
        file_names = [
            [encode_filename(directory.relative_name(entry), self.name_policy, MAX_NAME_LENGTH) for entry in directory.files]
            for directory in self._directories
        ]

        # Pass 1: layout
        data_start = HEADER.size + sum(NAME_LENGTH.size + len(raw) for raw in dir_names)
        for names in file_names:
            data_start += DIR_HEADER.size + sum(NAME_LENGTH.size + len(raw) + FILE_FIELDS.size for raw in names)

        offsets = []
        current_offset = data_start
        for directory in self._directories:
            dir_offsets = []
            for entry in directory.files:
                dir_offsets.append(check_u32(current_offset, f'Offset of "{entry.name}"'))
                current_offset += entry.packed_size
            offsets.append(dir_offsets)
        check_u32(current_offset, "Archive size")

        # Pass 2: emit
        output = bytearray()
        output += HEADER.pack(len(self._directories), *self._header_reserved)
        for raw in dir_names:
            output += NAME_LENGTH.pack(len(raw)) + raw

        for directory, names, dir_offsets in zip(self._directories, file_names, offsets):
            output += DIR_HEADER.pack(len(directory.files), *directory.reserved)
            for entry, raw, offset in zip(directory.files, names, dir_offsets):
                output += NAME_LENGTH.pack(len(raw)) + raw
                attributes = ATTR_COMPRESSED if entry.compressed else ATTR_STORED
                output += FILE_FIELDS.pack(attributes, offset, entry.size, entry.packed_size if entry.compressed else 0)

        if len(output) != data_start:
            raise DatError(f"DAT1 layout mismatch: records end at {len(output)}, expected {data_start}.")

        for directory in self._directories:
            for entry in directory.files:
                output += entry.read_packed(self._data)
        return bytes(output)

    def save(self, path: str):
        write_archive_file(path, self.to_bytes())
