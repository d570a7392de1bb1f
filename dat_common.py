# -*- coding: utf-8 -*-
"""
dat_common.py

Shared pieces for the Fallout DAT archive modules: the entry model, the error
hierarchy, filename encoding policy, path and filter helpers, and the thread
pool runner used for parallel extraction and file preparation.

Archive names always use backslash separators, as stored on disk. User input
may use either separator and is normalized before matching.
"""

import codecs
import enum
import glob
import os
import struct
import threading
import time
from collections import namedtuple
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

# --- Constants ---
ARCHIVE_SEPARATOR = "\\"
MIN_COMPRESSION_LEVEL = 0
MAX_COMPRESSION_LEVEL = 9
DEFAULT_COMPRESSION_LEVEL = 6
PROGRESS_INTERVAL = 1000  # Report progress every N completed items
MAX_WORKERS = 32

T = TypeVar("T")
R = TypeVar("R")


# --- Custom Exceptions ---
class DatError(Exception):
    """Base class for exceptions in the DAT modules."""

    pass


class InvalidFormatError(DatError):
    """Raised when archive headers or records are inconsistent or truncated."""

    pass


class BoundsError(DatError):
    """Raised when an entry's stored range lies outside the archive buffer."""

    pass


class FilenameEncodingError(DatError):
    """Raised when a filename cannot be decoded or encoded under the active policy."""

    pass


class CompressionStreamError(DatError):
    """Raised for corrupted or truncated compressed data."""

    pass


class EntryNotFoundError(DatError, KeyError):
    """Raised when a requested entry is not present in the archive."""

    pass


class CompressionLevelError(DatError, ValueError):
    """Raised when a compression level is outside 0-9."""

    pass


class UnsafePathError(DatError):
    """Raised when an entry name would be written outside the output directory."""

    pass


class NamePolicy(enum.Enum):
    """How filename bytes are decoded and encoded."""

    LEGACY = "legacy"  # UTF-8, falling back to Windows-1252
    STRICT_ASCII = "ascii"


class ExtractionMode(enum.Enum):
    PRESERVE_STRUCTURE = "preserve"
    FLAT = "flat"


# (source bytes, archive name, strip leading directory)
AddSource = namedtuple("AddSource", ["data", "name", "strip_leading_directory"])
AddSource.__new__.__defaults__ = (False,)

ListingRow = namedtuple("ListingRow", ["size", "packed_size", "compressed", "display_name"])


@dataclass
class FileEntry:
    """
    One archived file.

    Entries parsed from an archive have ``data`` set to None and refer to the
    ``[offset, offset + packed_size)`` range of the archive buffer. Entries
    created by an add carry their stored bytes in ``data``; their offset is
    assigned when the archive is serialized.
    """

    name: str
    offset: int = 0
    size: int = 0
    packed_size: int = 0
    compressed: bool = False
    data: Optional[bytes] = None

    def __post_init__(self):
        if self.offset < 0 or self.size < 0 or self.packed_size < 0:
            raise ValueError(f'Negative offset or length for entry "{self.name}".')

    @classmethod
    def stored(cls, name: str, data: bytes) -> "FileEntry":
        """Creates an uncompressed in-memory entry."""
        return cls(name=name, size=len(data), packed_size=len(data), compressed=False, data=bytes(data))

    @classmethod
    def with_compression(cls, name: str, original: bytes, packed: bytes) -> "FileEntry":
        """Creates a compressed in-memory entry, keeping the original size alongside the packed bytes."""
        return cls(name=name, size=len(original), packed_size=len(packed), compressed=True, data=bytes(packed))

    @property
    def in_memory(self) -> bool:
        return self.data is not None

    def read_packed(self, source: bytes) -> bytes:
        """Returns the stored (possibly compressed) bytes of this entry."""
        if self.data is not None:
            return self.data
        end = self.offset + self.packed_size
        if end > len(source):
            raise BoundsError(f'File data extends beyond archive: "{self.name}" (offset: {self.offset}, size: {self.packed_size}, archive: {len(source)}).')
        return source[self.offset:end]


# --- Validation ---
def validate_compression_level(level: int) -> int:
    """Checks that a compression level is an int in 0-9 and returns it."""
    if isinstance(level, bool) or not isinstance(level, int):
        raise CompressionLevelError(f"Compression level must be an integer 0-9, got {level!r}")
    if not MIN_COMPRESSION_LEVEL <= level <= MAX_COMPRESSION_LEVEL:
        raise CompressionLevelError(f"Compression level must be 0-9, got {level}")
    return level


# --- Filename Encoding ---
CP1252_PASSTHROUGH = "dat-cp1252-passthrough"


def _cp1252_passthrough(error: UnicodeError) -> Tuple[str, int]:
    """Maps bytes Windows-1252 leaves undefined (0x81, 0x8D, 0x8F, 0x90, 0x9D) to the same code points."""
    if not isinstance(error, UnicodeDecodeError):
        raise error
    return "".join(chr(byte) for byte in error.object[error.start:error.end]), error.end


codecs.register_error(CP1252_PASSTHROUGH, _cp1252_passthrough)


def decode_filename(raw: bytes, policy: NamePolicy = NamePolicy.LEGACY) -> str:
    """Decodes filename bytes read from an archive. Bytes after the first NUL are ignored."""
    raw = bytes(raw).split(b"\x00", 1)[0]
    if policy is NamePolicy.STRICT_ASCII:
        try:
            return raw.decode("ascii")
        except UnicodeDecodeError as e:
            raise FilenameEncodingError(f"Non-ASCII filename {raw!r}: {e}") from e
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        pass
    # Windows-1252 with its five undefined bytes passed through as C1 controls; never fails
    return raw.decode("cp1252", errors=CP1252_PASSTHROUGH)


def encode_filename(name: str, policy: NamePolicy = NamePolicy.LEGACY, max_length: Optional[int] = None) -> bytes:
    """Encodes a filename for writing, optionally enforcing a length limit."""
    codec = "ascii" if policy is NamePolicy.STRICT_ASCII else "utf-8"
    try:
        raw = name.encode(codec)
    except UnicodeEncodeError as e:
        raise FilenameEncodingError(f'Cannot encode filename "{name}" as {codec}: {e}') from e
    if max_length is not None and len(raw) > max_length:
        raise FilenameEncodingError(f'Filename "{name}" is {len(raw)} bytes long; the limit is {max_length}.')
    return raw


# --- Path Helpers ---
def normalize_archive_path(path: str) -> str:
    """Converts any separator to the archive's backslash and drops leading/trailing separators."""
    return path.replace("/", ARCHIVE_SEPARATOR).strip(ARCHIVE_SEPARATOR)


def normalize_path_for_display(path: str) -> str:
    if os.sep == "\\":
        return path.replace("/", "\\")
    return path.replace("\\", "/")


def split_archive_path(path: str) -> Tuple[str, str]:
    """Splits an archive name into (directory, basename); the directory of a root-level name is "."."""
    head, sep, tail = path.rpartition(ARCHIVE_SEPARATOR)
    if not sep:
        return ".", path
    return head, tail


def get_filename_from_dat_path(path: str) -> str:
    return path.replace("/", ARCHIVE_SEPARATOR).rsplit(ARCHIVE_SEPARATOR, 1)[-1]


def strip_leading_directory(name: str) -> str:
    parts = name.split(ARCHIVE_SEPARATOR, 1)
    return parts[1] if len(parts) == 2 else name


def to_system_path(name: str) -> str:
    """Converts an archive name to a relative filesystem path, refusing names that escape it."""
    parts = [part for part in name.split(ARCHIVE_SEPARATOR) if part not in ("", ".")]
    if not parts or ".." in parts or ":" in parts[0]:
        raise UnsafePathError(f'Refusing to extract entry with unsafe path: "{name}"')
    return os.path.join(*parts)


def output_path_for(output_dir: str, name: str, mode: ExtractionMode) -> str:
    if mode is ExtractionMode.FLAT:
        return os.path.join(output_dir, to_system_path(get_filename_from_dat_path(name)))
    return os.path.join(output_dir, to_system_path(name))


def write_output_file(path: str, data: bytes):
    dest_dir = os.path.dirname(path)
    if dest_dir:
        os.makedirs(dest_dir, exist_ok=True)
    with open(path, "wb") as f_out:
        f_out.write(data)


# --- Add Sources ---
def resolve_sources(sources: Iterable[AddSource]) -> List[Tuple[str, bytes]]:
    """
    Turns add sources into (archive name, data) pairs.

    Names are normalized to backslash separators and stripped of their first
    component when requested. Within one batch the first occurrence of a
    name, compared case-insensitively, wins; later duplicates are dropped.
    """
    resolved: List[Tuple[str, bytes]] = []
    seen = set()
    for source in sources:
        name = normalize_archive_path(source.name)
        if source.strip_leading_directory:
            name = strip_leading_directory(name)
        if not name:
            raise ValueError("Entry name cannot be empty.")
        if name.lower() in seen:
            continue
        seen.add(name.lower())
        resolved.append((name, bytes(source.data)))
    return resolved


def collect_files(path: str) -> List[str]:
    """Returns the files below ``path`` (or ``path`` itself if it is a file), sorted."""
    if os.path.isfile(path):
        return [path]
    if not os.path.isdir(path):
        raise FileNotFoundError(f'Path not found: "{path}"')
    files = []
    for root, dirs, names in os.walk(path):
        dirs.sort()
        for name in sorted(names):
            files.append(os.path.join(root, name))
    return files


def _has_leading_dot_dir(raw: str) -> bool:
    return raw.startswith("./") or raw.startswith(".\\")


def sources_from_paths(paths: Sequence[str], target_dir: Optional[str] = None) -> List[AddSource]:
    """
    Reads local files into add sources.

    Glob patterns are expanded and directories are walked recursively. Each
    file keeps its path as given (relative paths) or its basename (absolute
    paths). An argument starting with "./" or ".\\" is flagged to strip its
    leading directory; with ``target_dir`` the stripping happens here, before
    the target prefix is added. Missing paths and directories without files
    raise before anything is read.
    """
    planned: List[Tuple[str, str, bool]] = []
    for raw in paths:
        strip = _has_leading_dot_dir(raw)
        pattern = raw.replace("\\", "/") if os.sep == "/" else raw
        if glob.has_magic(pattern):
            matches = sorted(glob.glob(pattern, recursive=True))
            if not matches:
                raise FileNotFoundError(f'No files match pattern: "{raw}"')
        else:
            matches = [pattern]
        for match in matches:
            files = collect_files(match)
            if not files:
                raise FileNotFoundError(f'Directory contains no files: "{match}"')
            for file_path in files:
                planned.append((file_path, _archive_name_for(file_path), strip))

    sources = []
    for file_path, name, strip in planned:
        if target_dir:
            if strip:
                name = strip_leading_directory(name)
                strip = False
            name = normalize_archive_path(target_dir) + ARCHIVE_SEPARATOR + name
        with open(file_path, "rb") as f_in:
            sources.append(AddSource(f_in.read(), name, strip))
    return sources


def _archive_name_for(file_path: str) -> str:
    if os.path.isabs(file_path):
        return os.path.basename(file_path)
    parts = [part for part in normalize_archive_path(os.path.normpath(file_path)).split(ARCHIVE_SEPARATOR) if part not in ("", ".")]
    if ".." in parts:
        return os.path.basename(file_path)
    return ARCHIVE_SEPARATOR.join(parts)


# --- Pattern Filtering ---
def normalize_patterns(patterns: Iterable[str]) -> List[str]:
    return [normalize_archive_path(pattern) for pattern in patterns if pattern]


def filter_entries(entries: Sequence[FileEntry], patterns: Sequence[str]) -> Tuple[List[FileEntry], List[str]]:
    """
    Selects entries whose name contains any pattern (case-insensitive).

    Returns the matching entries in archive order, each at most once, and the
    patterns that matched nothing.
    """
    patterns = normalize_patterns(patterns)
    if not patterns:
        return list(entries), []

    lowered = [pattern.lower() for pattern in patterns]
    found = [False] * len(patterns)
    selected = []
    for entry in entries:
        name = entry.name.lower()
        hit = False
        for idx, pattern in enumerate(lowered):
            if pattern in name:
                found[idx] = True
                hit = True
        if hit:
            selected.append(entry)

    missing = [pattern for pattern, was_found in zip(patterns, found) if not was_found]
    return selected, missing


def listing_rows(entries: Iterable[FileEntry]) -> List[ListingRow]:
    return [ListingRow(entry.size, entry.packed_size, entry.compressed, normalize_path_for_display(entry.name)) for entry in entries]


def sort_key(entry: FileEntry) -> Tuple[str, str]:
    """Case-insensitive name order, exact name as tie-breaker."""
    return entry.name.lower(), entry.name


# --- Parallel Execution ---
class ProgressCounter:
    """Thread-safe completion counter that prints every PROGRESS_INTERVAL items and at the end."""

    def __init__(self, total: int, action: str = "processed", verbose: bool = True):
        self.total = total
        self.action = action
        self.verbose = verbose
        self.count = 0
        self._lock = threading.Lock()
        self._start = time.monotonic()

    def increment(self) -> int:
        with self._lock:
            self.count += 1
            count = self.count
        if self.verbose and (count % PROGRESS_INTERVAL == 0 or count == self.total):
            elapsed = max(time.monotonic() - self._start, 1e-6)
            print(f"Progress: {count}/{self.total} files {self.action} ({count / elapsed:.1f} files/sec)")
        return count


def default_jobs() -> int:
    return max(1, min(MAX_WORKERS, os.cpu_count() or 1))


def run_parallel(func: Callable[[T], R], items: Sequence[T], jobs: Optional[int] = None, progress: Optional[ProgressCounter] = None) -> List[R]:
    """
    Applies ``func`` to every item on a thread pool, returning results in input order.

    The first exception cancels all work that has not started yet and is
    re-raised once running tasks finish. Side effects of completed tasks are
    not rolled back.
    """
    if not items:
        return []
    workers = max(1, min(jobs or default_jobs(), len(items)))

    def task(item):
        result = func(item)
        if progress is not None:
            progress.increment()
        return result

    if workers == 1:
        return [task(item) for item in items]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(task, item) for item in items]
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        for future in not_done:
            future.cancel()
        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()
        return [future.result() for future in futures]


# --- Binary Reading ---
class BinaryCursor:
    """Bounded reader over an archive buffer; reads past ``limit`` raise InvalidFormatError."""

    def __init__(self, data: bytes, pos: int = 0, limit: Optional[int] = None):
        self.data = data
        self.pos = pos
        self.limit = len(data) if limit is None else limit

    def read(self, fmt: struct.Struct, what: str) -> tuple:
        if self.pos + fmt.size > self.limit:
            raise InvalidFormatError(f"Unexpected end of data while reading {what} at offset {self.pos}.")
        values = fmt.unpack_from(self.data, self.pos)
        self.pos += fmt.size
        return values

    def read_bytes(self, count: int, what: str) -> bytes:
        if self.pos + count > self.limit:
            raise InvalidFormatError(f"Unexpected end of data while reading {what} ({count} bytes at offset {self.pos}).")
        raw = bytes(self.data[self.pos:self.pos + count])
        self.pos += count
        return raw


# --- Shared Archive Operations ---
def find_entry(entries: Iterable[FileEntry], name: str) -> FileEntry:
    """Looks up an entry by name: exact match first, then case-insensitive."""
    target = normalize_archive_path(name)
    fallback = None
    for entry in entries:
        if entry.name == target:
            return entry
        if fallback is None and entry.name.lower() == target.lower():
            fallback = entry
    if fallback is None:
        raise EntryNotFoundError(f'Entry not found: "{normalize_path_for_display(target)}"')
    return fallback


def extract_entries(
    entries: Sequence[FileEntry],
    reader: Callable[[FileEntry], bytes],
    output_dir: str,
    patterns: Sequence[str] = (),
    mode: ExtractionMode = ExtractionMode.PRESERVE_STRUCTURE,
    jobs: Optional[int] = None,
    verbose: bool = True,
) -> Tuple[int, List[str]]:
    """
    Extracts the entries matching ``patterns`` to ``output_dir`` on a thread pool.

    Returns the number of files written and the patterns that matched nothing.
    """
    selected, missing = filter_entries(entries, patterns)
    if verbose:
        print(f"Extracting {len(selected)} files...")
    start = time.monotonic()
    progress = ProgressCounter(len(selected), "extracted", verbose)

    def extract_one(entry: FileEntry) -> str:
        target = output_path_for(output_dir, entry.name, mode)
        data = reader(entry)
        try:
            write_output_file(target, data)
        except OSError as e:
            raise DatError(f'Failed to write extracted file "{target}": {e}') from e
        return target

    run_parallel(extract_one, selected, jobs, progress)
    if verbose:
        print(f"Extraction completed in {time.monotonic() - start:.2f}s")
    return len(selected), missing


def check_u32(value: int, what: str) -> int:
    if value > 0xFFFFFFFF:
        raise DatError(f"{what} ({value}) does not fit the archive's 32-bit fields.")
    return value


def write_archive_file(path: str, payload: bytes):
    """Writes a serialized archive through a temporary file that replaces ``path``."""
    temp_path = path + ".tmp"
    try:
        with open(temp_path, "wb") as f_out:
            f_out.write(payload)
        os.replace(temp_path, path)
    except OSError as e:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise DatError(f'Failed to write archive "{path}": {e}') from e
