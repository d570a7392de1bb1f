import struct

import pytest

from dat1_format import ATTR_COMPRESSED, ATTR_STORED, ROOT_DIRECTORY, Dat1Archive
from dat_common import AddSource, BoundsError, CompressionLevelError, FilenameEncodingError, InvalidFormatError


def build_dat1(directories, header_reserved=(0x0A, 0, 0)):
    """
    Builds a DAT1 image.

    ``directories`` is a list of (name, files) where each file is
    (name, attributes, size, packed_bytes, packed_size_field).
    """
    head = bytearray(struct.pack(">IIII", len(directories), *header_reserved))
    for dir_name, _ in directories:
        head += bytes([len(dir_name)]) + dir_name

    records_size = sum(16 + sum(1 + len(f[0]) + 16 for f in files) for _, files in directories)
    offset = len(head) + records_size
    records = bytearray()
    payload = bytearray()
    for _, files in directories:
        records += struct.pack(">IIII", len(files), 0x0A, 0x10, 0)
        for name, attributes, size, packed, packed_field in files:
            records += bytes([len(name)]) + name
            records += struct.pack(">IIII", attributes, offset, size, packed_field)
            offset += len(packed)
            payload += packed
    return bytes(head + records + payload)


LZSS_ABCD = b"\xff\xfcABCD\x00\x00"


def sample_archive():
    return build_dat1(
        [
            (b".", [(b"ROOT.TXT", ATTR_COMPRESSED, 4, LZSS_ABCD, len(LZSS_ABCD))]),
            (b"ART\\CRITTERS", [(b"HERO.FRM", ATTR_STORED, 5, b"12345", 0), (b"FOE.FRM", ATTR_STORED, 3, b"xyz", 0)]),
        ]
    )


def test_parse_directories_and_entries():
    archive = Dat1Archive.from_bytes(sample_archive())
    assert [d.name for d in archive.directories] == [".", "ART\\CRITTERS"]
    assert [e.name for e in archive.entries()] == ["ROOT.TXT", "ART\\CRITTERS\\HERO.FRM", "ART\\CRITTERS\\FOE.FRM"]


def test_read_compressed_root_entry():
    archive = Dat1Archive.from_bytes(sample_archive())
    entry = archive.find("root.txt")
    assert entry.compressed
    assert entry.packed_size == len(LZSS_ABCD)
    assert archive.read(entry) == b"ABCD"


def test_stored_entry_packed_size_defaults_to_size():
    archive = Dat1Archive.from_bytes(sample_archive())
    entry = archive.find("art/critters/hero.frm")
    assert not entry.compressed
    assert entry.packed_size == entry.size == 5
    assert archive.read(entry) == b"12345"


def test_round_trip_keeps_structure_and_reserved_words():
    original = sample_archive()
    archive = Dat1Archive.from_bytes(original)
    raw = archive.to_bytes()
    assert raw == original

    reopened = Dat1Archive.from_bytes(raw)
    assert reopened.read(reopened.find("ROOT.TXT")) == b"ABCD"
    assert reopened.read(reopened.find("ART\\CRITTERS\\FOE.FRM")) == b"xyz"


def test_alternate_format_id_preserved():
    raw = build_dat1([(b".", [(b"A", ATTR_STORED, 1, b"a", 0)])], header_reserved=(0x5E, 1, 2))
    assert Dat1Archive.from_bytes(raw).to_bytes()[:16] == struct.pack(">IIII", 1, 0x5E, 1, 2)


def test_add_creates_directories(tmp_path):
    archive = Dat1Archive()
    archive.add(
        [AddSource(b"map data", "maps/arroyo.map"), AddSource(b"root", "readme.txt"), AddSource(b"deep", "a\\b\\c.txt")],
        6,
        verbose=False,
    )
    assert [d.name for d in archive.directories] == [ROOT_DIRECTORY, "maps", "a\\b"]

    path = tmp_path / "new.dat"
    archive.save(str(path))
    reopened = Dat1Archive.from_bytes(path.read_bytes())
    assert reopened.read(reopened.find("maps\\arroyo.map")) == b"map data"
    assert reopened.read(reopened.find("readme.txt")) == b"root"
    assert reopened.read(reopened.find("a\\b\\c.txt")) == b"deep"


def test_added_entries_are_stored():
    archive = Dat1Archive()
    archive.add([AddSource(b"a" * 500, "big.txt")], 9, verbose=False)
    raw = archive.to_bytes()
    reopened = Dat1Archive.from_bytes(raw)
    entry = reopened.find("big.txt")
    assert not entry.compressed
    assert entry.size == 500
    # Record of the only file: attributes then offset, size, packed size 0
    attributes, _, size, packed_size = struct.unpack(">IIII", raw[-500 - 16:-500])
    assert (attributes, size, packed_size) == (ATTR_STORED, 500, 0)


def test_add_replaces_existing():
    archive = Dat1Archive.from_bytes(sample_archive())
    archive.add([AddSource(b"new hero", "ART\\CRITTERS\\HERO.FRM")], 0, verbose=False)
    reopened = Dat1Archive.from_bytes(archive.to_bytes())
    assert len(reopened.entries()) == 3
    assert reopened.read(reopened.find("ART\\CRITTERS\\HERO.FRM")) == b"new hero"
    assert reopened.read(reopened.find("ROOT.TXT")) == b"ABCD"


def test_add_replaces_existing_ignoring_case():
    archive = Dat1Archive()
    archive.add([AddSource(b"old", "art\\a.frm")], 0, verbose=False)
    archive.add([AddSource(b"new", "ART\\A.FRM")], 0, verbose=False)
    assert [d.name for d in archive.directories] == [ROOT_DIRECTORY, "art"]
    assert [e.name for e in archive.entries()] == ["art\\A.FRM"]

    reopened = Dat1Archive.from_bytes(archive.to_bytes())
    assert [e.name for e in reopened.entries()] == ["art\\A.FRM"]
    assert reopened.read(reopened.find("art\\a.frm")) == b"new"


def test_add_into_existing_directory_of_other_case():
    archive = Dat1Archive.from_bytes(sample_archive())
    archive.add([AddSource(b"new", "art\\critters\\ally.frm")], 0, verbose=False)
    assert [d.name for d in archive.directories] == [".", "ART\\CRITTERS"]
    reopened = Dat1Archive.from_bytes(archive.to_bytes())
    assert reopened.read(reopened.find("ART\\CRITTERS\\ally.frm")) == b"new"


def test_add_rejects_bad_level():
    with pytest.raises(CompressionLevelError):
        Dat1Archive().add([AddSource(b"x", "x.txt")], -1, verbose=False)


def test_add_rejects_long_names():
    with pytest.raises(FilenameEncodingError):
        Dat1Archive().add([AddSource(b"x", "n" * 256)], 0, verbose=False)


def test_delete():
    archive = Dat1Archive.from_bytes(sample_archive())
    missing = archive.delete(["art/critters/foe.frm", "missing.txt"], verbose=False)
    assert missing == ["missing.txt"]
    reopened = Dat1Archive.from_bytes(archive.to_bytes())
    assert [e.name for e in reopened.entries()] == ["ROOT.TXT", "ART\\CRITTERS\\HERO.FRM"]
    assert reopened.read(reopened.find("ART\\CRITTERS\\HERO.FRM")) == b"12345"


def test_extract_preserving_structure(tmp_path):
    archive = Dat1Archive.from_bytes(sample_archive())
    count, missing = archive.extract(str(tmp_path), ["frm"], verbose=False)
    assert (count, missing) == (2, [])
    assert (tmp_path / "ART" / "CRITTERS" / "HERO.FRM").read_bytes() == b"12345"
    assert not (tmp_path / "ROOT.TXT").exists()


def test_truncated_header():
    with pytest.raises(InvalidFormatError):
        Dat1Archive.from_bytes(b"\x00\x00\x00\x01\x00\x00\x00\x0a")


def test_truncated_file_record():
    raw = sample_archive()
    # Cut inside the first file record
    with pytest.raises(InvalidFormatError):
        Dat1Archive.from_bytes(raw[:60])


def test_entry_out_of_bounds_on_read():
    raw = sample_archive()
    archive = Dat1Archive.from_bytes(raw[:-2])
    with pytest.raises(BoundsError):
        archive.read(archive.find("ART\\CRITTERS\\FOE.FRM"))
