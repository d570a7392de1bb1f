import os

import pytest

from dat_archive import ArchiveFormat, DatArchive, detect_format
from dat_cli import expand_response_files, main
from dat_common import DatError


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    (tmp_path / "mod" / "art").mkdir(parents=True)
    (tmp_path / "mod" / "art" / "tile.frm").write_bytes(b"tile" * 100)
    (tmp_path / "mod" / "readme.txt").write_bytes(b"read me")
    monkeypatch.chdir(tmp_path)
    return tmp_path


def run_cli(*argv):
    """Runs the CLI and returns its exit code (0 when it returns normally)."""
    try:
        main(list(argv))
    except SystemExit as e:
        return e.code
    return 0


def listed_names(output):
    return [line.split()[-1] for line in output.splitlines()[2:] if line.strip()]


def test_add_and_list(workdir, capsys):
    assert run_cli("a", "test.dat", "mod", "-c", "9") == 0
    capsys.readouterr()

    assert run_cli("l", "test.dat") == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0].split() == ["Size", "Packed", "Comp", "Name"]
    assert listed_names(out) == ["mod/art/tile.frm", "mod/readme.txt"]


def test_add_strips_leading_dot_directory(workdir, capsys):
    assert run_cli("a", "test.dat", "./mod") == 0
    archive = DatArchive.open("test.dat")
    assert [entry.name for entry in archive.entries()] == ["art\\tile.frm", "readme.txt"]


def test_add_to_target_dir(workdir):
    assert run_cli("a", "test.dat", "mod/readme.txt", "-t", "docs") == 0
    assert DatArchive.open("test.dat").read("docs\\mod\\readme.txt") == b"read me"


def test_add_creates_dat1(workdir):
    assert run_cli("a", "old.dat", "mod", "--dat1") == 0
    with open("old.dat", "rb") as f_in:
        assert detect_format(f_in.read()) is ArchiveFormat.DAT1
    assert DatArchive.open("old.dat").read("mod\\art\\tile.frm") == b"tile" * 100


def test_add_to_existing_keeps_format(workdir):
    assert run_cli("a", "old.dat", "mod/readme.txt", "--dat1") == 0
    assert run_cli("a", "old.dat", "mod/art/tile.frm") == 0
    archive = DatArchive.open("old.dat")
    assert archive.format is ArchiveFormat.DAT1
    assert len(archive.entries()) == 2


def test_add_missing_path_writes_nothing(workdir, capsys):
    assert run_cli("a", "test.dat", "mod", "nothing-here.txt") == 1
    assert "nothing-here.txt" in capsys.readouterr().err
    assert not os.path.exists("test.dat")


def test_add_empty_directory_writes_nothing(workdir):
    (workdir / "empty").mkdir()
    assert run_cli("a", "test.dat", "empty") == 1
    assert not os.path.exists("test.dat")


def test_add_bad_compression_level(workdir, capsys):
    assert run_cli("a", "test.dat", "mod", "-c", "12") == 1
    assert "0-9" in capsys.readouterr().err
    assert not os.path.exists("test.dat")


def test_list_missing_pattern_fails(workdir, capsys):
    run_cli("a", "test.dat", "mod")
    capsys.readouterr()
    assert run_cli("l", "test.dat", "tile", "ghost") == 1
    captured = capsys.readouterr()
    assert listed_names(captured.out) == ["mod/art/tile.frm"]
    assert "ghost" in captured.err


def test_extract_preserves_structure(workdir):
    run_cli("a", "test.dat", "mod")
    assert run_cli("x", "test.dat", "-o", "out", "-j", "2") == 0
    assert (workdir / "out" / "mod" / "art" / "tile.frm").read_bytes() == b"tile" * 100
    assert (workdir / "out" / "mod" / "readme.txt").read_bytes() == b"read me"


def test_extract_flat_with_filter(workdir):
    run_cli("a", "test.dat", "mod")
    assert run_cli("e", "test.dat", "-o", "flat", "FRM") == 0
    assert sorted(os.listdir("flat")) == ["tile.frm"]


def test_extract_nothing_matched_fails(workdir):
    run_cli("a", "test.dat", "mod")
    assert run_cli("x", "test.dat", "-o", "out", "ghost") == 1


def test_delete(workdir):
    run_cli("a", "test.dat", "mod")
    assert run_cli("d", "test.dat", "mod/readme.txt") == 0
    assert [entry.name for entry in DatArchive.open("test.dat").entries()] == ["mod\\art\\tile.frm"]


def test_delete_missing_leaves_archive_unchanged(workdir, capsys):
    run_cli("a", "test.dat", "mod")
    before = (workdir / "test.dat").read_bytes()
    assert run_cli("d", "test.dat", "mod/readme.txt", "ghost.txt") == 1
    assert "ghost.txt" in capsys.readouterr().err
    assert (workdir / "test.dat").read_bytes() == before


def test_response_file(workdir):
    (workdir / "files.lst").write_text("# files to add\nmod/readme.txt\n\nmod/art/tile.frm\n", encoding="utf-8")
    assert run_cli("a", "test.dat", "@files.lst") == 0
    assert len(DatArchive.open("test.dat").entries()) == 2


def test_response_file_cannot_be_mixed():
    with pytest.raises(DatError):
        expand_response_files(["@files.lst", "extra.txt"])


def test_missing_archive(workdir, capsys):
    assert run_cli("l", "absent.dat") == 1
    assert "not found" in capsys.readouterr().err


def test_corrupt_archive(workdir, capsys):
    (workdir / "bad.dat").write_bytes(b"\x00" * 7 + b"\x01" * 9)
    assert run_cli("l", "bad.dat") == 1
    assert "not a valid DAT file" in capsys.readouterr().err
