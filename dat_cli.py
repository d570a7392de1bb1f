# -*- coding: utf-8 -*-
"""
dat_cli.py

Command Line Interface (CLI) for Fallout 1 and 2 .dat archives.

Uses the dat_archive module to list, extract, add and delete files. The
archive format is detected when opening; new archives are DAT2 unless
--dat1 is given.
"""

import argparse
import os
import sys
from typing import List, Optional, Sequence

from dat_archive import ArchiveFormat, DatArchive
from dat_common import (
    DEFAULT_COMPRESSION_LEVEL,
    CompressionLevelError,
    DatError,
    InvalidFormatError,
    NamePolicy,
    normalize_path_for_display,
    validate_compression_level,
)


# --- Helpers ---


def expand_response_files(files: Sequence[str]) -> List[str]:
    """
    Expands a single "@path" argument into the lines of that file.

    Blank lines and lines starting with "#" are skipped. A response file
    cannot be combined with other file arguments.
    """
    if len(files) == 1 and files[0].startswith("@"):
        response_file = files[0][1:]
        try:
            with open(response_file, "r", encoding="utf-8") as f_in:
                lines = [line.strip() for line in f_in]
        except OSError as e:
            raise DatError(f'Failed to read response file "{response_file}": {e}') from e
        return [line for line in lines if line and not line.startswith("#")]
    if any(f.startswith("@") for f in files):
        raise DatError("Cannot mix @response-file with explicit file arguments.")
    return list(files)


def _name_policy(args) -> NamePolicy:
    return NamePolicy.STRICT_ASCII if args.strict_ascii else NamePolicy.LEGACY


def _report_missing(missing: Sequence[str]):
    print("\nFiles not found:", file=sys.stderr)
    for pattern in missing:
        print(f"  {normalize_path_for_display(pattern)}", file=sys.stderr)


# --- Command Functions ---


def handle_list(args):
    """Handles the 'l' command."""
    try:
        archive = DatArchive.open(args.dat_file, _name_policy(args))
        rows, missing = archive.list(expand_response_files(args.files))

        print(f"{'Size':>12} {'Packed':>12} {'Comp':<4} Name")
        print("-" * 60)
        for row in rows:
            compressed = "Yes" if row.compressed else "No"
            print(f"{row.size:>12} {row.packed_size:>12} {compressed:<4} {row.display_name}")

        if missing:
            _report_missing(missing)
            sys.exit(1)

    except FileNotFoundError:
        print(f'Error: DAT file "{args.dat_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.dat_file}" is not a valid DAT file or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except DatError as e:
        print(f'Error listing "{args.dat_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during list: {e}", file=sys.stderr)
        sys.exit(1)


def handle_extract(args):
    """Handles the 'x' and 'e' commands."""
    destination = args.output if args.output else "."
    try:
        archive = DatArchive.open(args.dat_file, _name_policy(args))
        patterns = expand_response_files(args.files)
        extracted, missing = archive.extract(destination, patterns, flat=args.flat, jobs=args.jobs)

        if missing:
            _report_missing(missing)
            if extracted == 0:
                sys.exit(1)
            print(f"Warning: {len(missing)} pattern(s) matched no files.", file=sys.stderr)

    except FileNotFoundError:
        print(f'Error: DAT file "{args.dat_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.dat_file}" is not a valid DAT file or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except DatError as e:
        print(f'Error during extraction from "{args.dat_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during extraction: {e}", file=sys.stderr)
        sys.exit(1)


def handle_add(args):
    """Handles the 'a' command."""
    try:
        # Validate before touching any file
        level = validate_compression_level(args.compression)
        paths = expand_response_files(args.files)
        if not paths:
            print("Error: No files specified to add.", file=sys.stderr)
            sys.exit(1)

        if os.path.exists(args.dat_file):
            archive = DatArchive.open(args.dat_file, _name_policy(args))
        else:
            archive = DatArchive.new(ArchiveFormat.DAT1 if args.dat1 else ArchiveFormat.DAT2, _name_policy(args))

        archive.add_paths(paths, level, target_dir=args.target_dir, jobs=args.jobs)
        archive.save(args.dat_file)
        print(f'Finished adding entries to "{args.dat_file}".')

    except CompressionLevelError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.dat_file}" is not a valid DAT file or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except (DatError, OSError) as e:
        print(f'Error adding to "{args.dat_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during add: {e}", file=sys.stderr)
        sys.exit(1)


def handle_delete(args):
    """Handles the 'd' command."""
    try:
        archive = DatArchive.open(args.dat_file, _name_policy(args))
        names = expand_response_files(args.files)
        if not names:
            print("Error: No files specified to delete.", file=sys.stderr)
            sys.exit(1)

        missing = archive.delete(names)
        if missing:
            _report_missing(missing)
            print("Archive left unchanged.", file=sys.stderr)
            sys.exit(1)

        archive.save(args.dat_file)
        print(f'Finished deleting {len(names)} entries from "{args.dat_file}".')

    except FileNotFoundError:
        print(f'Error: DAT file "{args.dat_file}" not found.', file=sys.stderr)
        sys.exit(1)
    except InvalidFormatError as e:
        print(f'Error: "{args.dat_file}" is not a valid DAT file or is corrupted. {e}', file=sys.stderr)
        sys.exit(1)
    except DatError as e:
        print(f'Error deleting from "{args.dat_file}": {e}', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"An unexpected error occurred during delete: {e}", file=sys.stderr)
        sys.exit(1)


# --- Main Execution ---


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dat3", description="Fallout .dat management CLI.", epilog="Example: dat3 a patch000.dat patch000/* -c 9")
    parser.add_argument("--strict-ascii", action="store_true", help="Reject non-ASCII file names instead of falling back to UTF-8/Windows-1252.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    # --- List Command ---
    parser_list = subparsers.add_parser("l", help="List files in a DAT archive.")
    parser_list.add_argument("dat_file", help="The DAT file to examine.")
    parser_list.add_argument("files", nargs="*", help="Name fragments to list (default: all). '@file' reads them from a file.")
    parser_list.set_defaults(func=handle_list)

    # --- Extract Commands ---
    for command, flat, help_text in (
        ("x", False, "Extract files, keeping the directory structure."),
        ("e", True, "Extract files into one directory, without their paths."),
    ):
        parser_extract = subparsers.add_parser(command, help=help_text)
        parser_extract.add_argument("dat_file", help="The DAT file to extract from.")
        parser_extract.add_argument("files", nargs="*", help="Name fragments to extract (default: all). '@file' reads them from a file.")
        parser_extract.add_argument("-o", "--output", help="Directory to extract to (default: current directory).")
        parser_extract.add_argument("-j", "--jobs", type=int, default=None, help="Number of worker threads.")
        parser_extract.set_defaults(func=handle_extract, flat=flat)

    # --- Add Command ---
    parser_add = subparsers.add_parser("a", help="Add files to a DAT archive (created if missing).")
    parser_add.add_argument("dat_file", help="The DAT file to add to.")
    parser_add.add_argument("files", nargs="+", help="Files, directories or glob patterns. A leading './' drops the first directory. '@file' reads them from a file.")
    parser_add.add_argument("-c", "--compression", type=int, default=DEFAULT_COMPRESSION_LEVEL, help=f"Compression level 0-9 (default: {DEFAULT_COMPRESSION_LEVEL}). Ignored for DAT1.")
    parser_add.add_argument("--dat1", action="store_true", help="Create a Fallout 1 (DAT1) archive when the file does not exist.")
    parser_add.add_argument("-t", "--target-dir", help="Directory inside the archive to place the files in.")
    parser_add.add_argument("-j", "--jobs", type=int, default=None, help="Number of worker threads.")
    parser_add.set_defaults(func=handle_add)

    # --- Delete Command ---
    parser_delete = subparsers.add_parser("d", help="Delete files from a DAT archive.")
    parser_delete.add_argument("dat_file", help="The DAT file to modify.")
    parser_delete.add_argument("files", nargs="+", help="Exact archive names to delete. '@file' reads them from a file.")
    parser_delete.set_defaults(func=handle_delete)

    return parser


def main(argv: Optional[Sequence[str]] = None):
    parser = build_parser()

    # --- Parse Arguments ---
    if argv is None and len(sys.argv) == 1:
        parser.print_help(sys.stderr)
        sys.exit(1)
    args = parser.parse_args(argv)

    # --- Execute Command ---
    args.func(args)


if __name__ == "__main__":
    main()
