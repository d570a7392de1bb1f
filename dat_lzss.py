# -*- coding: utf-8 -*-
"""
dat_lzss.py

LZSS decompression for Fallout 1 (DAT1) archive entries.

A compressed entry is a sequence of blocks, each introduced by a signed
16-bit big-endian length N:

    N == 0  end of stream
    N <  0  |N| literal bytes follow
    N >  0  N bytes of LZSS data follow

Every LZSS block starts from a fresh 4096-byte window filled with spaces and
a write position of 4078. A flag byte supplies eight control bits, least
significant first: a set bit is a literal byte, a clear bit a two-byte
reference ``b1 b2`` to window position ``b1 | (b2 & 0xF0) << 4`` copying
``(b2 & 0x0F) + 3`` bytes.
"""

import struct

from dat_common import CompressionStreamError

DICT_SIZE = 4096
DICT_MASK = DICT_SIZE - 1
MAX_MATCH = 18
INITIAL_DICT_POS = DICT_SIZE - MAX_MATCH  # 4078
FILL_BYTE = 0x20

BLOCK_HEADER = struct.Struct(">h")

_BLANK_WINDOW = bytes([FILL_BYTE]) * DICT_SIZE


def decompress(data: bytes) -> bytes:
    """Decompresses a DAT1 block stream. Empty input yields empty output."""
    if not data:
        return b""

    output = bytearray()
    window = bytearray(DICT_SIZE)
    end = len(data)
    pos = 0

    while pos + BLOCK_HEADER.size <= end:
        (block_size,) = BLOCK_HEADER.unpack_from(data, pos)
        pos += BLOCK_HEADER.size
        if block_size == 0:
            break

        length = abs(block_size)
        if pos + length > end:
            raise CompressionStreamError(f"Block at offset {pos - BLOCK_HEADER.size} declares {length} bytes but only {end - pos} remain.")

        if block_size < 0:
            output += data[pos:pos + length]
        else:
            _decode_block(data, pos, pos + length, window, output)
        pos += length

    return bytes(output)


def _decode_block(data: bytes, pos: int, end: int, window: bytearray, output: bytearray):
    """Decodes one LZSS block occupying ``data[pos:end]`` into ``output``."""
    window[:] = _BLANK_WINDOW
    write_pos = INITIAL_DICT_POS
    flags = 0

    while pos < end:
        flags >>= 1
        if not flags & 0x100:
            # High byte marks how many control bits remain
            flags = data[pos] | 0xFF00
            pos += 1
            if pos >= end:
                break

        if flags & 1:
            byte = data[pos]
            pos += 1
            output.append(byte)
            window[write_pos] = byte
            write_pos = (write_pos + 1) & DICT_MASK
        else:
            if pos + 2 > end:
                break
            b1 = data[pos]
            b2 = data[pos + 1]
            pos += 2
            read_pos = b1 | ((b2 & 0xF0) << 4)
            match_length = (b2 & 0x0F) + 2
            for step in range(match_length + 1):
                byte = window[(read_pos + step) & DICT_MASK]
                output.append(byte)
                window[write_pos] = byte
                write_pos = (write_pos + 1) & DICT_MASK
