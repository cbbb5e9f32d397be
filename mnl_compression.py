#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
mnl_compression.py -- LZ77/RLE block codec used by the Mario & Luigi asset archives.

This module implements the compression format found in the game's data
files.  Chunks stored in the archives (tilesets, map chunks, battle map
layers, ...) are passed through this codec; the asset code itself only ever
sees ``compress(bytes) -> bytes`` and ``decompress(bytes, strict) -> bytes``.
The encoder is not an optimiser: it reproduces the choices of the game's own
encoder so that a rebuilt archive is byte-identical to the original.

### Stream format

A compressed stream is::

    varint(uncompressed_size) ++ varint(num_blocks - 1) ++ block*

Each block covers at most 512 uncompressed bytes and consists of:

* ``u16 size`` (little endian) -- number of bytes following the prefix.
* a sequence of command groups.  A group is one byte holding four 2-bit
  command codes, least significant pair first, each followed in the stream
  by its operands.

The four commands are:

* **0 - EndBlock**: no operand; ends the block.
* **1 - Copy**: one literal byte.
* **2 - Lz77**: two bytes ``(b0, b1)``; ``distance = b0 | (b1 & 0xF0) << 4``
  (2..4095) and ``length = (b1 & 0x0F) + 2`` (2..17).  The copy may overlap
  the bytes it produces, which repeats the last ``distance`` bytes.
* **3 - Rle**: two bytes ``(n, value)``; ``value`` repeated ``n + 2`` times.

A block ends on an EndBlock command or after 256 groups.  Unused slots of
the last group are zero and therefore act as EndBlock; when the last group
is full an explicit zero byte follows it.

### Varint

The header integers use a small variable-length encoding.  The top two bits
of the first byte give the number of extra bytes (0..3), its low six bits
are the low six bits of the value, and extra byte ``i`` is OR-ed in shifted
left by ``6 * i``.  The game's encoder writes eight bits per extra byte, so
consecutive extra bytes overlap by two bits; OR-ing them back is exact.

### Greedy encoder

For every position the encoder computes the longest LZ77 match within the
last 4095 bytes and the longest run of the current byte, then picks Copy,
Lz77 or Rle with a fixed rule (see ``choose_command``).  Matches and runs
never extend past the end of the current block, but a match source may lie
in an earlier block.
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, List, Optional, Tuple, Union

###############################################################################
# Format constants
###############################################################################

BLOCK_SIZE = 512
MAX_GROUPS_PER_BLOCK = 256
COMMANDS_PER_GROUP = 4

MIN_LZ77_DISTANCE = 2
MAX_LZ77_DISTANCE = 0xFFF
MIN_LZ77_LENGTH = 2
MAX_LZ77_LENGTH = 17
MIN_RLE_COUNT = 2
MAX_RLE_COUNT = 257

VARINT_MAX_EXTRA_BYTES = 3
VARINT_MAX = (1 << 26) - 1

BytesLike = Union[bytes, bytearray, memoryview]


class CompressionCommand(IntEnum):
    END_BLOCK = 0
    COPY = 1
    LZ77 = 2
    RLE = 3

###############################################################################
# Errors
###############################################################################

class CompressionError(ValueError):
    """A size derived from the input does not fit its field in the stream."""


class DecompressionError(ValueError):
    """Base class for malformed or inconsistent compressed streams."""


class InvalidCompressionCommandError(DecompressionError):
    def __init__(self, command: int) -> None:
        super().__init__(f"invalid compression command {command}")
        self.command = command


class InvalidLz77DistanceError(DecompressionError):
    def __init__(self, distance: int, available: int) -> None:
        super().__init__(
            f"invalid LZ77 distance {distance} with {available} bytes of output available"
        )
        self.distance = distance
        self.available = available


class IncorrectBlockSizeError(DecompressionError):
    def __init__(self, declared: int, actual: int) -> None:
        super().__init__(
            f"the declared block size ({declared}) doesn't match the actual one ({actual})"
        )
        self.declared = declared
        self.actual = actual


class IncorrectUncompressedSizeError(DecompressionError):
    def __init__(self, declared: int, actual: int) -> None:
        super().__init__(
            f"the declared uncompressed size ({declared}) doesn't match the actual one ({actual})"
        )
        self.declared = declared
        self.actual = actual

###############################################################################
# Utility functions
###############################################################################

def _print_progress(label: str, i: int, n: int, enabled: bool, final: bool = False) -> None:
    """Block-level progress line: ``[label] block i/n ...`` / ``done.``"""
    if not enabled:
        return
    if not final:
        print(f"[{label}] block {i}/{n} ...", end="\r", flush=True)
    else:
        print(f"[{label}] block {n}/{n} done.", flush=True)


def fixed_boundaries(data: bytes, block_size: int = BLOCK_SIZE) -> List[Tuple[int, int]]:
    n = len(data)
    if n == 0:
        return []
    if block_size <= 0:
        raise ValueError("block_size must be positive")
    return [(i, min(n, i + block_size)) for i in range(0, n, block_size)]

###############################################################################
# Varint
###############################################################################

def encode_varint(value: int) -> bytes:
    """Encode a header integer exactly like the game's encoder.

    The low six bits go into the first byte.  The remainder is then
    shifted right by six at a time, emitting its low eight bits while it
    is above 255; a non-zero final remainder becomes the last byte.  The
    extra byte count is kept in the top two bits of the first byte, so at
    most three extra bytes fit.  Raises ``ValueError`` for negative values
    and for values above ``VARINT_MAX``.
    """
    if value < 0:
        raise ValueError("varint only supports unsigned integers")
    out = bytearray([value & 0x3F])
    value >>= 6
    while value > 0xFF:
        out.append(value & 0xFF)
        value >>= 6
    if value > 0:
        out.append(value)
    extra = len(out) - 1
    if extra > VARINT_MAX_EXTRA_BYTES:
        raise ValueError(f"value is too large for a varint (maximum {VARINT_MAX})")
    out[0] |= extra << 6
    return bytes(out)


def read_varint(stream: BinaryIO) -> int:
    """Read one varint from a binary stream.  Raises ``EOFError`` on truncation."""
    first = stream.read(1)
    if len(first) != 1:
        raise EOFError("Truncated varint")
    extra = first[0] >> 6
    result = first[0] & 0x3F
    if extra:
        tail = stream.read(extra)
        if len(tail) != extra:
            raise EOFError("Truncated varint")
        for i, b in enumerate(tail, 1):
            result |= b << (6 * i)
    return result


def decode_varint(data: BytesLike, pos: int = 0) -> Tuple[int, int]:
    """Decode a varint from ``data`` at ``pos``; returns ``(value, new_pos)``."""
    stream = io.BytesIO(data)
    stream.seek(pos)
    value = read_varint(stream)
    return value, stream.tell()

###############################################################################
# Streams
###############################################################################

@dataclass(frozen=True)
class StreamHeader:
    uncompressed_size: int
    num_blocks: int


class _SourceReader:
    """Reads exact byte counts from the compressed input and counts them."""
    __slots__ = ("stream", "position")

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.position = 0

    def read(self, n: int) -> bytes:
        buf = bytearray()
        while len(buf) < n:
            chunk = self.stream.read(n - len(buf))
            if not chunk:
                raise EOFError(
                    f"Truncated compressed stream: wanted {n} bytes at offset "
                    f"{self.position}, got {len(buf)}"
                )
            buf += chunk
        self.position += n
        return bytes(buf)

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_u16(self) -> int:
        return struct.unpack('<H', self.read(2))[0]


class RandomAccessSink:
    """Decode destination: a growable byte sink that can read its own output.

    LZ77 commands copy bytes that were already produced, so the decoder
    needs one object that can append at the current end, move its cursor
    back to read, and return to the end.  The wrapped stream must be
    readable, writable and seekable; an in-memory buffer is used when none
    is given.  Bytes already present in the stream count as history for
    back-references; ``produced`` only counts what was appended through
    this sink.
    """
    __slots__ = ("stream", "start", "end")

    def __init__(self, stream: Optional[BinaryIO] = None) -> None:
        if stream is None:
            stream = io.BytesIO()
        if not (stream.readable() and stream.writable() and stream.seekable()):
            raise ValueError("decode destination must be readable, writable and seekable")
        self.stream = stream
        self.end = stream.seek(0, io.SEEK_END)
        self.start = self.end

    @property
    def produced(self) -> int:
        return self.end - self.start

    def append(self, data: bytes) -> None:
        self.stream.seek(self.end)
        self.stream.write(data)
        self.end += len(data)

    def append_repeated(self, value: int, count: int) -> None:
        self.append(bytes([value]) * count)

    def copy_back(self, distance: int, length: int) -> None:
        """Append ``length`` bytes starting ``distance`` bytes before the end.

        When ``distance < length`` the copy reads bytes it has just written,
        which amounts to repeating the last ``distance`` bytes.
        """
        if distance < MIN_LZ77_DISTANCE or distance > self.end:
            raise InvalidLz77DistanceError(distance, self.end)
        self.stream.seek(self.end - distance)
        chunk = self.stream.read(min(distance, length))
        if distance < length:
            chunk = (chunk * (length // distance + 1))[:length]
        self.append(chunk)

    def getvalue(self) -> bytes:
        """Return the bytes appended through this sink."""
        self.stream.seek(self.start)
        data = self.stream.read(self.produced)
        self.stream.seek(self.end)
        return data

###############################################################################
# Decoder
###############################################################################

def read_header(stream: BinaryIO) -> StreamHeader:
    uncompressed_size = read_varint(stream)
    num_blocks = read_varint(stream) + 1
    return StreamHeader(uncompressed_size, num_blocks)


def _decode_block(reader: _SourceReader, sink: RandomAccessSink) -> None:
    for _ in range(MAX_GROUPS_PER_BLOCK):
        commands = reader.read_u8()
        for _ in range(COMMANDS_PER_GROUP):
            code = commands & 0x03
            try:
                command = CompressionCommand(code)
            except ValueError:
                raise InvalidCompressionCommandError(code) from None
            if command is CompressionCommand.END_BLOCK:
                return
            if command is CompressionCommand.COPY:
                sink.append(reader.read(1))
            elif command is CompressionCommand.LZ77:
                b0, b1 = reader.read(2)
                distance = b0 | ((b1 & 0xF0) << 4)
                length = (b1 & 0x0F) + MIN_LZ77_LENGTH
                sink.copy_back(distance, length)
            else:
                count, value = reader.read(2)
                sink.append_repeated(value, count + MIN_RLE_COUNT)
            commands >>= 2


def decompress_stream(src: BinaryIO, dst: Union[BinaryIO, RandomAccessSink],
                      strict: bool = False, progress: bool = False) -> int:
    """Decompress from ``src`` into ``dst``; returns the number of bytes produced.

    ``src`` only needs ``read``.  ``dst`` is either a ``RandomAccessSink``
    or a stream suitable for one.  With ``strict`` set, each block's size
    prefix and the header's uncompressed size are checked against what was
    actually consumed and produced; archives pad some chunks, so this is
    off by default.  Truncated input raises ``EOFError``.
    """
    reader = _SourceReader(src)
    sink = dst if isinstance(dst, RandomAccessSink) else RandomAccessSink(dst)
    header = read_header(reader)

    for i in range(header.num_blocks):
        declared = reader.read_u16()
        block_start = reader.position
        _decode_block(reader, sink)
        if strict:
            actual = reader.position - block_start
            if actual != declared:
                raise IncorrectBlockSizeError(declared, actual)
        _print_progress("DECOMPRESS", i + 1, header.num_blocks, progress)
    _print_progress("DECOMPRESS", header.num_blocks, header.num_blocks, progress, final=True)

    if strict and sink.produced != header.uncompressed_size:
        raise IncorrectUncompressedSizeError(header.uncompressed_size, sink.produced)
    return sink.produced


def decompress(compressed: Union[BytesLike, BinaryIO], strict: bool = False,
               progress: bool = False) -> bytes:
    """Decompress a whole stream given as bytes or as a readable binary stream."""
    if isinstance(compressed, (bytes, bytearray, memoryview)):
        src = io.BytesIO(compressed)
    else:
        src = compressed
    sink = RandomAccessSink()
    decompress_stream(src, sink, strict=strict, progress=progress)
    return sink.getvalue()

###############################################################################
# Greedy encoder
###############################################################################

def _lz77_longest_match(data: bytes, pos: int, remaining: int) -> Tuple[int, int]:
    """Longest back-reference for ``data[pos:]``; returns ``(length, distance)``.

    Candidate distances are visited from ``min(pos, 4095)`` down to 2 and
    the best is replaced only by a strictly longer match, so of several
    equally long matches the farthest one wins.  A match is capped at 17
    bytes, at its own distance (the source never overlaps ``pos``) and at
    ``remaining``, the bytes left in the current block.

    Only candidates sharing the first two bytes can reach the minimum
    useful length, so they are located with ``bytes.find`` in ascending
    position (descending distance) order.  Returns ``(0, 0)`` when no
    match of length 2 exists.
    """
    max_len = min(MAX_LZ77_LENGTH, remaining)
    if max_len < MIN_LZ77_LENGTH:
        return 0, 0
    needle = data[pos:pos + MIN_LZ77_LENGTH]
    window_start = pos - min(pos, MAX_LZ77_DISTANCE)
    best_len = 0
    best_dist = 0
    q = data.find(needle, window_start, pos)
    while q != -1:
        dist = pos - q
        cap = min(max_len, dist)
        length = MIN_LZ77_LENGTH
        while length < cap and data[q + length] == data[pos + length]:
            length += 1
        if length > best_len:
            best_len = length
            best_dist = dist
            if best_len == max_len:
                # nothing nearer can be strictly longer
                break
        q = data.find(needle, q + 1, pos)
    return best_len, best_dist


def _rle_run_length(data: bytes, pos: int, remaining: int) -> int:
    first = data[pos]
    limit = min(MAX_RLE_COUNT, remaining)
    count = 1
    while count < limit and data[pos + count] == first:
        count += 1
    return count


def choose_command(lz77_length: int, rle_count: int) -> Tuple[CompressionCommand, int]:
    """Pick the command for one position; returns ``(command, bytes consumed)``.

    Copy when neither candidate covers two bytes.  Otherwise LZ77 only if
    it is strictly longer than the run; ties go to RLE.
    """
    best = max(lz77_length, rle_count)
    if best <= 1:
        return CompressionCommand.COPY, 1
    if lz77_length > rle_count:
        return CompressionCommand.LZ77, lz77_length
    return CompressionCommand.RLE, rle_count


def _encode_block(data: bytes, start: int, end: int) -> bytes:
    """Encode ``data[start:end]`` as one block body (without the size prefix)."""
    out = bytearray()
    pos = start
    last_slot = -1
    while pos < end:
        group_at = len(out)
        out.append(0)
        group = 0
        for slot in range(COMMANDS_PER_GROUP):
            if pos >= end:
                break
            remaining = end - pos
            lz77_length, lz77_distance = _lz77_longest_match(data, pos, remaining)
            rle_count = _rle_run_length(data, pos, remaining)
            command, length = choose_command(lz77_length, rle_count)
            if command is CompressionCommand.COPY:
                out.append(data[pos])
            elif command is CompressionCommand.LZ77:
                out.append(lz77_distance & 0xFF)
                out.append((length - MIN_LZ77_LENGTH) | ((lz77_distance & 0xF00) >> 4))
            else:
                out.append(length - MIN_RLE_COUNT)
                out.append(data[pos])
            group |= command << (2 * slot)
            pos += length
            last_slot = slot
        out[group_at] = group
    # a full last group (or an empty block) needs an explicit EndBlock
    if last_slot == COMMANDS_PER_GROUP - 1 or not out:
        out.append(0)
    return bytes(out)


def compress_stream(data: BytesLike, dst: BinaryIO, progress: bool = False) -> int:
    """Compress ``data`` and write the stream to ``dst``; returns bytes written.

    Each block is encoded into memory first and written together with its
    size prefix, so ``dst`` only needs ``write``.  Empty input is written as
    a single empty block, which the format can express while a block count
    of zero cannot.
    """
    data = bytes(data)
    boundaries = fixed_boundaries(data, BLOCK_SIZE) or [(0, 0)]
    nblocks = len(boundaries)
    try:
        header = encode_varint(len(data)) + encode_varint(nblocks - 1)
    except ValueError as err:
        raise CompressionError(
            f"uncompressed size {len(data)} does not fit the stream header"
        ) from err
    dst.write(header)
    written = len(header)

    _print_progress("COMPRESS", 0, nblocks, progress)
    for i, (start, end) in enumerate(boundaries, 1):
        body = _encode_block(data, start, end)
        try:
            prefix = struct.pack('<H', len(body))
        except struct.error as err:
            raise CompressionError(
                f"compressed block {i - 1} is {len(body)} bytes, more than a u16 size prefix holds"
            ) from err
        dst.write(prefix)
        dst.write(body)
        written += len(prefix) + len(body)
        _print_progress("COMPRESS", i, nblocks, progress)
    _print_progress("COMPRESS", nblocks, nblocks, progress, final=True)
    return written


def compress(data: BytesLike, progress: bool = False) -> bytes:
    """Compress a whole buffer and return the stream."""
    out = io.BytesIO()
    compress_stream(data, out, progress=progress)
    return out.getvalue()

###############################################################################
# Archive chunks
###############################################################################

class MaybeCompressedData:
    """A chunk as stored in an archive, held compressed or uncompressed.

    Chunks read from an archive start out compressed and are only
    decompressed when something needs their contents.  Writing them back
    goes through ``to_compressed``, which returns compressed data untouched,
    so chunks nobody modified come out byte-identical.
    """
    __slots__ = ("data", "is_compressed")

    def __init__(self, data: BytesLike, is_compressed: bool) -> None:
        self.data = bytes(data)
        self.is_compressed = is_compressed

    @classmethod
    def from_compressed(cls, data: BytesLike) -> "MaybeCompressedData":
        return cls(data, True)

    @classmethod
    def from_uncompressed(cls, data: BytesLike) -> "MaybeCompressedData":
        return cls(data, False)

    def to_uncompressed(self, strict: bool = False) -> bytes:
        if self.is_compressed:
            return decompress(self.data, strict=strict)
        return self.data

    def to_compressed(self) -> bytes:
        if self.is_compressed:
            return self.data
        return compress(self.data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MaybeCompressedData):
            return NotImplemented
        return self.is_compressed == other.is_compressed and self.data == other.data

    def __repr__(self) -> str:
        kind = "compressed" if self.is_compressed else "uncompressed"
        return f"MaybeCompressedData({kind}, {len(self.data)} bytes)"

###############################################################################
# CLI
###############################################################################

def main(argv: Optional[List[str]] = None) -> int:
    import argparse, os, sys
    parser = argparse.ArgumentParser(description="Mario & Luigi LZ77/RLE chunk compressor")
    parser.add_argument('input', help="Input file to compress or decompress")
    parser.add_argument('-d', '--decompress', action='store_true', help="Decompress instead of compress")
    parser.add_argument('-o', '--output', help="Output file")
    parser.add_argument('--strict', action='store_true',
                        help="Check declared block and total sizes while decompressing")
    parser.add_argument('--info', action='store_true',
                        help="Print the header of a compressed file and exit")
    parser.add_argument('--progress', action='store_true', help="Show per-block progress")
    args = parser.parse_args(argv)

    try:
        if args.info:
            with open(args.input, 'rb') as f:
                header = read_header(f)
            print(f"{args.input}: {header.uncompressed_size} bytes uncompressed "
                  f"in {header.num_blocks} block(s)")
            return 0

        with open(args.input, 'rb') as f:
            data = f.read()
        if args.decompress:
            out = decompress(data, strict=args.strict, progress=args.progress)
            outname = args.output or (os.path.splitext(args.input)[0] + '.out')
            with open(outname, 'wb') as f:
                f.write(out)
            print(f"Decompressed {len(data)} bytes to {len(out)} bytes → {outname}")
        else:
            blob = compress(data, progress=args.progress)
            outname = args.output or (args.input + '.mnlc')
            with open(outname, 'wb') as f:
                f.write(blob)
            ratio = len(blob) / len(data) if len(data) else 1.0
            print(f"Compressed {len(data)} bytes to {len(blob)} bytes "
                  f"(ratio {ratio:.3f}) → {outname}")
    except (CompressionError, DecompressionError, EOFError) as err:
        print(f"error: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
