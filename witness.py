"""
Bitcoin compact-size integers and witness stack serialization.

A witness stack is written exactly as it appears on the wire: a compact-size
item count, then each item as a compact-size length followed by its raw
bytes. Items are opaque; nothing here interprets them as script.
"""

from __future__ import annotations

import struct
from typing import Sequence

from spell_errors import TruncatedWitness


def compact_size(n: int) -> bytes:
    """Encode ``n`` as a Bitcoin compact-size integer."""
    if n < 0:
        raise ValueError(f"compact size cannot encode negative value {n}")
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def read_compact_size(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a Bitcoin compact-size varint. Returns (value, new_offset)."""
    if offset >= len(data):
        raise ValueError(f"Unexpected end of data at offset {offset}.")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + 1 + width > len(data):
        raise ValueError(f"Truncated compact size at offset {offset}.")
    fmt = {2: "<H", 4: "<I", 8: "<Q"}[width]
    return struct.unpack_from(fmt, data, offset + 1)[0], offset + 1 + width


def serialize_witness(stack: Sequence[bytes]) -> bytes:
    parts = [compact_size(len(stack))]
    for item in stack:
        parts.append(compact_size(len(item)))
        parts.append(bytes(item))
    return b"".join(parts)


def deserialize_witness(data: bytes) -> list[bytes]:
    """
    Inverse of ``serialize_witness``.

    Raises TruncatedWitness when a length prefix or item runs past the end of
    the buffer, and ValueError when bytes remain after the last item.
    """
    try:
        count, offset = read_compact_size(data, 0)
    except ValueError as exc:
        raise TruncatedWitness(
            "Witness is missing its item count.", offset=0, available=len(data)
        ) from exc

    stack: list[bytes] = []
    for index in range(count):
        try:
            item_len, offset = read_compact_size(data, offset)
        except ValueError as exc:
            raise TruncatedWitness(
                f"Length prefix of witness item {index} is truncated.",
                index=index,
                offset=offset,
                available=len(data) - offset,
            ) from exc
        remaining = len(data) - offset
        if item_len > remaining:
            raise TruncatedWitness(
                f"Witness item {index} declares {item_len} bytes but only "
                f"{remaining} remain.",
                index=index,
                offset=offset,
                declared=item_len,
                available=remaining,
            )
        stack.append(bytes(data[offset : offset + item_len]))
        offset += item_len

    if offset != len(data):
        raise ValueError(f"Witness has {len(data) - offset} trailing bytes.")
    return stack
