"""Store-only ZIP archive construction.

Generated images are already compressed (PNG, JPEG, WebP), so the archive
uses the *store* method and needs no compression library.  The module has
no dependency on the rest of the pipeline: named buffers go in, one buffer
comes out.

Archive Layout
--------------
::

    [local header 1][name 1][data 1] ... [local header n][name n][data n]
    [central record 1][name 1] ... [central record n][name n]
    [end of central directory]

Local headers and central-directory records carry the same per-entry
metadata (CRC-32, sizes, DOS timestamp, name length); the central record
also stores the byte offset of its local header.  All integers are
little-endian.

Usage
-----
::

    from photoforge.core.archive import build_archive

    data = build_archive([("enhanced-1.png", png_bytes), ("enhanced-2.png", other)])
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIR_SIGNATURE = 0x06054B50

VERSION = 20  # 2.0, the minimum for plain stored files
METHOD_STORE = 0
UTF8_FLAG = 0x0800

# signature, version needed, flags, method, time, date, crc, compressed size,
# uncompressed size, name length, extra length
_LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
# signature, version made by, version needed, flags, method, time, date, crc,
# compressed size, uncompressed size, name length, extra length, comment
# length, disk number, internal attrs, external attrs, local header offset
_CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")
# signature, this disk, central dir disk, entries on disk, total entries,
# central dir size, central dir offset, comment length
_END_OF_CENTRAL_DIR = struct.Struct("<IHHHHIIH")

_MAX_UINT16 = 0xFFFF
_MAX_UINT32 = 0xFFFFFFFF


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (0xEDB88320 ^ (c >> 1)) if c & 1 else (c >> 1)
        table.append(c)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def crc32(data: bytes) -> int:
    """Compute the IEEE 802.3 CRC-32 of ``data``."""
    c = 0xFFFFFFFF
    for byte in data:
        c = _CRC_TABLE[(c ^ byte) & 0xFF] ^ (c >> 8)
    return c ^ 0xFFFFFFFF


def dos_datetime(moment: datetime) -> tuple[int, int]:
    """Pack a datetime into DOS ``(time, date)`` words.

    Seconds are stored with two-second resolution.  Years before 1980 are
    clamped to 1980, the earliest representable year.

    Returns:
        Tuple of ``(time, date)``, each a 16-bit integer
    """
    year = max(moment.year, 1980)
    dos_time = (moment.hour << 11) | (moment.minute << 5) | (moment.second // 2)
    dos_date = ((year - 1980) << 9) | (moment.month << 5) | moment.day
    return dos_time & _MAX_UINT16, dos_date & _MAX_UINT16


@dataclass(frozen=True)
class _Entry:
    name: bytes
    data: bytes
    crc: int
    flags: int


def _coerce_entry(entry) -> tuple[str, bytes]:
    if isinstance(entry, tuple):
        name, data = entry
    else:
        name, data = entry.name, entry.data
    return name, bytes(data)


def build_archive(entries: Iterable, *, timestamp: datetime | None = None) -> bytes:
    """Pack named byte buffers into a store-only ZIP archive.

    Args:
        entries: ``(name, data)`` tuples, or objects with ``name`` and
            ``data`` attributes (e.g. ``GeneratedOutput``)
        timestamp: Modification time recorded for every entry (defaults to
            now, UTC)

    Returns:
        The complete archive

    Raises:
        ValueError: On duplicate or empty names, or when the archive would
            exceed the classic (non-ZIP64) format limits
    """
    moment = timestamp or datetime.now(timezone.utc)
    mod_time, mod_date = dos_datetime(moment)

    prepared: list[_Entry] = []
    seen: set[str] = set()
    for entry in entries:
        name, data = _coerce_entry(entry)
        if not name:
            raise ValueError("Archive entry names must not be empty")
        if name in seen:
            raise ValueError(f"Duplicate archive entry: {name}")
        seen.add(name)

        try:
            encoded = name.encode("ascii")
            flags = 0
        except UnicodeEncodeError:
            encoded = name.encode("utf-8")
            flags = UTF8_FLAG

        if len(data) > _MAX_UINT32:
            raise ValueError(f"Archive entry too large: {name}")
        prepared.append(_Entry(name=encoded, data=data, crc=crc32(data), flags=flags))

    if len(prepared) > _MAX_UINT16:
        raise ValueError("Too many archive entries")

    local_region = bytearray()
    central_region = bytearray()

    for entry in prepared:
        offset = len(local_region)
        size = len(entry.data)

        local_region += _LOCAL_HEADER.pack(
            LOCAL_HEADER_SIGNATURE,
            VERSION,
            entry.flags,
            METHOD_STORE,
            mod_time,
            mod_date,
            entry.crc,
            size,
            size,
            len(entry.name),
            0,
        )
        local_region += entry.name
        local_region += entry.data

        central_region += _CENTRAL_HEADER.pack(
            CENTRAL_HEADER_SIGNATURE,
            VERSION,
            VERSION,
            entry.flags,
            METHOD_STORE,
            mod_time,
            mod_date,
            entry.crc,
            size,
            size,
            len(entry.name),
            0,
            0,
            0,
            0,
            0,
            offset,
        )
        central_region += entry.name

    if len(local_region) > _MAX_UINT32:
        raise ValueError("Archive too large for the classic ZIP format")

    end_record = _END_OF_CENTRAL_DIR.pack(
        END_OF_CENTRAL_DIR_SIGNATURE,
        0,
        0,
        len(prepared),
        len(prepared),
        len(central_region),
        len(local_region),
        0,
    )

    return bytes(local_region + central_region + end_record)
