"""Helpers for building BSP files to test with."""
from typing import Dict, Mapping, Optional, Tuple
from pathlib import Path
from random import Random
import struct

from bspkit.binformat import align, magic, xor_with_key
from bspkit.dialect import Dialect, TableShape
from bspkit.reader import ENTRY_FIELDS


__all__ = [
    'SIGNATURES', 'build_table', 'build_scanned', 'build_obfuscated',
    'write_sidecar', 'make_key', 'TABLE_DIALECTS',
]

# The values making up the start of the header, before the directory.
SIGNATURES: Mapping[Dialect, Tuple[int, ...]] = {
    Dialect.QUAKE: (29, ),
    Dialect.NIGHTFIRE: (42, ),
    Dialect.QUAKE2: (magic(b'IBSP'), 38),
    Dialect.DAIKATANA: (magic(b'IBSP'), 41),
    Dialect.QUAKE3: (magic(b'IBSP'), 46),
    Dialect.SOF: (magic(b'IBSP'), 46),
    Dialect.COD: (magic(b'IBSP'), 59),
    Dialect.COD2: (magic(b'IBSP'), 4),
    Dialect.COD4: (magic(b'IBSP'), 22),
    Dialect.RAVEN: (magic(b'RBSP'), 1),
    Dialect.SIN: (magic(b'RBSP'), 1),
    Dialect.STEF2: (magic(b'EF2!'), 20, 0x1234),
    Dialect.STEF2_DEMO: (magic(b'FAKK'), 19, 0x1234),
    Dialect.MOHAA: (magic(b'2015'), 19, 0x1234),
    Dialect.FAKK: (magic(b'FAKK'), 12, 0x1234),
    Dialect.SOURCE17: (magic(b'VBSP'), 17),
    Dialect.SOURCE18: (magic(b'VBSP'), 18),
    Dialect.SOURCE19: (magic(b'VBSP'), 19),
    Dialect.SOURCE20: (magic(b'VBSP'), 20),
    Dialect.SOURCE21: (magic(b'VBSP'), 21),
    Dialect.SOURCE22: (magic(b'VBSP'), 22),
    Dialect.SOURCE23: (magic(b'VBSP'), 23),
    Dialect.SOURCE27: (magic(b'VBSP'), 27),
    Dialect.L4D2: (magic(b'VBSP'), 21),
    Dialect.VINDICTUS: (magic(b'VBSP'), 20),
    Dialect.DMOMAM: (magic(b'VBSP'), 20 | (4 << 16)),
    Dialect.TACTICAL_INTERVENTION: (magic(b'VBSP'), 20),
    Dialect.TITANFALL: (magic(b'rBSP'), 29, 0, 127),
}
TABLE_DIALECTS = [
    dialect for dialect in SIGNATURES
    if dialect.directory.shape is not TableShape.SCAN
]
# The map revision stored after Source directories.
MAP_REVISION = 42


def build_table(
    dialect: Dialect,
    lumps: Mapping[int, bytes],
    *,
    byte_order: str = '<',
    versions: Optional[Mapping[int, int]] = None,
) -> bytes:
    """Build a file with a fixed directory, placing lumps one after another in index order.

    Missing lumps are empty, with an offset of zero.
    """
    directory = dialect.directory
    prefix = struct.pack(byte_order + 'i' * len(SIGNATURES[dialect]), *SIGNATURES[dialect])
    assert len(prefix) == directory.base, dialect
    fields = ENTRY_FIELDS[directory.shape]
    entry = struct.Struct(byte_order + 'i' * len(fields))
    table = bytearray(directory.entry_size * directory.lump_count)
    body = bytearray()
    offset = directory.header_size
    for index in range(directory.lump_count):
        data = lumps.get(index, b'')
        values = {
            'offset': offset + len(body) if data else 0,
            'length': len(data),
            'version': (versions or {}).get(index, 0),
            'ident': 0,
        }
        entry.pack_into(table, directory.entry_size * index, *[values[name] for name in fields])
        body += data
    suffix = struct.pack(byte_order + 'i', MAP_REVISION) if directory.suffix else b''
    return prefix + bytes(table) + suffix + bytes(body)


def build_scanned(lumps: Dict[int, bytes], byte_order: str = '<') -> bytes:
    """Build a Call of Duty 4 file, storing the lumps in the order given."""
    header = struct.pack(byte_order + 'iii', *SIGNATURES[Dialect.COD4], len(lumps))
    for ident, data in lumps.items():
        header += struct.pack(byte_order + 'ii', ident, len(data))
    result = bytearray(header)
    for data in lumps.values():
        result += bytes(align(len(result)) - len(result))
        result += data
    return bytes(result)


def make_key(seed: int) -> bytes:
    """Generate a reproducible random key."""
    return Random(seed).getrandbits(256).to_bytes(32, 'little')


def build_obfuscated(lumps: Mapping[int, bytes], key: bytes) -> bytes:
    """Build an obfuscated Source file."""
    for index in (23, 24, 25):
        assert index not in lumps, 'These lumps overlap the key.'
    return xor_with_key(build_table(Dialect.TACTICAL_INTERVENTION, lumps), key, 0)


def write_sidecar(bsp: Path, index: int, sequence: int, data: bytes, version: int = 0) -> Path:
    """Write a lump file overriding a lump in this map."""
    path = bsp.with_name(f'{bsp.stem}_l_{sequence}.lmp')
    path.write_bytes(struct.pack('<4i', 16, index, version, len(data)) + data)
    return path
