"""
The binformat module :mod:`binformat` contains helpers for reading the binary structures \
in BSP files, expanding on :external:mod:`struct`'s functionality.
"""
from typing import IO, Any, Final, Mapping, Optional, Tuple, Union
from struct import Struct
import functools


__all__ = [
    'SIZES', 'SIZE_INT', 'SIZE_SHORT', 'SIZE_FLOAT',
    'struct_read', 'cached_struct', 'read_at', 'read_int', 'magic',
    'xor_with_key', 'align',
]

SIZES: Final[Mapping[str, int]] = {
    fmt: Struct('<' + fmt).size
    for fmt in 'cbB?hHiIlLqQfd'
}
SIZE_SHORT: Final = 2
SIZE_INT: Final = 4
SIZE_FLOAT: Final = 4

cached_struct = functools.lru_cache()(Struct)


def struct_read(fmt: Union[Struct, str], file: IO[bytes]) -> Tuple[Any, ...]:
    """Read a structure from the file, automatically computing the required number of bytes."""
    if not isinstance(fmt, Struct):
        fmt = cached_struct(fmt)
    return fmt.unpack(file.read(fmt.size))


def read_at(file: IO[bytes], offset: int, size: int) -> bytes:
    """Seek to the offset, then read up to ``size`` bytes.

    Negative offsets produce no data, instead of seeking from the end.
    """
    if offset < 0 or size <= 0:
        return b''
    file.seek(offset)
    return file.read(size)


def read_int(file: IO[bytes], offset: int, byte_order: str = '<') -> Optional[int]:
    """Read a signed 32-bit integer at the given position.

    If the file is too short, ``None`` is returned instead of raising.
    """
    data = read_at(file, offset, SIZE_INT)
    if len(data) < SIZE_INT:
        return None
    return cached_struct(byte_order + 'i').unpack(data)[0]


def magic(ident: bytes, byte_order: str = '<') -> int:
    """Convert a four-character identifier into the integer stored in files."""
    return cached_struct(byte_order + 'i').unpack(ident)[0]


def xor_with_key(data: bytes, key: bytes, start: int = 0) -> bytes:
    """XOR each byte with the key, cycling the key from the absolute offset of the data.

    Byte ``i`` is combined with ``key[(start + i) % len(key)]``, so applying this
    twice with the same arguments returns the original data. An empty key leaves the
    data unchanged.
    """
    if not key or not data:
        return data
    key_len = len(key)
    shift = start % key_len
    # Rotate the key so it lines up with index 0, then repeat to cover the data.
    rotated = key[shift:] + key[:shift]
    repeats, extra = divmod(len(data), key_len)
    full_key = rotated * repeats + rotated[:extra]
    return (
        int.from_bytes(data, 'little') ^ int.from_bytes(full_key, 'little')
    ).to_bytes(len(data), 'little')


def align(value: int, alignment: int = 4) -> int:
    """Round the value up to the next multiple of the alignment."""
    return (value + alignment - 1) // alignment * alignment
