"""Test the binary helper functions."""
from io import BytesIO
from random import Random

import pytest

from bspkit import binformat


@pytest.mark.parametrize('seed', [5332, 750, 7678, 2713])
@pytest.mark.parametrize('start', [0, 3, 31, 32, 385, 1000])
def test_xor_twice_restores(seed: int, start: int) -> None:
    """Obfuscating then deobfuscating at the same offset gives back the original."""
    rand = Random(seed)
    data = rand.getrandbits(8 * 300).to_bytes(300, 'little')
    key = rand.getrandbits(8 * 32).to_bytes(32, 'little')

    mangled = binformat.xor_with_key(data, key, start)
    assert mangled != data
    assert binformat.xor_with_key(mangled, key, start) == data


def test_xor_uses_absolute_offset() -> None:
    """The key index depends on the position in the file, not the position in the chunk."""
    key = bytes(range(1, 33))
    data = bytes(64)
    whole = binformat.xor_with_key(data, key, 0)
    assert whole == key + key
    # Reading a chunk in the middle must line up with the whole-file result.
    assert binformat.xor_with_key(data[10:50], key, 10) == whole[10:50]
    assert binformat.xor_with_key(b'\0\0', key, 31) == bytes([32, 1])


def test_xor_empty() -> None:
    """No key, or no data, does nothing."""
    assert binformat.xor_with_key(b'abcd', b'', 12) == b'abcd'
    assert binformat.xor_with_key(b'', b'key', 12) == b''


@pytest.mark.parametrize('value, result', [
    (0, 0), (1, 4), (3, 4), (4, 4), (5, 8), (1035, 1036), (1036, 1036),
])
def test_align(value: int, result: int) -> None:
    """Test rounding up to the next multiple of 4."""
    assert binformat.align(value) == result


def test_read_int() -> None:
    """read_int() returns None for short files instead of failing."""
    file = BytesIO(b'\x01\x00\x00\x00\x00\x00\x00\x02\xff\xff')
    assert binformat.read_int(file, 0) == 1
    assert binformat.read_int(file, 4, '>') == 2
    assert binformat.read_int(file, 8) is None
    assert binformat.read_int(file, 200) is None
    assert binformat.read_int(file, -4) is None


def test_struct_read() -> None:
    """Test reading a structure from a file."""
    file = BytesIO(b'VBSP\x14\x00\x00\x00rest')
    assert binformat.struct_read('<4si', file) == (b'VBSP', 20)
    assert file.read() == b'rest'


def test_magic() -> None:
    """Identifiers are stored as little-endian integers."""
    assert binformat.magic(b'VBSP') == 0x50534256
    assert binformat.magic(b'IBSP') == 0x50534249
