"""Test detecting the dialect of files."""
from io import BytesIO
import struct

import pytest

from bspkit.binformat import magic
from bspkit.dialect import Dialect
from bspkit.reader import find_key, sniff

from helpers import *


# Data which is placed in lump 0, so the first offset is the header size.
FIRST_LUMP = {0: b'entities\0'}


@pytest.mark.parametrize('dialect', [
    dialect for dialect in TABLE_DIALECTS
    # These need special contents.
    if dialect not in [Dialect.VINDICTUS, Dialect.TACTICAL_INTERVENTION]
], ids=lambda dialect: dialect.name)
@pytest.mark.parametrize('byte_order', ['<', '>'], ids=['little', 'big'])
def test_signatures(dialect: Dialect, byte_order: str) -> None:
    """Each dialect can be identified, in either byte order."""
    data = build_table(dialect, FIRST_LUMP, byte_order=byte_order)
    result = sniff(BytesIO(data))
    assert result.dialect is dialect
    assert result.byte_order == byte_order
    assert result.key == b''


@pytest.mark.parametrize('byte_order', ['<', '>'], ids=['little', 'big'])
def test_scanned_signature(byte_order: str) -> None:
    """Call of Duty 4 is identified by version."""
    result = sniff(BytesIO(build_scanned({1: b'abcd'}, byte_order)))
    assert result.dialect is Dialect.COD4
    assert result.byte_order == byte_order


def test_quake3_sof_fallback() -> None:
    """If no lump offsets give a hint, version 46 is treated as Quake 3."""
    data = build_table(Dialect.QUAKE3, {})
    assert sniff(BytesIO(data)).dialect is Dialect.QUAKE3


def test_sof_later_lump() -> None:
    """The probe skips empty entries."""
    data = build_table(Dialect.SOF, {3: b'1234'})
    assert sniff(BytesIO(data)).dialect is Dialect.SOF


def test_raven_sin_fallback() -> None:
    """RBSP files default to Raven."""
    assert sniff(BytesIO(build_table(Dialect.RAVEN, {}))).dialect is Dialect.RAVEN
    assert sniff(BytesIO(build_table(Dialect.SIN, {2: b'x'}))).dialect is Dialect.SIN


def test_mohaa_eala() -> None:
    """Medal of Honor expansions use a different signature."""
    data = bytearray(build_table(Dialect.MOHAA, FIRST_LUMP))
    data[0:4] = b'EALA'
    assert sniff(BytesIO(data)).dialect is Dialect.MOHAA


def test_fakk_version_42() -> None:
    """Heavy Metal FAKK2 has a version 42 too."""
    data = bytearray(build_table(Dialect.FAKK, FIRST_LUMP))
    data[4:8] = struct.pack('<i', 42)
    assert sniff(BytesIO(data)).dialect is Dialect.FAKK


def test_l4d2_without_first_lump() -> None:
    """Version 21 files check if the first field looks like a version or an offset."""
    data = build_table(Dialect.L4D2, FIRST_LUMP, versions={0: 1})
    assert sniff(BytesIO(data)).dialect is Dialect.L4D2
    data = build_table(Dialect.SOURCE21, FIRST_LUMP)
    assert sniff(BytesIO(data)).dialect is Dialect.SOURCE21


def make_game_lump(count: int, value: int) -> bytes:
    """Make a game lump header, with a value where the first offset is."""
    return struct.pack('<iiii', count, magic(b'sprp'), 0, value) + bytes(8)


def test_scenario_source20() -> None:
    """A version 20 file with an empty game lump is plain Source."""
    data = build_table(Dialect.SOURCE20, {0: b'ents', 35: make_game_lump(0, 5)})
    assert sniff(BytesIO(data)).dialect is Dialect.SOURCE20


def test_scenario_vindictus() -> None:
    """Vindictus has a small version number where game lumps have an offset."""
    data = build_table(Dialect.VINDICTUS, {0: b'ents', 35: make_game_lump(2, 5)})
    assert sniff(BytesIO(data)).dialect is Dialect.VINDICTUS


def test_source20_real_offset() -> None:
    """A game lump with a real offset is not Vindictus."""
    data = build_table(Dialect.SOURCE20, {0: b'ents', 35: make_game_lump(2, 2048)})
    assert sniff(BytesIO(data)).dialect is Dialect.SOURCE20


def test_source20_game_lump_missing() -> None:
    """If the game lump can't be read, the default is used."""
    data = bytearray(build_table(Dialect.SOURCE20, {0: b'ents'}))
    # Point it past the end of the file.
    struct.pack_into('<ii', data, 8 + 16 * 35, 1 << 20, 16)
    assert sniff(BytesIO(data)).dialect is Dialect.SOURCE20


def test_dmomam() -> None:
    """Dark Messiah stores a second version number in the high bits."""
    data = build_table(Dialect.DMOMAM, FIRST_LUMP)
    assert sniff(BytesIO(data)).dialect is Dialect.DMOMAM


def test_scenario_obfuscated() -> None:
    """If nothing matches, check if the file is XORed with a key."""
    key = make_key(1234)
    data = build_obfuscated({0: b'entities', 1: bytes(range(64))}, key)
    result = sniff(BytesIO(data))
    assert result.dialect is Dialect.TACTICAL_INTERVENTION
    assert result.byte_order == '<'
    assert result.key == key


def test_obfuscated_zero_signature() -> None:
    """The signature can be zero once obfuscated, in both byte orders."""
    key = b'VBSP' + make_key(45)[4:]
    data = build_obfuscated({0: b'entities'}, key)
    assert data[:4] == bytes(4)
    result = sniff(BytesIO(data))
    assert result.dialect is Dialect.TACTICAL_INTERVENTION
    assert result.key == key


def test_find_key_not_obfuscated() -> None:
    """Plain files do not produce a key."""
    assert find_key(BytesIO(build_table(Dialect.SOURCE19, FIRST_LUMP))) == b''
    assert find_key(BytesIO(b'VBSP')) == b''


@pytest.mark.parametrize('data', [
    b'',
    b'VB',
    b'PK\x03\x04' + bytes(2000),
    bytes(2000),
    b'IBSP' + struct.pack('<i', 1000) + bytes(100),
    b'VBSP' + struct.pack('<i', 99) + bytes(2000),
    b'FAKK' + struct.pack('<i', 5) + bytes(100),
], ids=['empty', 'short', 'zip', 'zeros', 'ibsp_unknown', 'vbsp_unknown', 'fakk_unknown'])
def test_undetermined(data: bytes, caplog: pytest.LogCaptureFixture) -> None:
    """Unknown files are reported, not raised."""
    result = sniff(BytesIO(data))
    assert result.dialect is Dialect.UNDETERMINED
    assert result.key == b''
    assert 'Could not determine' in caplog.text


def test_undetermined_short_after_signature() -> None:
    """Truncated files with a valid signature do not raise."""
    assert sniff(BytesIO(b'VBSP')).dialect is Dialect.UNDETERMINED
    assert sniff(BytesIO(b'IBSP\x2e\x00\x00\x00')).dialect is Dialect.QUAKE3
    assert sniff(BytesIO(b'RBSP\x01\x00')).dialect is Dialect.RAVEN
