"""Detects the dialect of BSP files, resolves lump locations, and reads raw lump data.

A :py:class:`BSPReader` is a session over one file on disk. It holds the detected
dialect, byte order and obfuscation key, and opens the file afresh for every read.
"""
from typing import IO, ClassVar, Dict, Final, List, Mapping, Optional, Tuple
from pathlib import Path
from struct import Struct
import glob
import os
import re

import attrs

from bspkit import StringPath, logger
from bspkit.binformat import align, cached_struct, magic, read_at, read_int, xor_with_key
from bspkit.dialect import (
    Dialect, DirectoryFormat, OutOfRangeLumpIndex, TableShape, TruncatedSource,
)


__all__ = [
    'LumpLocation', 'SidecarEntry', 'SniffResult', 'BSPReader',
    'sniff', 'find_key', 'read_sidecars',
]

LOGGER = logger.get_logger(__name__)

MAGIC_VBSP: Final = magic(b'VBSP')
MAGIC_IBSP: Final = magic(b'IBSP')
MAGIC_RBSP: Final = magic(b'RBSP')
MAGIC_TITANFALL: Final = magic(b'rBSP')
MAGIC_MOHAA: Final = magic(b'2015')
MAGIC_EALA: Final = magic(b'EALA')
MAGIC_STEF2: Final = magic(b'EF2!')
MAGIC_FAKK: Final = magic(b'FAKK')

IBSP_VERSIONS: Final[Mapping[int, Dialect]] = {
    4: Dialect.COD2,
    22: Dialect.COD4,
    38: Dialect.QUAKE2,
    41: Dialect.DAIKATANA,
    46: Dialect.QUAKE3,
    47: Dialect.QUAKE3,
    59: Dialect.COD,
}
VBSP_VERSIONS: Final[Mapping[int, Dialect]] = {
    17: Dialect.SOURCE17,
    18: Dialect.SOURCE18,
    19: Dialect.SOURCE19,
    20: Dialect.SOURCE20,
    21: Dialect.SOURCE21,
    22: Dialect.SOURCE22,
    23: Dialect.SOURCE23,
    27: Dialect.SOURCE27,
}
FAKK_VERSIONS: Final[Mapping[int, Dialect]] = {
    12: Dialect.FAKK,
    19: Dialect.STEF2_DEMO,
    42: Dialect.FAKK,
}
# Files which only start with a version number.
PLAIN_VERSIONS: Final[Mapping[int, Dialect]] = {
    29: Dialect.QUAKE,
    30: Dialect.QUAKE,
    42: Dialect.NIGHTFIRE,
}

# Header sizes used to tell apart dialects sharing a signature.
# The first lump normally starts immediately after the header.
SOF_HEADER_SIZE: Final = 184
QUAKE3_HEADER_SIZE: Final = 144
SIN_HEADER_SIZE: Final = 168
RAVEN_HEADER_SIZE: Final = 152
# Source files have their first lump after the 1036-byte header, L4D2 starts with a version.
SOURCE_DIRECTORY_END: Final = 1032
# Offset of the game lump entry in Source headers.
GAME_LUMP_ENTRY: Final = 8 + 16 * 35
# Vindictus stores a 32-bit version where Source has a file offset.
VINDICTUS_MAX_VERSION: Final = 24

KEY_OFFSET: Final = 384
KEY_SIZE: Final = 32

SIDECAR_HEADER: Final = Struct('<4i')
SIDECAR_EXT: Final = '.lmp'

# Field order in each directory entry.
ENTRY_FIELDS: Final[Mapping[TableShape, Tuple[str, ...]]] = {
    TableShape.PAIRS: ('offset', 'length'),
    TableShape.PAIRS_SWAPPED: ('length', 'offset'),
    TableShape.VERSIONED: ('offset', 'length', 'version', 'ident'),
    TableShape.VERSION_FIRST: ('version', 'offset', 'length', 'ident'),
    TableShape.STRIDED: ('offset', 'length', 'version', 'ident'),
}


@attrs.frozen
class LumpLocation:
    """Where a lump is stored.

    If ``source`` is set, the lump is in that side-car file instead of the map itself.
    """
    offset: int
    length: int
    version: int = 0
    ident: int = 0
    source: Optional[Path] = None

    EMPTY: ClassVar['LumpLocation']


LumpLocation.EMPTY = LumpLocation(0, 0)


@attrs.frozen
class SidecarEntry:
    """A lump overridden by a ``.lmp`` file next to the map."""
    lump_index: int
    offset: int
    length: int
    version: int
    source: Path
    sequence: int

    @property
    def location(self) -> LumpLocation:
        """The location of the lump data inside the side-car."""
        return LumpLocation(self.offset, self.length, self.version, 0, self.source)


@attrs.frozen
class SniffResult:
    """The dialect of a file, along with how to read it."""
    dialect: Dialect
    byte_order: str = '<'
    key: bytes = b''


def _probe_header_size(file: IO[bytes], order: str, match: int, stop: int) -> bool:
    """Check the offsets of the first lumps, looking for the expected header size."""
    for i in range(17):
        value = read_int(file, (i + 1) * 8, order)
        if value is None or value == stop:
            return False
        if value == match:
            return True
    return False


def _is_vindictus(file: IO[bytes], order: str) -> bool:
    """Vindictus has a different game lump header, with a version where the offset should be."""
    game_lump = read_int(file, GAME_LUMP_ENTRY, order)
    if game_lump is None or game_lump <= 0:
        return False
    count = read_int(file, game_lump, order)
    if count is None or count <= 0:
        return False
    value = read_int(file, game_lump + 12, order)
    return value is not None and value < VINDICTUS_MAX_VERSION


def _sniff_order(file: IO[bytes], order: str) -> Dialect:
    """Try to identify the file, reading integers in the specified byte order."""
    ident = read_int(file, 0, order)
    if ident is None:
        return Dialect.UNDETERMINED
    version = read_int(file, 4, order)

    if ident == MAGIC_IBSP:
        dialect = IBSP_VERSIONS.get(version, Dialect.UNDETERMINED)
        if version == 46 and _probe_header_size(file, order, SOF_HEADER_SIZE, QUAKE3_HEADER_SIZE):
            return Dialect.SOF
        return dialect
    elif ident == MAGIC_RBSP:
        if _probe_header_size(file, order, SIN_HEADER_SIZE, RAVEN_HEADER_SIZE):
            return Dialect.SIN
        return Dialect.RAVEN
    elif ident == MAGIC_VBSP:
        if version is None:
            return Dialect.UNDETERMINED
        low, high = version & 0xFFFF, (version >> 16) & 0xFFFF
        if low == 20:
            if high == 4:
                return Dialect.DMOMAM
            if _is_vindictus(file, order):
                return Dialect.VINDICTUS
            return Dialect.SOURCE20
        elif low == 21:
            first = read_int(file, 8, order)
            if first is not None and first < SOURCE_DIRECTORY_END:
                return Dialect.L4D2
            return Dialect.SOURCE21
        return VBSP_VERSIONS.get(low, Dialect.UNDETERMINED)
    elif ident == MAGIC_TITANFALL:
        return Dialect.TITANFALL
    elif ident == MAGIC_MOHAA or ident == MAGIC_EALA:
        return Dialect.MOHAA
    elif ident == MAGIC_STEF2:
        return Dialect.STEF2
    elif ident == MAGIC_FAKK:
        return FAKK_VERSIONS.get(version, Dialect.UNDETERMINED)
    return PLAIN_VERSIONS.get(ident, Dialect.UNDETERMINED)


def find_key(file: IO[bytes]) -> bytes:
    """Look for the key used by obfuscated files.

    The key is XORed over an area of the header which is otherwise always zero,
    so it can be read straight out. If the result does not decode the signature,
    an empty key is returned.
    """
    key = read_at(file, KEY_OFFSET, KEY_SIZE)
    # Unobfuscated files have zeros here.
    if len(key) < KEY_SIZE or not any(key):
        return b''
    head = xor_with_key(read_at(file, 0, 4), key, 0)
    if len(head) == 4 and magic(head) == MAGIC_VBSP:
        return key
    return b''


def sniff(file: IO[bytes]) -> SniffResult:
    """Identify the dialect of a BSP file.

    This never raises for unrecognised data, instead returning
    :py:attr:`Dialect.UNDETERMINED <bspkit.dialect.Dialect.UNDETERMINED>`.
    """
    for order in '<>':
        dialect = _sniff_order(file, order)
        if dialect is not Dialect.UNDETERMINED:
            LOGGER.debug('Detected {} ({} endian)', dialect, 'little' if order == '<' else 'big')
            return SniffResult(dialect, order)
    key = find_key(file)
    if key:
        LOGGER.debug('Detected obfuscated file, key = {}', key.hex())
        return SniffResult(Dialect.TACTICAL_INTERVENTION, '<', key)
    LOGGER.warning('Could not determine the dialect of "{}"!', getattr(file, 'name', '<stream>'))
    return SniffResult(Dialect.UNDETERMINED)


def _sidecar_sequence(stem: str, candidate: Path) -> Optional[str]:
    """Extract the sequence part of a side-car filename for this map.

    Files for other maps sharing the same prefix (``map_night_l_0.lmp`` for ``map``)
    do not match, and produce ``None``.
    """
    pattern = re.escape(stem) + r'_([^_]+)_([^_]+)' + re.escape(SIDECAR_EXT)
    match = re.fullmatch(pattern, candidate.name)
    if match is None:
        return None
    return match.group(2)


def read_sidecars(filename: StringPath) -> Dict[int, SidecarEntry]:
    """Find and parse the ``.lmp`` files which override lumps in this map.

    These are named ``<map>_<lump>_<sequence>.lmp``. They are applied in order of
    increasing sequence number, so later files replace earlier ones.
    """
    path = Path(filename)
    found: List[Tuple[int, str, Path]] = []
    for candidate in path.parent.glob(glob.escape(path.stem) + '_*_*' + SIDECAR_EXT):
        sequence = _sidecar_sequence(path.stem, candidate)
        if sequence is None:  # Belongs to another map.
            continue
        if not sequence.isdecimal():
            LOGGER.warning('Ignoring lump file "{}", no sequence number.', candidate.name)
            continue
        found.append((int(sequence), candidate.name, candidate))
    found.sort()

    entries: Dict[int, SidecarEntry] = {}
    for sequence, name, candidate in found:
        with candidate.open('rb') as file:
            header = file.read(SIDECAR_HEADER.size)
        if len(header) < SIDECAR_HEADER.size:
            LOGGER.warning('Lump file "{}" is too short!', name)
            continue
        offset, index, version, length = SIDECAR_HEADER.unpack(header)
        if index in entries:
            LOGGER.debug('Lump file "{}" replaces "{}"', name, entries[index].source.name)
        entries[index] = SidecarEntry(index, offset, length, version, candidate, sequence)
    if entries:
        LOGGER.debug('Lump files for "{}": {}', path.name, sorted(entries))
    return entries


class BSPReader:
    """A session reading one BSP file.

    The dialect is detected when created, unless it is passed in. In that case the
    byte order is assumed to be little-endian.
    """
    filename: Path
    dialect: Dialect
    byte_order: str
    key: bytes
    use_sidecars: bool
    _sidecars: Optional[Dict[int, SidecarEntry]]

    def __init__(
        self,
        filename: StringPath,
        dialect: Optional[Dialect] = None,
        *,
        sidecars: bool = True,
    ) -> None:
        self.filename = Path(filename)
        self.use_sidecars = sidecars
        self._sidecars = None
        with self.filename.open('rb') as file:
            if dialect is None:
                result = sniff(file)
            elif dialect.is_obfuscated:
                result = SniffResult(dialect, '<', find_key(file))
                if not result.key:
                    LOGGER.warning('No key found in "{}", reading without one.', self.filename.name)
            else:
                result = SniffResult(dialect)
        self.dialect = result.dialect
        self.byte_order = result.byte_order
        self.key = result.key

    def __repr__(self) -> str:
        return f'<BSPReader "{self.filename}" {self.dialect!r}>'

    @property
    def size(self) -> int:
        """The current size of the file."""
        return os.stat(self.filename).st_size

    @property
    def sidecars(self) -> Mapping[int, SidecarEntry]:
        """Lump overrides from side-car files, found the first time this is accessed."""
        if not self.use_sidecars or not self.dialect.supports_sidecars:
            return {}
        if self._sidecars is None:
            self._sidecars = read_sidecars(self.filename)
        return self._sidecars

    def _read(self, file: IO[bytes], offset: int, length: int) -> bytes:
        """Read and deobfuscate part of the main file. This may be short."""
        return xor_with_key(read_at(file, offset, length), self.key, offset)

    def read_range(self, offset: int, length: int) -> bytes:
        """Read part of the file, returning whatever is available."""
        with self.filename.open('rb') as file:
            return self._read(file, offset, length)

    def _scan_table(self, file: IO[bytes]) -> List[Tuple[int, int, int]]:
        """Parse a directory of (id, length) pairs, computing the offsets.

        Each lump starts at the next multiple of 4 after the previous one.
        """
        directory = self.dialect.directory
        data = self._read(file, directory.base - 4, 4)
        if len(data) < 4:
            return []
        [count] = cached_struct(self.byte_order + 'i').unpack(data)
        if count <= 0:
            return []
        data = self._read(file, directory.base, directory.entry_size * count)
        if len(data) < directory.entry_size * count:
            return []
        offset = directory.base + directory.entry_size * count
        table = []
        for ident, length in cached_struct(self.byte_order + 'ii').iter_unpack(data):
            table.append((ident, offset, length))
            offset = align(offset + length)
        return table

    def scan_order(self) -> List[Tuple[int, int, int]]:
        """For scanned directories, list each ``(id, offset, length)`` in the order stored."""
        with self.filename.open('rb') as file:
            return self._scan_table(file)

    def _parse_entry(self, file: IO[bytes], directory: DirectoryFormat, index: int) -> LumpLocation:
        fields = ENTRY_FIELDS[directory.shape]
        data = self._read(file, directory.entry_offset(index), directory.entry_size)
        if len(data) < directory.entry_size:
            return LumpLocation.EMPTY
        values = cached_struct(self.byte_order + 'i' * len(fields)).unpack(data[:4 * len(fields)])
        return LumpLocation(**dict(zip(fields, values)))

    def lump_info(self, index: int, *, sidecars: bool = True) -> LumpLocation:
        """Compute the location of a lump.

        Side-car files take priority over the directory in the map, unless
        ``sidecars`` is false.
        """
        directory = self.dialect.directory
        if not 0 <= index < directory.lump_count:
            raise OutOfRangeLumpIndex(
                f'Lump {index} is not valid for {self.dialect.name}, '
                f'which has {directory.lump_count} lumps.'
            )
        if sidecars:
            try:
                return self.sidecars[index].location
            except KeyError:
                pass
        with self.filename.open('rb') as file:
            if directory.shape is TableShape.SCAN:
                for ident, offset, length in self._scan_table(file):
                    if ident == index:
                        return LumpLocation(offset, length)
                return LumpLocation.EMPTY
            return self._parse_entry(file, directory, index)

    def read_lump(self, location: LumpLocation) -> bytes:
        """Read exactly the bytes for a lump.

        :raises TruncatedSource: If the lump extends past the end of the file.
        """
        if location.length == 0:
            return b''
        if location.offset < 0 or location.length < 0:
            raise TruncatedSource(
                f'Invalid lump location ({location.offset}, {location.length})!'
            )
        source = location.source or self.filename
        with open(source, 'rb') as file:
            data = read_at(file, location.offset, location.length)
        if len(data) < location.length:
            raise TruncatedSource(
                f'Lump at {location.offset} with length {location.length} '
                f'extends past the end of "{source}" ({location.offset + len(data)} bytes)!'
            )
        if location.source is None:
            data = xor_with_key(data, self.key, location.offset)
        return data

    def get_lump(self, index: int) -> bytes:
        """Read the raw bytes of a lump by index."""
        return self.read_lump(self.lump_info(index))
