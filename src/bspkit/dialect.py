"""The engine dialects which are recognised, and how each lays out its lump directory."""
from typing import Dict, Final, FrozenSet
from enum import Enum

import attrs


__all__ = [
    'Dialect', 'TableShape', 'DirectoryFormat', 'DIRECTORIES',
    'UndeterminedDialect', 'UnsupportedDialectForRecordKind',
    'OutOfRangeLumpIndex', 'TruncatedSource',
]


class UndeterminedDialect(ValueError):
    """Raised when an operation requires a dialect, but the file's could not be detected."""


class UnsupportedDialectForRecordKind(ValueError):
    """Raised when a record kind has no layout for the requested dialect."""


class OutOfRangeLumpIndex(IndexError):
    """Raised when a lump index is outside the range allowed by the dialect."""


class TruncatedSource(ValueError):
    """Raised when a lump extends past the end of the file containing it."""


class Dialect(Enum):
    """A recognised engine/version binary layout.

    ``UNDETERMINED`` is used for files which could not be identified.
    """
    UNDETERMINED = 'undetermined'

    QUAKE = 'quake'
    NIGHTFIRE = 'nightfire'
    QUAKE2 = 'quake2'
    DAIKATANA = 'daikatana'
    SIN = 'sin'
    SOF = 'sof'
    QUAKE3 = 'quake3'
    RAVEN = 'raven'
    COD = 'cod'
    COD2 = 'cod2'
    COD4 = 'cod4'
    STEF2 = 'stef2'
    STEF2_DEMO = 'stef2_demo'
    MOHAA = 'mohaa'
    FAKK = 'fakk'

    SOURCE17 = 'source17'
    SOURCE18 = 'source18'
    SOURCE19 = 'source19'
    SOURCE20 = 'source20'
    SOURCE21 = 'source21'
    SOURCE22 = 'source22'
    SOURCE23 = 'source23'
    SOURCE27 = 'source27'
    L4D2 = 'l4d2'
    VINDICTUS = 'vindictus'
    DMOMAM = 'dmomam'
    TACTICAL_INTERVENTION = 'tactical_intervention'
    TITANFALL = 'titanfall'

    def __repr__(self) -> str:
        return f'Dialect.{self.name}'

    @property
    def directory(self) -> 'DirectoryFormat':
        """The layout of the lump directory in this dialect."""
        try:
            return DIRECTORIES[self]
        except KeyError:
            raise UndeterminedDialect('The dialect of this file is not known!') from None

    @property
    def lump_count(self) -> int:
        """The maximum number of lumps in this dialect."""
        return self.directory.lump_count

    @property
    def is_source(self) -> bool:
        """Check if this is one of the Source engine revisions."""
        return self in SOURCE_FAMILY

    @property
    def supports_sidecars(self) -> bool:
        """Check if ``.lmp`` override files are used by this dialect."""
        return self in SOURCE_FAMILY or self is Dialect.TITANFALL

    @property
    def is_obfuscated(self) -> bool:
        """Check if the file contents are XORed with a key."""
        return self is Dialect.TACTICAL_INTERVENTION


SOURCE_FAMILY: Final[FrozenSet[Dialect]] = frozenset({
    Dialect.SOURCE17, Dialect.SOURCE18, Dialect.SOURCE19, Dialect.SOURCE20,
    Dialect.SOURCE21, Dialect.SOURCE22, Dialect.SOURCE23, Dialect.SOURCE27,
    Dialect.L4D2, Dialect.VINDICTUS, Dialect.DMOMAM, Dialect.TACTICAL_INTERVENTION,
})


class TableShape(Enum):
    """The different ways a lump directory can be laid out."""
    PAIRS = 'pairs'  # offset, length
    PAIRS_SWAPPED = 'pairs_swapped'  # length, offset
    VERSIONED = 'versioned'  # offset, length, version, ident
    VERSION_FIRST = 'version_first'  # version, offset, length, ident
    SCAN = 'scan'  # count, then (id, length) with implicit offsets
    STRIDED = 'strided'  # offset, length, version, ident, indexed from the file start


@attrs.frozen
class DirectoryFormat:
    """Describes where the lump directory is, and the shape of each entry.

    ``base`` is the position of the first entry. Bytes before that are copied as-is
    when the header is rebuilt, as are ``suffix`` bytes after the table.
    """
    shape: TableShape
    base: int
    entry_size: int
    lump_count: int
    suffix: int = 0

    @property
    def header_size(self) -> int:
        """The size of the header, for shapes with a fixed table."""
        return self.base + self.entry_size * self.lump_count + self.suffix

    def entry_offset(self, index: int) -> int:
        """The position of the directory entry for this lump."""
        return self.base + self.entry_size * index


def _pairs(base: int, count: int) -> DirectoryFormat:
    return DirectoryFormat(TableShape.PAIRS, base, 8, count)


_SOURCE = DirectoryFormat(TableShape.VERSIONED, 8, 16, 64, suffix=4)
_SOURCE_VER_FIRST = DirectoryFormat(TableShape.VERSION_FIRST, 8, 16, 64, suffix=4)

DIRECTORIES: Final[Dict[Dialect, DirectoryFormat]] = {
    Dialect.QUAKE: _pairs(4, 15),
    Dialect.NIGHTFIRE: _pairs(4, 18),
    Dialect.QUAKE2: _pairs(8, 16),
    Dialect.DAIKATANA: _pairs(8, 16),
    Dialect.QUAKE3: _pairs(8, 17),
    Dialect.RAVEN: _pairs(8, 18),
    Dialect.SIN: _pairs(8, 20),
    Dialect.SOF: _pairs(8, 22),
    Dialect.COD: DirectoryFormat(TableShape.PAIRS_SWAPPED, 8, 8, 31),
    Dialect.COD2: DirectoryFormat(TableShape.PAIRS_SWAPPED, 8, 8, 39),
    Dialect.COD4: DirectoryFormat(TableShape.SCAN, 12, 8, 55),
    Dialect.STEF2: _pairs(12, 30),
    Dialect.STEF2_DEMO: _pairs(12, 30),
    Dialect.MOHAA: _pairs(12, 28),
    Dialect.FAKK: _pairs(12, 20),
    Dialect.TITANFALL: DirectoryFormat(TableShape.STRIDED, 16, 16, 128),
    Dialect.SOURCE27: _SOURCE_VER_FIRST,
    Dialect.L4D2: _SOURCE_VER_FIRST,
}
for _dialect in SOURCE_FAMILY:
    DIRECTORIES.setdefault(_dialect, _SOURCE)
del _dialect
