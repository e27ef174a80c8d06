"""Read and write compiled BSP maps from the Quake, Source and derived engines."""
from typing import Union
from typing_extensions import TypeAlias
import os as _os


__version__ = '0.1.0'

__all__ = [
    '__version__', 'StringPath',
    'Dialect', 'LumpLocation', 'BSP', 'BSPReader', 'sniff',
    'BModel', 'BrushSide',
    'UndeterminedDialect', 'UnsupportedDialectForRecordKind',
    'OutOfRangeLumpIndex', 'TruncatedSource',

    # Submodules:
    'binformat', 'bsp', 'dialect', 'logger', 'reader', 'records',  # pyright: ignore
]

StringPath: TypeAlias = Union[str, '_os.PathLike[str]']


# Import these so users can access them directly.
from bspkit.dialect import (
    Dialect, OutOfRangeLumpIndex, TruncatedSource, UndeterminedDialect,
    UnsupportedDialectForRecordKind,
)
from bspkit.reader import BSPReader, LumpLocation, sniff
from bspkit.records import BModel, BrushSide
from bspkit.bsp import BSP
