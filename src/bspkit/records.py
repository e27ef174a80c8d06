"""Record kinds stored in lumps, and how to decode them for each dialect.

Each kind has a table mapping a :py:class:`~bspkit.dialect.Dialect` to a
:py:class:`Layout`, listing where each field is within a record. Fields missing from
a layout keep their default value, which is a sentinel distinct from any valid
value (``-1`` for indexes, ``None`` for vectors and floats).

Records keep the original bytes they were decoded from, so data this library does not
understand is preserved when re-encoded.
"""
from typing import Any, ClassVar, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar
from struct import Struct
import math

import attrs

from bspkit.binformat import cached_struct
from bspkit.dialect import Dialect, SOURCE_FAMILY, UnsupportedDialectForRecordKind


__all__ = ['Field', 'Layout', 'Record', 'BModel', 'BrushSide', 'RECORD_KINDS']

RecordT = TypeVar('RecordT', bound='Record')
Vec3 = Tuple[float, float, float]


@attrs.frozen
class Field:
    """A single value in a record.

    :param name: The attribute on the record.
    :param offset: The position relative to the start of the record.
    :param fmt: The :external:mod:`struct` format, without a byte order.
    :param mask: If non-zero, only these bits are part of the value. Other bits are\
        left unchanged when written.
    :param flag: Convert the value to a boolean.
    """
    name: str
    offset: int
    fmt: str
    mask: int = 0
    flag: bool = False

    def struct(self, byte_order: str) -> Struct:
        return cached_struct(byte_order + self.fmt)

    def read(self, data: bytes, byte_order: str) -> Any:
        """Read this field from a record's data."""
        values = self.struct(byte_order).unpack_from(data, self.offset)
        value: Any = values[0] if len(values) == 1 else values
        if self.mask:
            value &= self.mask
        if self.flag:
            value = bool(value)
        return value

    def overlaps(self, other: 'Field') -> bool:
        """Check if both fields are stored in any of the same bits."""
        if self.mask and other.mask and self.offset == other.offset and not self.mask & other.mask:
            return False
        start = self.offset
        end = start + self.struct('<').size
        return other.offset < end and start < other.offset + other.struct('<').size

    def write(self, buffer: bytearray, byte_order: str, value: Any) -> None:
        """Write this field into a record's data."""
        fmt = self.struct(byte_order)
        if self.mask:
            [current] = fmt.unpack_from(buffer, self.offset)
            value = (current & ~self.mask) | (int(value) & self.mask)
        elif self.flag:
            value = int(value)
        if isinstance(value, (tuple, list)):
            fmt.pack_into(buffer, self.offset, *value)
        else:
            fmt.pack_into(buffer, self.offset, value)


@attrs.frozen
class Layout:
    """The size and fields of a record in one dialect."""
    stride: int
    fields: Tuple[Field, ...]

    def __attrs_post_init__(self) -> None:
        for field in self.fields:
            if field.offset + field.struct('<').size > self.stride:
                raise ValueError(f'Field {field.name} does not fit in {self.stride} bytes!')


def _same(old: Any, new: Any) -> bool:
    """Compare values, treating NaN as equal to itself."""
    if isinstance(old, tuple) and isinstance(new, tuple):
        return len(old) == len(new) and all(map(_same, old, new))
    if isinstance(old, float) and isinstance(new, float) and math.isnan(old) and math.isnan(new):
        return True
    return bool(old == new)


@attrs.define
class Record:
    """Base class for the records making up a lump."""
    LAYOUTS: ClassVar[Mapping[Dialect, Layout]] = {}
    LUMP_INDEX: ClassVar[Mapping[Dialect, int]] = {}

    _raw: bytes = attrs.field(default=b'', eq=False, repr=False, kw_only=True)

    @classmethod
    def layout(cls, dialect: Dialect) -> Layout:
        """Get the layout for this dialect."""
        try:
            return cls.LAYOUTS[dialect]
        except KeyError:
            raise UnsupportedDialectForRecordKind(
                f'{cls.__name__} records are not defined for {dialect.name}!'
            ) from None

    @classmethod
    def stride(cls, dialect: Dialect) -> int:
        """The size of each record in this dialect."""
        return cls.layout(dialect).stride

    @classmethod
    def lump_index(cls, dialect: Dialect) -> int:
        """The index of the lump these records are stored in."""
        try:
            return cls.LUMP_INDEX[dialect]
        except KeyError:
            raise UnsupportedDialectForRecordKind(
                f'{cls.__name__} records are not stored in {dialect.name} files!'
            ) from None

    @classmethod
    def decode_all(
        cls: Type[RecordT],
        data: bytes,
        dialect: Dialect,
        byte_order: str = '<',
    ) -> List[RecordT]:
        """Decode every whole record in the data.

        Leftover bytes which do not fill a record are ignored.
        """
        layout = cls.layout(dialect)
        stride = layout.stride
        records = []
        for pos in range(0, len(data) - stride + 1, stride):
            chunk = data[pos:pos + stride]
            values = {
                field.name: field.read(chunk, byte_order)
                for field in layout.fields
            }
            records.append(cls(**values, raw=chunk))
        return records

    @classmethod
    def encode_all(
        cls,
        records: Iterable['Record'],
        dialect: Dialect,
        byte_order: str = '<',
    ) -> bytes:
        """Encode records back into lump data.

        Each record's fields are written over the data it was decoded from. Only
        fields which have changed are written, so fields sharing bytes remain intact.
        Changing more than one of the fields sharing bytes is an error.
        """
        layout = cls.layout(dialect)
        stride = layout.stride
        buffer = bytearray()
        for rec in records:
            original = rec._raw[:stride]
            chunk = bytearray(original.ljust(stride, b'\0'))
            written: List[Field] = []
            for field in layout.fields:
                value = getattr(rec, field.name)
                if value is None:
                    continue
                if len(original) == stride and _same(field.read(original, byte_order), value):
                    continue
                for other in written:
                    if field.overlaps(other):
                        raise ValueError(
                            f'Cannot change both {other.name} and {field.name} in '
                            f'{cls.__name__} records, they are stored in the same bytes '
                            f'for {dialect.name}!'
                        )
                field.write(chunk, byte_order, value)
                written.append(field)
            buffer += chunk
        return bytes(buffer)


def _layouts(*pairs: Tuple[Iterable[Dialect], Layout]) -> Mapping[Dialect, Layout]:
    return {
        dialect: layout
        for dialects, layout in pairs
        for dialect in dialects
    }


def _int_pair(first: str, count: str, offset: int) -> Tuple[Field, Field]:
    return Field(first, offset, 'i'), Field(count, offset + 4, 'i')


_BOUNDS = (Field('mins', 0, '3f'), Field('maxs', 12, '3f'))
_ORIGIN = Field('origin', 24, '3f')
_MODEL_WITH_NODE = (Dialect.QUAKE2, Dialect.DAIKATANA, Dialect.SIN, Dialect.SOF) + tuple(
    SOURCE_FAMILY - {Dialect.DMOMAM},
)
_MODEL_ID3 = (
    Dialect.QUAKE3, Dialect.RAVEN, Dialect.STEF2, Dialect.STEF2_DEMO,
    Dialect.MOHAA, Dialect.FAKK,
)


@attrs.define
class BModel(Record):
    """A brush model, the bounding volume of the world or of a brush entity."""
    mins: Optional[Vec3] = None
    maxs: Optional[Vec3] = None
    origin: Optional[Vec3] = None
    head_node: int = -1
    first_leaf: int = -1
    num_leaves: int = -1
    first_leaf_patch: int = -1
    num_leaf_patches: int = -1
    first_brush: int = -1
    num_brushes: int = -1
    first_face: int = -1
    num_faces: int = -1

    LAYOUTS: ClassVar[Mapping[Dialect, Layout]] = _layouts(
        (_MODEL_ID3, Layout(40, (
            *_BOUNDS,
            *_int_pair('first_face', 'num_faces', 24),
            *_int_pair('first_brush', 'num_brushes', 32),
        ))),
        (_MODEL_WITH_NODE, Layout(48, (
            *_BOUNDS, _ORIGIN,
            Field('head_node', 36, 'i'),
            *_int_pair('first_face', 'num_faces', 40),
        ))),
        ([Dialect.COD], Layout(48, (
            *_BOUNDS,
            *_int_pair('first_face', 'num_faces', 24),
            *_int_pair('first_leaf_patch', 'num_leaf_patches', 32),
            *_int_pair('first_brush', 'num_brushes', 40),
        ))),
        ([Dialect.COD2, Dialect.COD4], Layout(48, (
            *_BOUNDS,
            *_int_pair('first_brush', 'num_brushes', 40),
        ))),
        ([Dialect.DMOMAM], Layout(52, (
            *_BOUNDS, _ORIGIN,
            Field('head_node', 40, 'i'),
            *_int_pair('first_face', 'num_faces', 44),
        ))),
        ([Dialect.NIGHTFIRE], Layout(56, (
            *_BOUNDS,
            *_int_pair('first_leaf', 'num_leaves', 40),
            *_int_pair('first_face', 'num_faces', 48),
        ))),
        ([Dialect.QUAKE], Layout(64, (
            *_BOUNDS, _ORIGIN,
            # Quake has 4 head nodes, one per hull. The first is the BSP tree.
            Field('head_node', 36, 'i'),
            *_int_pair('first_face', 'num_faces', 56),
        ))),
    )
    LUMP_INDEX: ClassVar[Mapping[Dialect, int]] = {
        Dialect.RAVEN: 7, Dialect.QUAKE3: 7,
        Dialect.MOHAA: 13, Dialect.FAKK: 13, Dialect.QUAKE2: 13, Dialect.SIN: 13,
        Dialect.DAIKATANA: 13, Dialect.SOF: 13,
        Dialect.QUAKE: 14, Dialect.NIGHTFIRE: 14,
        **{dialect: 14 for dialect in SOURCE_FAMILY},
        Dialect.STEF2: 15, Dialect.STEF2_DEMO: 15,
        Dialect.COD: 27,
        Dialect.COD2: 35,
        Dialect.COD4: 37,
    }


_SOURCE_SIDES = SOURCE_FAMILY - {Dialect.VINDICTUS}
_QUAKE2_SIDE = (Field('plane', 0, 'H'), Field('texture', 2, 'h'))
_ID3_SIDE = (Field('plane', 0, 'i'), Field('texture', 4, 'i'))


@attrs.define
class BrushSide(Record):
    """One of the planes bounding a brush."""
    plane: int = -1
    texture: int = -1
    face: int = -1
    displacement: int = -1
    # Call of Duty stores the plane distance here for the axial sides.
    dist: Optional[float] = None
    bevel: bool = False
    thin: bool = False

    LAYOUTS: ClassVar[Mapping[Dialect, Layout]] = _layouts(
        ([Dialect.QUAKE2, Dialect.DAIKATANA, Dialect.SOF], Layout(4, _QUAKE2_SIDE)),
        ([Dialect.SIN], Layout(8, _QUAKE2_SIDE)),
        (_SOURCE_SIDES, Layout(8, (
            *_QUAKE2_SIDE,
            Field('displacement', 4, 'h'),
            Field('bevel', 6, 'B', mask=0x01, flag=True),
            Field('thin', 7, 'B', flag=True),
        ))),
        ([Dialect.QUAKE3, Dialect.FAKK, Dialect.STEF2_DEMO], Layout(8, _ID3_SIDE)),
        ([Dialect.COD, Dialect.COD2, Dialect.COD4], Layout(8, (
            *_ID3_SIDE,
            Field('dist', 0, 'f'),
        ))),
        ([Dialect.MOHAA], Layout(12, _ID3_SIDE)),
        ([Dialect.STEF2], Layout(8, (Field('texture', 0, 'i'), Field('plane', 4, 'i')))),
        ([Dialect.RAVEN], Layout(12, (*_ID3_SIDE, Field('face', 8, 'i')))),
        ([Dialect.VINDICTUS], Layout(16, (
            *_ID3_SIDE,
            Field('displacement', 8, 'i'),
            Field('bevel', 12, 'B', mask=0x01, flag=True),
        ))),
        ([Dialect.NIGHTFIRE], Layout(8, (Field('face', 0, 'i'), Field('plane', 4, 'i')))),
    )
    LUMP_INDEX: ClassVar[Mapping[Dialect, int]] = {
        Dialect.COD: 3,
        Dialect.COD2: 5, Dialect.COD4: 5,
        Dialect.RAVEN: 9, Dialect.QUAKE3: 9,
        Dialect.FAKK: 10,
        Dialect.MOHAA: 11,
        Dialect.STEF2: 12, Dialect.STEF2_DEMO: 12,
        Dialect.QUAKE2: 15, Dialect.SIN: 15, Dialect.DAIKATANA: 15, Dialect.SOF: 15,
        Dialect.NIGHTFIRE: 16,
        **{dialect: 19 for dialect in SOURCE_FAMILY},
    }


RECORD_KINDS: Tuple[Type[Record], ...] = (BModel, BrushSide)
