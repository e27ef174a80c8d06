"""Read and write lumps in BSP files.

The :py:class:`BSP` class decodes lumps only when they are first accessed.
Lumps which are never touched are copied straight from the original file when saving.
"""
from typing import IO, Dict, Generic, List, Optional, Tuple, Type, Union, overload
from pathlib import Path

from bspkit import StringPath, logger
from bspkit.binformat import align, cached_struct, xor_with_key
from bspkit.dialect import Dialect, DirectoryFormat, TableShape, TruncatedSource
from bspkit.reader import ENTRY_FIELDS, BSPReader, LumpLocation
from bspkit.records import BModel, BrushSide, Record, RecordT


__all__ = ['BSP', 'ParsedLump']

LOGGER = logger.get_logger(__name__)
# Source lump holding sub-lumps, addressed by absolute file offsets.
GAME_LUMP = 35


class ParsedLump(Generic[RecordT]):
    """Allows access to the records in a lump.

    When first accessed, the corresponding lump is decoded into a list.
    When the BSP is saved, the lump data is then reconstructed from the list.
    """
    kind: Type[RecordT]
    __name__: str

    def __init__(self, kind: Type[RecordT]) -> None:
        self.kind = kind
        self.__name__ = ''

    def __set_name__(self, owner: Type['BSP'], name: str) -> None:
        self.__name__ = name
        self.__objclass__ = owner

    def __repr__(self) -> str:
        return f'<bspkit.BSP.{self.__name__} member>'

    @overload
    def __get__(self, instance: None, owner: Optional[type] = None) -> 'ParsedLump[RecordT]': ...
    @overload
    def __get__(self, instance: 'BSP', owner: Optional[type] = None) -> List[RecordT]: ...

    def __get__(
        self, instance: Optional['BSP'],
        owner: Optional[type] = None,
    ) -> Union['ParsedLump[RecordT]', List[RecordT]]:
        """Decode the lump, or return the already decoded records."""
        if instance is None:  # Accessed on the class.
            return self
        return instance.get_records(self.kind)

    def __set__(self, instance: Optional['BSP'], value: List[RecordT]) -> None:
        """Replace the records in this lump."""
        if instance is None:
            raise TypeError('Cannot assign directly to lump descriptor!')
        instance.set_records(self.kind, value)


class BSP:
    """A BSP file, with lumps decoded on demand.

    If ``dialect`` is passed, detection is skipped. ``sidecars`` controls whether
    ``.lmp`` override files are used, for dialects which support them.
    """
    filename: Path
    reader: BSPReader
    # Lump index -> the kind and the decoded records.
    _parsed_lumps: Dict[int, Tuple[Type[Record], List[Record]]]

    models = ParsedLump(BModel)
    brush_sides = ParsedLump(BrushSide)

    def __init__(
        self,
        filename: StringPath,
        dialect: Optional[Dialect] = None,
        *,
        sidecars: bool = True,
    ) -> None:
        self.filename = Path(filename)
        self.reader = BSPReader(self.filename, dialect, sidecars=sidecars)
        self._parsed_lumps = {}

    def __repr__(self) -> str:
        return f'<BSP "{self.filename}" {self.dialect!r}>'

    @property
    def dialect(self) -> Dialect:
        """The dialect of the file."""
        return self.reader.dialect

    @property
    def byte_order(self) -> str:
        """The byte order of the file, as a :external:mod:`struct` prefix."""
        return self.reader.byte_order

    @property
    def lump_count(self) -> int:
        """The number of lumps this dialect can store."""
        return self.dialect.lump_count

    def lump_info(self, index: int) -> LumpLocation:
        """The location of a lump in the original file."""
        return self.reader.lump_info(index)

    def read_lump(self, index: int) -> bytes:
        """Read the original data of a lump, ignoring any changes."""
        return self.reader.get_lump(index)

    def is_materialized(self, index: int) -> bool:
        """Check if a lump has been decoded, and will be rebuilt when saved."""
        return index in self._parsed_lumps

    def get_lump(self, index: int) -> bytes:
        """Get the current data of a lump, encoding the records if decoded."""
        try:
            kind, records = self._parsed_lumps[index]
        except KeyError:
            return self.read_lump(index)
        return kind.encode_all(records, self.dialect, self.byte_order)

    def get_records(self, kind: Type[RecordT]) -> List[RecordT]:
        """Decode the lump containing this kind of record.

        The same list is returned each time, so changes to it are saved.
        """
        index = self._lump_index(kind)
        try:
            existing_kind, records = self._parsed_lumps[index]
        except KeyError:
            pass
        else:
            if existing_kind is not kind:
                raise TypeError(f'Lump {index} contains {existing_kind.__name__}, not {kind.__name__}!')
            return records  # type: ignore[return-value]
        data = self.read_lump(index)
        LOGGER.debug('Load lump {} as {} ({} bytes)', index, kind.__name__, len(data))
        decoded = kind.decode_all(data, self.dialect, self.byte_order)
        self._parsed_lumps[index] = (kind, decoded)  # type: ignore[assignment]
        return decoded

    def set_records(self, kind: Type[RecordT], records: List[RecordT]) -> None:
        """Replace the records in the lump containing this kind of record."""
        index = self._lump_index(kind)
        if not isinstance(records, list):
            records = list(records)
        self._parsed_lumps[index] = (kind, records)  # type: ignore[assignment]

    def discard(self, index: int) -> None:
        """Throw away decoded records, so the original lump is saved."""
        self._parsed_lumps.pop(index, None)

    def _lump_index(self, kind: Type[Record]) -> int:
        # Check the dialect is known first, so that produces the error.
        self.dialect.directory
        return kind.lump_index(self.dialect)

    def save(self, filename: StringPath) -> None:
        """Write the BSP to a new file.

        Decoded lumps are re-encoded, the rest are copied from the original file or
        side-car files. Lumps are laid out in index order, and the Source game lump's
        sub-lump offsets are moved to match. A game lump loaded from a side-car file
        is copied unchanged. If an error occurs, the incomplete file is left behind.
        """
        dest = Path(filename)
        if dest.resolve() == self.filename.resolve():
            raise ValueError(f'Cannot overwrite "{self.filename}" while reading from it!')
        directory = self.dialect.directory

        encoded: Dict[int, bytes] = {}
        for index, (kind, records) in self._parsed_lumps.items():
            encoded[index] = kind.encode_all(records, self.dialect, self.byte_order)

        with logger.context(dest.name):
            LOGGER.debug('Saving {} lumps, {} rebuilt', self.dialect.name, len(encoded))
            if directory.shape is TableShape.SCAN:
                self._save_scanned(dest, directory, encoded)
            else:
                self._save_table(dest, directory, encoded)

    def _write(self, file: IO[bytes], data: bytes, pos: int) -> int:
        """Write a chunk, obfuscating if required. This returns the new position."""
        file.write(xor_with_key(data, self.reader.key, pos))
        return pos + len(data)

    def _save_table(
        self,
        dest: Path,
        directory: DirectoryFormat,
        encoded: Dict[int, bytes],
    ) -> None:
        """Save dialects with a fixed-size directory."""
        order = self.byte_order
        header_size = directory.header_size
        # Keep the signature, version, checksums and revision.
        header = bytearray(self.reader.read_range(0, header_size))
        if len(header) < header_size:
            raise TruncatedSource(f'Header is only {len(header)} bytes, expected {header_size}!')

        fields = ENTRY_FIELDS[directory.shape]
        entry_struct = cached_struct(order + 'i' * len(fields))
        locations: List[LumpLocation] = []
        offset = header_size
        for index in range(directory.lump_count):
            location = self.reader.lump_info(index)
            locations.append(location)
            main = self.reader.lump_info(index, sidecars=False)
            length = len(encoded[index]) if index in encoded else location.length
            values = {
                # Empty lumps keep their offset, so unused entries remain identical.
                'offset': offset if length else main.offset,
                'length': length,
                'version': location.version,
                'ident': main.ident,
            }
            entry_struct.pack_into(
                header, directory.entry_offset(index),
                *[values[name] for name in fields],
            )
            offset += length

        with open(dest, 'wb') as file:
            pos = self._write(file, bytes(header), 0)
            for index, location in enumerate(locations):
                if index in encoded:
                    data = encoded[index]
                else:
                    data = self.reader.read_lump(location)
                    if index == GAME_LUMP and self.dialect.is_source and location.source is None:
                        data = self._rebase_game_lump(data, location.offset, pos)
                pos = self._write(file, data, pos)
        LOGGER.debug('Wrote {} bytes', pos)

    def _rebase_game_lump(self, data: bytes, old_offset: int, new_offset: int) -> bytes:
        """Move the absolute file offsets inside the game lump to its new position.

        Offsets which point outside the lump's original location are left alone.
        """
        if old_offset == new_offset or len(data) < 4:
            return data
        int_struct = cached_struct(self.byte_order + 'i')
        [count] = int_struct.unpack_from(data, 0)
        # Vindictus uses 32-bit flags and versions.
        if self.dialect is Dialect.VINDICTUS:
            entry_size, offset_pos = 20, 12
        else:
            entry_size, offset_pos = 16, 8
        buffer = bytearray(data)
        end = old_offset + len(data)
        for i in range(count):
            pos = 4 + entry_size * i + offset_pos
            if pos + 4 > len(buffer):
                break
            [file_offset] = int_struct.unpack_from(buffer, pos)
            if old_offset <= file_offset < end:
                int_struct.pack_into(buffer, pos, file_offset - old_offset + new_offset)
        LOGGER.debug('Moved game lump from {} to {}', old_offset, new_offset)
        return bytes(buffer)

    def _save_scanned(
        self,
        dest: Path,
        directory: DirectoryFormat,
        encoded: Dict[int, bytes],
    ) -> None:
        """Save dialects where the directory lists only the lumps present."""
        order = self.byte_order
        table = self.reader.scan_order()
        present = {ident for ident, offset, length in table}
        # Lumps which have been added need to be placed at the end.
        for index in sorted(encoded.keys() - present):
            table.append((index, 0, 0))

        prefix = self.reader.read_range(0, directory.base - 4)
        entries = bytearray(cached_struct(order + 'i').pack(len(table)))
        written = set()
        lumps: List[Tuple[Optional[bytes], LumpLocation]] = []
        for ident, offset, length in table:
            if ident in encoded and ident not in written:
                data: Optional[bytes] = encoded[ident]
                written.add(ident)
                length = len(data)
            else:
                data = None
            lumps.append((data, LumpLocation(offset, length)))
            entries += cached_struct(order + 'ii').pack(ident, length)

        with open(dest, 'wb') as file:
            pos = self._write(file, prefix + bytes(entries), 0)
            for data, location in lumps:
                # Each lump starts on a 4-byte boundary.
                if pos != align(pos):
                    pos = self._write(file, bytes(align(pos) - pos), pos)
                if data is None:
                    data = self.reader.read_lump(location)
                pos = self._write(file, data, pos)
        LOGGER.debug('Wrote {} bytes', pos)
