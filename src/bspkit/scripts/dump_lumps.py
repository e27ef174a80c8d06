"""Print the dialect and lump directory of a BSP file."""
from typing import List, Optional
from pathlib import Path
import argparse
import sys

from bspkit import logger
from bspkit.bsp import BSP
from bspkit.dialect import Dialect, UnsupportedDialectForRecordKind
from bspkit.records import RECORD_KINDS


def main(args: List[str]) -> int:
    """Main script."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "inp",
        help="The BSP file to read.",
    )
    parser.add_argument(
        "-d", "--dialect",
        help="Skip detection, and read the file as this dialect.",
        choices=[dialect.value for dialect in Dialect if dialect is not Dialect.UNDETERMINED],
        default=None,
    )
    parser.add_argument(
        "--no-sidecars",
        help="Ignore .lmp files next to the map.",
        action="store_false",
        dest="sidecars",
    )
    parser.add_argument(
        "-r", "--records",
        help="Decode each supported record kind, and show the number of records.",
        action="store_true",
    )
    parser.add_argument(
        "-s", "--save",
        help="Save a copy of the map to this filename.",
        default="",
    )

    result = parser.parse_args(args)
    dialect: Optional[Dialect] = Dialect(result.dialect) if result.dialect else None
    bsp = BSP(Path(result.inp), dialect, sidecars=result.sidecars)

    print(f'{bsp.filename.name}: {bsp.dialect.name}')
    if bsp.dialect is Dialect.UNDETERMINED:
        return 1
    print(f'Byte order: {"big" if bsp.byte_order == ">" else "little"} endian')
    if bsp.reader.key:
        print(f'Key: {bsp.reader.key.hex()}')

    print(f'{"Lump":>4} {"Offset":>10} {"Length":>10} {"Version":>7}')
    for index in range(bsp.lump_count):
        info = bsp.lump_info(index)
        if not info.length:
            continue
        line = f'{index:>4} {info.offset:>10} {info.length:>10} {info.version:>7}'
        if info.source is not None:
            line += f' ({info.source.name})'
        print(line)

    if result.records:
        for kind in RECORD_KINDS:
            try:
                records = bsp.get_records(kind)
            except UnsupportedDialectForRecordKind:
                print(f'{kind.__name__}: unsupported')
            else:
                print(f'{kind.__name__}: {len(records)}')

    if result.save:
        print(f'Writing {result.save}...')
        bsp.save(result.save)
    return 0


def entry() -> None:
    """Run from the command line."""
    logger.init_logging()
    sys.exit(main(sys.argv[1:]))


if __name__ == '__main__':
    entry()
