import sqlite3
import math
import argparse
import logging
import sys
from collections import namedtuple
from pathlib import Path

log = logging.getLogger(__name__)


class ExtractError(Exception):
    pass


class InvalidBoundingBox(ExtractError):
    pass


class SourceUnreadable(ExtractError):
    pass


class DestinationUnwritable(ExtractError):
    pass


class CopyFailure(ExtractError):
    pass


class BoundingBox(namedtuple('BoundingBox', ['north', 'east', 'south', 'west'])):
    """Geographic extent in decimal degrees.

    No ordering is enforced between north/south or east/west; an inverted box
    simply selects no tiles.
    """
    __slots__ = ()

    @classmethod
    def parse(cls, text):
        """Parse an "N,E,S,W" string, tolerating whitespace around each value."""
        parts = text.split(',')
        if len(parts) != 4:
            raise InvalidBoundingBox(
                "Bounding box must have 4 values: N,E,S,W (got %d in %r)" % (len(parts), text))

        values = []
        for field, part in zip(cls._fields, parts):
            try:
                value = float(part.strip())
            except ValueError as e:
                raise InvalidBoundingBox("Invalid %s value: %r" % (field, part.strip())) from e
            if not math.isfinite(value):
                raise InvalidBoundingBox("Invalid %s value: %r" % (field, part.strip()))
            values.append(value)
        return cls(*values)

    def tile_bounds(self, zoom):
        return tile_bounds(self, zoom)


def tile_bounds(bbox, zoom):
    """Return (col_min, col_max, row_min, row_max) covering bbox at zoom.

    Rows are TMS rows. Each value is clamped to [0, 2**zoom - 1] on its own,
    so a box crossing the antimeridian or with north < south yields min > max.
    """
    n = 2 ** zoom

    def floor_within(value):
        # extreme longitudes overflow to +-inf, which math.floor rejects
        return math.floor(min(max(value, -1.0), float(n)))

    x_min = floor_within((bbox.west + 180.0) / 360.0 * n)
    x_max = floor_within((bbox.east + 180.0) / 360.0 * n)

    # slippy map rows, 0 at the north
    y_north = floor_within((1.0 - math.asinh(math.tan(math.radians(bbox.north))) / math.pi) / 2.0 * n)
    y_south = floor_within((1.0 - math.asinh(math.tan(math.radians(bbox.south))) / math.pi) / 2.0 * n)

    tms_y_min = n - 1 - y_south
    tms_y_max = n - 1 - y_north

    def clamp(value):
        return max(0, min(n - 1, value))

    return clamp(x_min), clamp(x_max), clamp(tms_y_min), clamp(tms_y_max)


def optimize_connection(cur):
    cur.execute("""PRAGMA synchronous=0""")
    cur.execute("""PRAGMA locking_mode=EXCLUSIVE""")
    cur.execute("""PRAGMA journal_mode=DELETE""")


def optimize_database(cur):
    cur.execute("""ANALYZE;""")
    cur.execute("""VACUUM;""")


def open_source(path):
    """Open an MBTiles file read-only and check it has both tables."""
    if not Path(path).is_file():
        raise SourceUnreadable("Failed to open input file: %s (no such file)" % path)

    uri = Path(path).resolve().as_uri() + '?mode=ro'
    conn = None
    try:
        conn = sqlite3.connect(uri, uri=True)
        cur = conn.cursor()
        cur.execute('SELECT name, value FROM metadata LIMIT 0')
        cur.execute('SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles LIMIT 0')
    except sqlite3.Error as e:
        if conn is not None:
            conn.close()
        raise SourceUnreadable("Failed to open input file: %s (%s)" % (path, e)) from e
    return conn


def create_destination(path):
    """Create a fresh MBTiles file. Transactions are managed explicitly by the caller."""
    conn = None
    try:
        conn = sqlite3.connect(str(path), isolation_level=None)
        cur = conn.cursor()
        optimize_connection(cur)
        cur.execute('CREATE TABLE metadata (name TEXT, value TEXT)')
        cur.execute('CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)')
        cur.execute('CREATE UNIQUE INDEX tile_index ON tiles (zoom_level, tile_column, tile_row)')
    except sqlite3.Error as e:
        if conn is not None:
            conn.close()
        raise DestinationUnwritable("Failed to create output file: %s (%s)" % (path, e)) from e
    return conn


def _rollback(conn):
    if conn.in_transaction:
        conn.execute('ROLLBACK')


def copy_metadata(source_cur, dest_conn):
    """Copy every metadata row verbatim, in its own transaction. Returns the row count."""
    count = 0
    try:
        dest_conn.execute('BEGIN')
        source_cur.execute('SELECT name, value FROM metadata')
        for row in source_cur:
            dest_conn.execute('INSERT INTO metadata (name, value) VALUES (?, ?)', row)
            count += 1
        dest_conn.execute('COMMIT')
    except sqlite3.Error as e:
        _rollback(dest_conn)
        raise CopyFailure("Metadata copy failed: %s" % e) from e
    return count


def zoom_levels(source_cur, min_zoom=None, max_zoom=None):
    source_cur.execute('SELECT DISTINCT zoom_level FROM tiles ORDER BY zoom_level')
    zooms = [row[0] for row in source_cur.fetchall()]
    for zoom in zooms:
        if not isinstance(zoom, int) or zoom < 0:
            raise CopyFailure("Invalid zoom level in source tiles table: %r" % (zoom,))
    if min_zoom is not None:
        zooms = [z for z in zooms if z >= min_zoom]
    if max_zoom is not None:
        zooms = [z for z in zooms if z <= max_zoom]
    return zooms


def copy_tiles(source_cur, dest_conn, bbox, zooms):
    """Copy the tiles inside bbox for each zoom, all in one transaction."""
    copied = 0
    zoom = None
    try:
        dest_conn.execute('BEGIN')
        for zoom in zooms:
            num_tiles = 0
            x_min, x_max, y_min, y_max = tile_bounds(bbox, zoom)

            source_cur.execute(
                'SELECT tile_column, tile_row, tile_data FROM tiles '
                'WHERE zoom_level = ? AND tile_column BETWEEN ? AND ? AND tile_row BETWEEN ? AND ?',
                (zoom, x_min, x_max, y_min, y_max))

            for x, y, data in source_cur:
                dest_conn.execute(
                    'INSERT INTO tiles (zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)',
                    (zoom, x, y, data))
                num_tiles += 1

            copied += num_tiles
            log.info("Level %s copied %s tiles", zoom, num_tiles)
        dest_conn.execute('COMMIT')
    except sqlite3.Error as e:
        _rollback(dest_conn)
        if zoom is None:
            raise CopyFailure("Tile copy failed: %s" % e) from e
        raise CopyFailure("Tile copy failed at zoom level %s: %s" % (zoom, e)) from e
    return copied


def extract(source_path, destination_path, bbox, min_zoom=None, max_zoom=None, optimize=True):
    """Copy the tiles of source_path inside bbox into a new archive at destination_path.

    bbox is a BoundingBox or an "N,E,S,W" string. Metadata is copied verbatim.
    Returns the number of tiles copied.
    """
    if not isinstance(bbox, BoundingBox):
        bbox = BoundingBox.parse(bbox)

    source_conn = open_source(source_path)
    try:
        dest_conn = create_destination(destination_path)
        try:
            source_cur = source_conn.cursor()
            copy_metadata(source_cur, dest_conn)

            try:
                zooms = zoom_levels(source_cur, min_zoom, max_zoom)
            except sqlite3.Error as e:
                raise CopyFailure("Reading zoom levels failed: %s" % e) from e

            copied = copy_tiles(source_cur, dest_conn, bbox, zooms)

            if optimize:
                try:
                    optimize_database(dest_conn.cursor())
                except sqlite3.Error as e:
                    raise CopyFailure("Optimizing output file failed: %s" % e) from e
        finally:
            dest_conn.close()
    finally:
        source_conn.close()

    return copied


def build_parser():
    parser = argparse.ArgumentParser(prog='mbtile', description='MBTiles utility')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log per zoom level progress')
    subparsers = parser.add_subparsers(dest='command', required=True)

    extract_parser = subparsers.add_parser('extract', help='Extract tiles inside a bounding box from an MBTiles file',
                                           epilog='Write --bbox=N,E,S,W when the north value is negative.')
    extract_parser.add_argument('input', help='Input MBTiles file')
    extract_parser.add_argument('output', help='Output MBTiles file (created, must not hold an archive already)')
    extract_parser.add_argument('--bbox', required=True, help='Bounding box in format: N,E,S,W')
    extract_parser.add_argument('--min-zoom', type=int, default=None, help='Skip zoom levels below this one')
    extract_parser.add_argument('--max-zoom', type=int, default=None, help='Skip zoom levels above this one')
    extract_parser.add_argument('--no-optimize', action='store_true', help='Do not ANALYZE and VACUUM the output')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format='%(message)s')

    if args.command == 'extract':
        try:
            copied = extract(args.input, args.output, args.bbox,
                             min_zoom=args.min_zoom, max_zoom=args.max_zoom,
                             optimize=not args.no_optimize)
        except ExtractError as e:
            print("Error: %s" % e, file=sys.stderr)
            return 1
        print("Extraction complete: %s tiles copied" % copied)
    return 0


if __name__ == '__main__':
    sys.exit(main())
