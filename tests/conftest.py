import sqlite3

import pytest

# zoom 0 covers the world, zoom 1 splits it into four TMS quadrants
WORLD_TILES = [
    (0, 0, 0),
    (1, 0, 0),
    (1, 0, 1),
    (1, 1, 0),
    (1, 1, 1),
]


def tile_payload(zoom, column, row):
    return b'tile-%d-%d-%d' % (zoom, column, row)


def write_archive(path, metadata=(), tiles=(), unique_index=True):
    """Write an MBTiles file; tiles are (zoom, column, row) or (zoom, column, row, data)."""
    conn = sqlite3.connect(str(path))
    conn.execute('CREATE TABLE metadata (name TEXT, value TEXT)')
    conn.execute('CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)')
    if unique_index:
        conn.execute('CREATE UNIQUE INDEX tile_index ON tiles (zoom_level, tile_column, tile_row)')
    conn.executemany('INSERT INTO metadata VALUES (?, ?)', metadata)
    for tile in tiles:
        if len(tile) == 3:
            tile = tuple(tile) + (tile_payload(*tile),)
        conn.execute('INSERT INTO tiles VALUES (?, ?, ?, ?)', tile)
    conn.commit()
    conn.close()
    return path


def read_tiles(path):
    conn = sqlite3.connect(str(path))
    try:
        rows = conn.execute('SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles').fetchall()
    finally:
        conn.close()
    return {(z, x, y): data for z, x, y, data in rows}


def read_metadata(path):
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute('SELECT name, value FROM metadata ORDER BY rowid').fetchall()
    finally:
        conn.close()


@pytest.fixture
def world_archive(tmp_path):
    """Source archive with one zoom 0 tile and all four zoom 1 tiles."""
    metadata = [
        ('name', 'world'),
        ('format', 'png'),
        ('bounds', '-180,-85.0511,180,85.0511'),
        ('minzoom', '0'),
        ('maxzoom', '1'),
    ]
    return write_archive(tmp_path / 'world.mbtiles', metadata, WORLD_TILES)
