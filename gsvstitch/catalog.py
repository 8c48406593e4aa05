"""
Resolution catalog: which zoom levels can be stitched and how large they are.
"""
from typing import NamedTuple

from .constants import GRID_SIZES, RESOLUTION_LABELS, TILE_SIZE
from .exceptions import InvalidZoom


class GridSpec(NamedTuple):
    zoom_level: int
    columns: int
    rows: int

    @property
    def tile_count(self) -> int:
        return self.columns * self.rows

    @property
    def width(self) -> int:
        return self.columns * TILE_SIZE

    @property
    def height(self) -> int:
        return self.rows * TILE_SIZE


class TileCoordinate(NamedTuple):
    col: int
    row: int


def get_grid(zoom_level: int) -> GridSpec:
    """
    Look up the tile grid for a zoom level.

    Raises:
        InvalidZoom: if the zoom level is not supported.
    """
    if zoom_level not in GRID_SIZES:
        raise InvalidZoom(zoom_level)
    columns, rows = GRID_SIZES[zoom_level]
    return GridSpec(zoom_level, columns, rows)


def list_resolutions() -> list[dict]:
    """
    List every supported resolution, smallest first.

    Returns:
        list[dict]: One entry per zoom level with the keys
            "zoom", "width", "height", "label" and "tile_count".
    """
    resolutions = []
    for zoom_level in sorted(GRID_SIZES):
        grid = get_grid(zoom_level)
        resolutions.append({
            "zoom": zoom_level,
            "width": grid.width,
            "height": grid.height,
            "label": RESOLUTION_LABELS.get(zoom_level, f"Zoom {zoom_level}"),
            "tile_count": grid.tile_count,
        })
    return resolutions


def tile_coordinates(grid: GridSpec) -> list[TileCoordinate]:
    """All tile coordinates of a grid in row-major order."""
    return [
        TileCoordinate(col, row)
        for row in range(grid.rows)
        for col in range(grid.columns)
    ]
