"""
gsvstitch - Google Street View Panorama Stitcher

This package downloads the tiles of a Google Street View panorama and
stitches them into one full-resolution equirectangular image.

Key features:
- Concurrently fetch panorama tiles through a fixed pool of asyncio workers.
- Retry failed tiles with a linear backoff and skip tiles that never arrive.
- Detect and drop blank placeholder tiles.
- Trim black borders and remove content repeated by horizontal wrap-around.
- Report progress after every tile and support best-effort cancellation.
- Supports zoom levels 3 (4096x2048) and 4 (8192x4096).

Example usage::

    import asyncio
    from gsvstitch import stitch, to_data_uri, extract_url_data

    panoid, coords = extract_url_data("https://www.google.com/maps/@48.85,2.29,3a,75y/data=!3m6!1e1!3m4!1sabc123XYZ!2e0")

    def on_progress(progress):
        print(f"{progress.loaded}/{progress.total} tiles")

    jpeg = asyncio.run(stitch(panoid, 3, on_progress))
    data_uri = to_data_uri(jpeg)
"""
from .catalog import GridSpec, TileCoordinate, get_grid, list_resolutions, tile_coordinates
from .constants import TILE_SIZE, GRID_SIZES, TILE_URL, CONCURRENT_DOWNLOADS, JPEG_QUALITY
from .core import (
    Progress,
    build_tile_url,
    fetch_tile,
    fetch_tiles,
    stitch_image,
    stitch,
    process_panoid,
    fetch_panos,
)
from .exceptions import (
    StitchError,
    InvalidZoom,
    TileUnavailable,
    RenderingUnavailable,
    StitchCancelled,
)
from .imaging import is_blank, composite_tiles, crop_borders, remove_wrap, render_panorama
from .my_utils import (
    timer,
    extract_url_data,
    open_dataset,
    parse_args,
    format_size,
    encode_jpeg,
    to_data_uri,
    save_img,
)

__version__ = "1.0.0"
__all__ = [
    'GridSpec',
    'TileCoordinate',
    'get_grid',
    'list_resolutions',
    'tile_coordinates',
    'TILE_SIZE',
    'GRID_SIZES',
    'TILE_URL',
    'CONCURRENT_DOWNLOADS',
    'JPEG_QUALITY',
    'Progress',
    'build_tile_url',
    'fetch_tile',
    'fetch_tiles',
    'stitch_image',
    'stitch',
    'process_panoid',
    'fetch_panos',
    'StitchError',
    'InvalidZoom',
    'TileUnavailable',
    'RenderingUnavailable',
    'StitchCancelled',
    'is_blank',
    'composite_tiles',
    'crop_borders',
    'remove_wrap',
    'render_panorama',
    'timer',
    'extract_url_data',
    'open_dataset',
    'parse_args',
    'format_size',
    'encode_jpeg',
    'to_data_uri',
    'save_img',
]
