"""
Pixel-level processing of downloaded panorama tiles.

This module provides the CPU-bound half of the stitching pipeline:

- Detecting blank placeholder tiles (`is_blank`).
- Compositing tiles onto a black canvas (`composite_tiles`).
- Trimming black borders left by absent tiles (`crop_borders`).
- Removing content duplicated by horizontal wrap-around (`remove_wrap`).
- Running all of the above in order (`render_panorama`).

Every function here is synchronous and picklable so it can be handed to
`loop.run_in_executor` with either a thread or a process pool.

Dependencies:
- numpy for vectorised pixel analysis
- PIL/Pillow for image handling
"""
import numpy as np
from PIL import Image

from .catalog import GridSpec
from .constants import (
    TILE_SIZE,
    BRIGHTNESS_THRESHOLD,
    BLANK_TOLERANCE,
    SAMPLE_STRIDE,
    WRAP_STRIP_WIDTH,
    WRAP_BAND,
    WRAP_X_STEP,
    WRAP_Y_STEP,
    WRAP_SEARCH_START,
    WRAP_STRICT_DIFF,
    WRAP_ACCEPT_DIFF,
    WRAP_MIN_STRIP_STD,
)
from .exceptions import RenderingUnavailable


def content_mask(img: Image.Image, threshold: int = BRIGHTNESS_THRESHOLD) -> np.ndarray:
    """
    Boolean (height, width) mask of pixels with any channel above `threshold`.
    """
    arr = np.asarray(img.convert("RGB"))
    return np.any(arr > threshold, axis=2)


def is_blank(
    tile: Image.Image,
    threshold: int = BRIGHTNESS_THRESHOLD,
    tolerance: float = BLANK_TOLERANCE,
    stride: int = SAMPLE_STRIDE
) -> bool:
    """
    Check whether a tile is a near-black placeholder.

    The tile server answers coordinates outside the captured panorama with a
    solid dark image instead of an error. Only every `stride`-th pixel on
    each axis is inspected.

    Args:
        tile (PIL.Image.Image): The tile to check.
        threshold (int, optional): Channel value above which a pixel counts as content. Defaults to 20.
        tolerance (float, optional): Content fraction below which the tile is blank. Defaults to 0.02.
        stride (int, optional): Sampling step in pixels. Defaults to 4.

    Returns:
        bool: True if the tile carries (almost) no content.
    """
    sampled = content_mask(tile, threshold)[::stride, ::stride]
    if sampled.size == 0:
        return True
    return sampled.mean() < tolerance


def composite_tiles(grid: GridSpec, tiles: dict) -> Image.Image:
    """
    Paste tiles onto a black canvas covering the whole grid.

    Args:
        grid (GridSpec): Grid the tiles belong to.
        tiles (dict): Mapping of TileCoordinate to PIL image, or None for absent tiles.

    Returns:
        PIL.Image.Image: Canvas of grid.width x grid.height pixels.

    Raises:
        RenderingUnavailable: if the canvas cannot be allocated.
    """
    try:
        canvas = Image.new("RGB", (grid.width, grid.height), (0, 0, 0))
    except (MemoryError, ValueError) as error:
        raise RenderingUnavailable(
            f"Could not allocate a {grid.width}x{grid.height} canvas: {error}"
        ) from error

    for (col, row), tile in tiles.items():
        if tile is None:
            continue
        canvas.paste(tile, (col * TILE_SIZE, row * TILE_SIZE))
    return canvas


def _content_bounds(mask: np.ndarray, tolerance: float, stride: int):
    """
    First and last content row and column of `mask`, or None if there are none.
    """
    rows = mask[:, ::stride].mean(axis=1) >= tolerance
    cols = mask[::stride, :].mean(axis=0) >= tolerance
    if not rows.any() or not cols.any():
        return None
    row_idx = np.flatnonzero(rows)
    col_idx = np.flatnonzero(cols)
    return int(row_idx[0]), int(row_idx[-1]), int(col_idx[0]), int(col_idx[-1])


def crop_borders(
    img: Image.Image,
    threshold: int = BRIGHTNESS_THRESHOLD,
    tolerance: float = BLANK_TOLERANCE,
    stride: int = SAMPLE_STRIDE
) -> Image.Image:
    """
    Trim background rows and columns from every edge of an image.

    A row or column is background when fewer than `tolerance` of its sampled
    pixels are brighter than `threshold`. Each edge moves inward on its own
    until it reaches content. The scan is repeated on the trimmed region
    until nothing changes, so cropping an already cropped image is a no-op.

    Args:
        img (PIL.Image.Image): Image to trim.
        threshold (int, optional): Channel value above which a pixel counts as content. Defaults to 20.
        tolerance (float, optional): Content fraction below which a line is background. Defaults to 0.02.
        stride (int, optional): Sampling step along each line. Defaults to 4.

    Returns:
        PIL.Image.Image: The cropped image, or `img` itself when it is entirely
        background or has no background border.
    """
    mask = content_mask(img, threshold)
    height, width = mask.shape
    top, bottom, left, right = 0, height - 1, 0, width - 1

    while True:
        bounds = _content_bounds(mask[top:bottom + 1, left:right + 1], tolerance, stride)
        if bounds is None:
            return img

        first_row, last_row, first_col, last_col = bounds
        if (first_row, first_col) == (0, 0) and (last_row, last_col) == (bottom - top, right - left):
            break

        top, bottom = top + first_row, top + last_row
        left, right = left + first_col, left + last_col

    if (top, left, bottom, right) == (0, 0, height - 1, width - 1):
        return img
    return img.crop((left, top, right + 1, bottom + 1))


def remove_wrap(
    img: Image.Image,
    strip_width: int = WRAP_STRIP_WIDTH,
    band: tuple = WRAP_BAND,
    x_step: int = WRAP_X_STEP,
    y_step: int = WRAP_Y_STEP,
    search_start: float = WRAP_SEARCH_START,
    strict: float = WRAP_STRICT_DIFF,
    accept: float = WRAP_ACCEPT_DIFF,
    min_std: float = WRAP_MIN_STRIP_STD
) -> Image.Image:
    """
    Cut off the right part of a panorama that repeats its left edge.

    When the captured panorama is narrower than the tile grid, the server
    wraps around and the leftmost content shows up again further right. A
    thin strip from the left edge is compared against every candidate
    offset in the right three quarters of the image using the mean
    absolute per-channel difference. Only the middle `band` of rows is used,
    which keeps sky and ground out of the comparison.

    The search stops at the first offset scoring below `strict`. Otherwise
    the best offset is used if it scores below `accept`.

    Images narrower than one tile, and images whose reference strip is
    nearly uniform (every channel's standard deviation below `min_std`), are
    returned as is. A flat strip matches any flat region.

    Returns:
        PIL.Image.Image: The image cropped at the seam, or `img` itself.
    """
    width, height = img.size
    if width < TILE_SIZE:
        return img

    rows = np.arange(int(height * band[0]), int(height * band[1]), y_step)
    if rows.size == 0:
        return img

    pixels = np.asarray(img.convert("RGB"))[rows].astype(np.int16)
    cols = np.arange(0, strip_width, x_step)
    reference = pixels[:, cols]
    if reference.reshape(-1, 3).std(axis=0).max() < min_std:
        return img

    best_offset, best_diff = None, float("inf")
    for offset in range(int(width * search_start), width - strip_width + 1, x_step):
        diff = np.abs(pixels[:, cols + offset] - reference).mean()
        if diff < best_diff:
            best_offset, best_diff = offset, diff
        if diff < strict:
            break

    if best_offset is None or best_diff >= accept:
        return img
    return img.crop((0, 0, best_offset, height))


def render_panorama(grid: GridSpec, tiles: dict) -> Image.Image:
    """
    Composite the tiles of one job and clean up the result.

    Args:
        grid (GridSpec): Grid the tiles belong to.
        tiles (dict): Mapping of TileCoordinate to PIL image, or None for absent tiles.

    Returns:
        PIL.Image.Image: The final panorama. Its size depends on how many
        tiles were present and whether a wrap seam was found.
    """
    canvas = composite_tiles(grid, tiles)
    cropped = crop_borders(canvas)
    return remove_wrap(cropped)
