"""
Core module for downloading and stitching Google Street View panoramas.

This module provides asynchronous functions to:

- Fetch a single panorama tile with linear-backoff retries (`fetch_tile`).
- Fetch every tile of a zoom level through a fixed pool of workers (`fetch_tiles`).
- Stitch one panorama into an image or JPEG bytes (`stitch_image`, `stitch`).
- Process a single panorama end to end and save it (`process_panoid`).
- Download and process multiple panoramas concurrently (`fetch_panos`).

Only zoom levels listed in the resolution catalog (3 and 4) are supported.
Network I/O runs on the event loop; pixel work (blank detection, compositing,
cropping, wrap removal) is handed to an executor.

Dependencies:
- aiohttp for asynchronous HTTP requests
- PIL/Pillow for image decoding
- rich for colored logging
"""
import asyncio
from concurrent.futures import Executor, ProcessPoolExecutor

import aiohttp
from aiohttp import ClientTimeout

from PIL import Image
from io import BytesIO

from rich import print
from typing import Callable, NamedTuple, Optional, Union
import os

from .catalog import GridSpec, get_grid, tile_coordinates
from .constants import (
    TILE_URL,
    REQUEST_HEADERS,
    CONCURRENT_DOWNLOADS,
    TILE_RETRIES,
    TILE_BACKOFF,
    TILE_TIMEOUT,
)
from .exceptions import StitchCancelled, TileUnavailable
from .imaging import is_blank, render_panorama
from .my_utils import encode_jpeg, save_img


class Progress(NamedTuple):
    loaded: int
    total: int


def build_tile_url(panoid: str, x: int, y: int, zoom_level: int) -> str:
    """Tile URL for one grid cell. The panorama id is embedded verbatim."""
    return TILE_URL.format(panoid=panoid, x=x, y=y, zoom=zoom_level)


async def fetch_tile(
    session: aiohttp.ClientSession,
    panoid: str,
    x: int,
    y: int,
    zoom_level: int,
    retries: int = TILE_RETRIES,
    backoff: float = TILE_BACKOFF
) -> Image.Image:
    """
    Fetch a single panorama tile with retry support.

    A non-200 status, a network error and an undecodable body all count as a
    failed attempt. Attempt `n` is followed by a pause of `n * backoff` seconds.

    Args:
        session (aiohttp.ClientSession): The active HTTP session.
        panoid (str): The panorama ID to fetch tiles from.
        x (int): Tile X index.
        y (int): Tile Y index.
        zoom_level (int): Zoom level.
        retries (int): Total number of attempts (default: 2).
        backoff (float): Delay step in seconds between attempts (default: 0.2).

    Returns:
        PIL.Image.Image: The decoded tile in RGB mode.

    Raises:
        TileUnavailable: if every attempt failed.
        ValueError: if `retries` is below 1.
    """
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")

    url = build_tile_url(panoid, x, y, zoom_level)
    last_error = None

    for attempt in range(1, retries + 1):
        try:
            async with session.get(url, timeout=ClientTimeout(TILE_TIMEOUT)) as response:

                if response.status != 200:
                    raise TileUnavailable(f"HTTP {response.status}")

                data = await response.read()
                tile = Image.open(BytesIO(data))
                return tile.convert("RGB")

        except Exception as error:
            last_error = error
            if attempt < retries:
                wait_time = backoff * attempt
                print(f"[yellow][Retry] {attempt}/{retries} for tile ({x},{y}) pano `{panoid}` in {wait_time:.1f}s: {error}[/]")
                await asyncio.sleep(wait_time)

    raise TileUnavailable(
        f"Failed to load tile ({x},{y}) pano `{panoid}` after {retries} attempts: {last_error}"
    ) from last_error


async def fetch_tiles(
    session: aiohttp.ClientSession,
    panoid: str,
    grid: GridSpec,
    on_progress: Optional[Callable[[Progress], None]] = None,
    workers: int = CONCURRENT_DOWNLOADS,
    retries: int = TILE_RETRIES,
    backoff: float = TILE_BACKOFF,
    executor: Optional[Executor] = None,
    cancel: Optional[asyncio.Event] = None
) -> dict:
    """
    Fetch and classify every tile of a grid using a fixed pool of workers.

    Workers pull coordinates from a shared FIFO queue until it is empty.
    Each worker only writes the result slot of the coordinate it pulled,
    so the result map needs no lock. Missing and blank tiles become None;
    a failed tile never aborts the job.

    Progress is reported once before any download and again after every
    tile settles, in completion order rather than grid order.

    Args:
        session (aiohttp.ClientSession): Active HTTP session.
        panoid (str): Panorama ID to fetch.
        grid (GridSpec): Grid of the requested zoom level.
        on_progress (callable, optional): Called with a `Progress` after every update.
        workers (int): Number of concurrent downloads (default: 8).
        retries (int): Attempts per tile (default: 2).
        backoff (float): Retry delay step in seconds (default: 0.2).
        executor (Executor | None): Executor for blank-tile detection.
        cancel (asyncio.Event | None): When set, workers stop pulling new tiles.

    Returns:
        dict: Mapping of TileCoordinate to PIL image, or None for absent tiles.

    Raises:
        StitchCancelled: if `cancel` was set before every tile settled.
        ValueError: if `workers` or `retries` is below 1.
    """
    if workers < 1:
        raise ValueError(f"workers must be at least 1, got {workers}")
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")

    coords = tile_coordinates(grid)
    total = len(coords)
    loaded = 0

    queue = asyncio.Queue()
    for coord in coords:
        queue.put_nowait(coord)

    tiles = dict.fromkeys(coords)
    loop = asyncio.get_running_loop()

    def report():
        if on_progress is not None:
            on_progress(Progress(loaded, total))

    async def worker():
        nonlocal loaded
        while True:
            if cancel is not None and cancel.is_set():
                return
            try:
                coord = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                tile = await fetch_tile(session, panoid, coord.col, coord.row, grid.zoom_level,
                                        retries=retries, backoff=backoff)
                blank = await loop.run_in_executor(executor, is_blank, tile)
                tiles[coord] = None if blank else tile
            except TileUnavailable as error:
                print(f"[yellow][MISSING] Skipping tile ({coord.col},{coord.row}) zoom {grid.zoom_level} pano `{panoid}`: {error}[/]")

            loaded += 1
            report()

    report()
    tasks = [asyncio.ensure_future(worker()) for _ in range(min(workers, total))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        # one worker failed: stop the others before the session goes away
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if cancel is not None and cancel.is_set() and loaded < total:
        raise StitchCancelled(f"Stitching pano `{panoid}` cancelled after {loaded}/{total} tiles")
    return tiles


async def stitch_image(
    panoid: str,
    zoom_level: int,
    on_progress: Optional[Callable[[Progress], None]] = None,
    session: Optional[aiohttp.ClientSession] = None,
    workers: int = CONCURRENT_DOWNLOADS,
    retries: int = TILE_RETRIES,
    backoff: float = TILE_BACKOFF,
    executor: Optional[Executor] = None,
    cancel: Optional[asyncio.Event] = None
) -> Image.Image:
    """
    Download every tile of a panorama and stitch them into one image.

    The zoom level is checked before any request is made. Missing tiles only
    reduce the completeness of the result; black borders are trimmed and
    wrapped-around content is removed, so the size of the result varies.

    Args:
        panoid (str): Panorama ID to fetch.
        zoom_level (int): Zoom level from the resolution catalog.
        on_progress (callable, optional): Receives a `Progress` after every tile.
        session (aiohttp.ClientSession | None): Session to reuse; a new one is opened if None.
        workers (int): Number of concurrent downloads (default: 8).
        retries (int): Attempts per tile (default: 2).
        backoff (float): Retry delay step in seconds (default: 0.2).
        executor (Executor | None): Executor for CPU-bound work.
        cancel (asyncio.Event | None): Best-effort cancellation flag.

    Returns:
        PIL.Image.Image: The stitched panorama.

    Raises:
        InvalidZoom: if the zoom level is not supported.
        RenderingUnavailable: if the canvas cannot be allocated.
        StitchCancelled: if the job was cancelled.
    """
    grid = get_grid(zoom_level)
    options = dict(on_progress=on_progress, workers=workers, retries=retries,
                   backoff=backoff, executor=executor, cancel=cancel)

    if session is None:
        async with aiohttp.ClientSession(headers=REQUEST_HEADERS) as own_session:
            tiles = await fetch_tiles(own_session, panoid, grid, **options)
    else:
        tiles = await fetch_tiles(session, panoid, grid, **options)

    try:
        return await asyncio.get_running_loop().run_in_executor(
            executor, render_panorama, grid, tiles
        )
    finally:
        for tile in tiles.values():
            if tile is not None:
                tile.close()


async def stitch(panoid: str, zoom_level: int, on_progress=None, **kwargs) -> bytes:
    """
    Stitch a panorama and encode it as JPEG.

    Takes the same keyword arguments as `stitch_image`.

    Returns:
        bytes: JPEG data (quality 95). Use `to_data_uri` for a data URI.
    """
    full_img = await stitch_image(panoid, zoom_level, on_progress, **kwargs)
    try:
        return encode_jpeg(full_img)
    finally:
        full_img.close()


async def process_panoid(
    session: aiohttp.ClientSession,
    panoid: str,
    sem_pano: asyncio.Semaphore,
    executor: Optional[Executor],
    zoom_level: int,
    output_dir: str,
    workers: int = CONCURRENT_DOWNLOADS,
    retries: int = TILE_RETRIES
) -> Union[dict, None]:
    """
    Download, stitch, and save a single panorama.

    Steps:
        1. Fetch and classify all tiles for the given panoid and zoom level.
        2. Give up if no tile is present.
        3. Composite, crop, and remove wrapped-around content.
        4. Save the resulting image to disk.
        5. Return metadata about the panorama.

    Args:
        session (aiohttp.ClientSession): Active HTTP session.
        panoid (str): Panorama ID to fetch.
        sem_pano (asyncio.Semaphore): Semaphore to limit concurrent panorama downloads.
        executor (Executor | None): Executor for CPU-bound tasks.
        zoom_level (int): Zoom level.
        output_dir (str): Directory to save the panorama image.
        workers (int): Concurrent tile downloads for this panorama.
        retries (int): Attempts per tile.

    Returns:
        dict | None: Metadata dictionary containing:
            - "panoid" (str): Panorama ID.
            - "zoom" (int): Zoom level used.
            - "size" (tuple[int, int]): Image width and height in pixels.
            - "tiles" (tuple[int, int]): Present tiles out of the grid total.
            - "file_size" (str): Human-readable size of the saved image.
        Returns None if the panorama could not be fetched or processed.
    """
    try:
        async with sem_pano:
            grid = get_grid(zoom_level)
            tiles = await fetch_tiles(session, panoid, grid, workers=workers,
                                      retries=retries, executor=executor)

            present = sum(tile is not None for tile in tiles.values())
            if not present:
                print(f"[yellow][FAIL] Panoid `{panoid}` | No tiles fetched (may be expired, removed, or invalid)[/]")
                return None

            full_img = await asyncio.get_running_loop().run_in_executor(
                executor, render_panorama, grid, tiles
            )
            for tile in tiles.values():
                if tile is not None:
                    tile.close()

            img_file_size = save_img(full_img, output_dir, panoid, zoom_level)
            img_size = full_img.size
            full_img.close()

            print(
                f"[green][OK] Panoid `{panoid}` | zoom {zoom_level} "
                f"| w*h {img_size[0]}x{img_size[1]} "
                f"| tiles: {present}/{grid.tile_count} "
                f"| size {img_file_size}[/]"
            )
            return {
                "panoid": panoid,
                "zoom": zoom_level,
                "size": img_size,
                "tiles": (present, grid.tile_count),
                "file_size": img_file_size,
            }

    except Exception as error:
        print(f"[red][PROCESSING ERROR] Panoid `{panoid}`: {error}[/]")
        return None


async def fetch_panos(
    sem_pano: asyncio.Semaphore,
    connector: aiohttp.TCPConnector,
    max_workers: int,
    zoom_level: int,
    panoids: list[str],
    output_dir: Union[str, None] = None,
    workers: int = CONCURRENT_DOWNLOADS,
    retries: int = TILE_RETRIES
) -> tuple[int, int, str]:
    """
    Download and stitch multiple panoramas concurrently.

    Args:
        sem_pano (asyncio.Semaphore): Semaphore to control concurrent pano downloads.
        connector (aiohttp.TCPConnector): Connector with concurrency limits for aiohttp.
        max_workers (int): Max number of workers for the process pool (used for pixel work).
        zoom_level (int): Zoom level.
        panoids (list[str]): List of panorama IDs to fetch.
        output_dir (str | None): Output directory, defaults to the working directory.
        workers (int): Concurrent tile downloads per panorama.
        retries (int): Attempts per tile.

    Workflow:
        - Validates the zoom level once, before any request.
        - Creates an aiohttp session.
        - Uses a process pool executor for CPU-bound tasks.
        - Runs `process_panoid()` for each panoid concurrently.

    Returns:
        tuple[int, int, str]: A tuple containing:
            - total_panos (int): Number of panorama IDs processed.
            - successful_panos (int): Number of panoramas successfully stitched.
            - output_dir (str): Output directory where the panoramas are saved.

    Raises:
        InvalidZoom: if the zoom level is not supported.
    """
    get_grid(zoom_level)
    print("[green]| Running Stitcher..[/]\n")

    if output_dir is None: output_dir = os.getcwd()

    async with aiohttp.ClientSession(connector=connector, headers=REQUEST_HEADERS) as session:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            tasks = [
                process_panoid(session, panoid, sem_pano, executor, zoom_level, output_dir,
                               workers=workers, retries=retries)
                for panoid in panoids
            ]
            tasks_res = await asyncio.gather(*tasks)

        success_panos = tuple(filter(lambda pano: pano is not None, tasks_res))

        return len(tasks), len(success_panos), output_dir
